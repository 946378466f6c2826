"""
Grid export.

Supports:
- ESRI ASCII grid (ASC), depth only
- numpy archive (NPZ) with value, sigma, weight and grid geometry
- GeoTIFF with depth and sigma bands (requires GDAL)
"""

import logging
from pathlib import Path
from typing import Optional, Union

import numpy as np

try:
    from osgeo import gdal, osr
    GDAL_AVAILABLE = True
except ImportError:
    GDAL_AVAILABLE = False

from .grid import IncrementalGrid

logger = logging.getLogger(__name__)


def _north_up(array: np.ndarray) -> np.ndarray:
    """(n_columns, n_rows) grid array as rows from north to south."""
    return np.flipud(array.T)


class GridWriter:
    """Write incremental grids to file."""

    SUPPORTED_FORMATS = {'.asc', '.npz', '.tif', '.tiff'}

    def save(self, grid: IncrementalGrid, path: Union[str, Path], format: Optional[str] = None):
        """
        Save the grid's current values.

        Args:
            grid: Grid to save (deferred cells are recomputed first)
            path: Output file path
            format: Output format (inferred from extension if not specified)
        """
        path = Path(path)

        if format is None:
            format = path.suffix.lower()

        if grid.pending_cells:
            grid.recompute()

        if format == '.asc':
            self._save_ascii(grid, path)
        elif format == '.npz':
            self._save_npz(grid, path)
        elif format in {'.tif', '.tiff'}:
            self._save_geotiff(grid, path)
        else:
            raise ValueError(f"Unsupported output format: {format}")

    def _save_ascii(self, grid: IncrementalGrid, path: Path):
        """Save as ESRI ASCII grid (depth only)."""
        logger.info(f"Saving ASCII grid: {path}")

        spec = grid.spec
        value, _ = grid.snapshot()
        header = "\n".join([
            f"ncols {spec.n_columns}",
            f"nrows {spec.n_rows}",
            f"xllcorner {spec.x_min - 0.5 * spec.dx:.6f}",
            f"yllcorner {spec.y_min - 0.5 * spec.dy:.6f}",
            f"cellsize {spec.dx:.6f}",
            f"NODATA_value {grid.nodata_value:g}",
        ])
        np.savetxt(path, _north_up(value), fmt="%.4f", header=header, comments="")

    def _save_npz(self, grid: IncrementalGrid, path: Path):
        logger.info(f"Saving grid archive: {path}")

        spec = grid.spec
        value, sigma = grid.snapshot()
        with open(path, 'wb') as f:
            np.savez_compressed(
                f,
                value=value,
                sigma=sigma,
                weight=grid.weight,
                x_min=spec.x_min,
                y_min=spec.y_min,
                dx=spec.dx,
                dy=spec.dy,
                nodata_value=grid.nodata_value,
                projection_id=np.array(spec.projection_id),
                algorithm=np.array(grid.algorithm.value),
            )

    def _save_geotiff(self, grid: IncrementalGrid, path: Path):
        """Save as GeoTIFF with depth and sigma bands."""
        if not GDAL_AVAILABLE:
            raise ImportError(
                "GDAL is required for GeoTIFF output. "
                "Install via: conda install -c conda-forge gdal"
            )
        gdal.UseExceptions()
        logger.info(f"Saving GeoTIFF: {path}")

        spec = grid.spec
        value, sigma = grid.snapshot()
        driver = gdal.GetDriverByName('GTiff')
        ds = driver.Create(
            str(path),
            spec.n_columns,
            spec.n_rows,
            2,
            gdal.GDT_Float32,
            options=['COMPRESS=LZW', 'TILED=YES']
        )

        try:
            ds.SetGeoTransform((
                spec.x_min - 0.5 * spec.dx, spec.dx, 0.0,
                spec.y_max + 0.5 * spec.dy, 0.0, -spec.dy,
            ))
            epsg = self._epsg(spec.projection_id)
            if epsg is not None:
                srs = osr.SpatialReference()
                srs.ImportFromEPSG(epsg)
                ds.SetProjection(srs.ExportToWkt())

            for band_idx, (name, data) in enumerate((("Depth", value), ("Sigma", sigma)), start=1):
                band = ds.GetRasterBand(band_idx)
                band.WriteArray(_north_up(data).astype(np.float32))
                band.SetNoDataValue(grid.nodata_value)
                band.SetDescription(name)

            ds.FlushCache()

        finally:
            ds = None

    @staticmethod
    def _epsg(projection_id: str) -> Optional[int]:
        """EPSG code of a UTM projection id such as ``UTM19N``."""
        if not projection_id.startswith("UTM") or len(projection_id) < 6:
            return None
        zone = int(projection_id[3:5])
        return (32600 if projection_id[5] == "N" else 32700) + zone
