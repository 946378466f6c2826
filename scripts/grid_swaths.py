#!/usr/bin/env python3
"""
Batch gridding of decoded swath files.

Loads each swath, replays its edit save file, applies the calibration bias
and writes the footprint-weighted grid.

Usage:
    python scripts/grid_swaths.py --swath line1.npz line2.npz --output grid.asc
"""

import argparse
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import EditorConfig, GRID_ALGORITHMS
from data import SwathEditError
from editing import EditorSession
from gridding import BiasParameters, GridWriter


def setup_logging(log_level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
        ]
    )


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Grid decoded multibeam swath files"
    )

    # Data arguments
    parser.add_argument(
        "--swath",
        type=Path,
        nargs="+",
        required=True,
        help="Decoded swath files (.npz)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        required=True,
        help="Output grid (.asc, .npz, .tif)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to config YAML file (optional)",
    )

    # Grid arguments
    parser.add_argument("--cell-size", type=float, default=None)
    parser.add_argument("--algorithm", choices=GRID_ALGORITHMS, default=None)
    parser.add_argument("--workers", type=int, default=None)

    # Bias arguments
    parser.add_argument("--roll-bias", type=float, default=0.0)
    parser.add_argument("--pitch-bias", type=float, default=0.0)
    parser.add_argument("--heading-bias", type=float, default=0.0)
    parser.add_argument("--timelag", type=float, default=0.0)
    parser.add_argument("--snell", type=float, default=1.0)

    # Misc
    parser.add_argument("--progress", action="store_true", help="Show progress bars")
    parser.add_argument("--log-level", type=str, default="INFO")

    return parser.parse_args()


def main():
    args = parse_args()
    setup_logging(args.log_level)
    logger = logging.getLogger(__name__)

    # Load or create config
    if args.config and args.config.exists():
        config = EditorConfig.load(args.config)
        logger.info(f"Loaded config from {args.config}")
    else:
        config = EditorConfig()

    # Override config with command line args
    if args.algorithm is not None:
        config.grid.algorithm = args.algorithm
    if args.cell_size is not None:
        config.grid.cell_size = args.cell_size
    if args.workers is not None:
        config.grid.rebuild_workers = args.workers
    config.grid.show_progress = args.progress

    session = EditorSession(config)

    try:
        for path in args.swath:
            swath = session.load_file(path)
            report = session.last_replay
            logger.info(f"{swath.name}: {report.applied} edits replayed")

        bias = BiasParameters(
            roll=args.roll_bias,
            pitch=args.pitch_bias,
            heading=args.heading_bias,
            timelag=args.timelag,
            snell=args.snell,
        )
        if not bias.is_zero:
            session.apply_bias(bias)

        grid = session.make_grid()
    except (SwathEditError, FileNotFoundError, ValueError) as e:
        logger.error(str(e))
        sys.exit(1)

    stats = grid.get_statistics()
    if stats:
        logger.info(
            f"Depth range {stats['min']:.2f} - {stats['max']:.2f} m, "
            f"{stats['count']} cells with data ({100 * stats['valid_ratio']:.1f}%)"
        )
    else:
        logger.warning("Grid has no cells with data")

    args.output.parent.mkdir(parents=True, exist_ok=True)
    GridWriter().save(grid, args.output)
    logger.info(f"Grid written to {args.output}")


if __name__ == "__main__":
    main()
