import math

import numpy as np
import pytest

from config import GridConfig
from data.projection import LocalProjection
from gridding.footprint import Footprint
from gridding.grid import (
    Contribution,
    GridSpec,
    GriddedBeam,
    IncrementalGrid,
    ACCUMULATOR_LIMIT,
    WEIGHT_SCALE,
    apply_contribution,
    beam_contribution,
)


def random_beams(n, seed=3, extent=100.0):
    rng = np.random.default_rng(seed)
    beams = []
    for _ in range(n):
        angle = rng.uniform(0.0, 2.0 * math.pi)
        footprint = Footprint(
            rng.uniform(0.5, 4.0), rng.uniform(0.5, 2.0),
            dxn=math.cos(angle), dyn=math.sin(angle),
        )
        beams.append(GriddedBeam(
            rng.uniform(0.0, extent), rng.uniform(0.0, extent), rng.uniform(10.0, 200.0), footprint,
        ))
    return beams


@pytest.fixture
def spec():
    return GridSpec.from_bounds(0.0, 100.0, 0.0, 100.0, 1.0)


class TestGridSpec:
    def test_dimensions_from_bounds(self):
        spec = GridSpec.from_bounds(0.0, 100.0, 0.0, 50.0, 10.0)
        assert spec.shape == (11, 6)
        assert spec.n_cells == 66
        assert spec.x_max == pytest.approx(100.0)
        assert spec.y_max == pytest.approx(50.0)

    def test_invalid_bounds_raise(self):
        with pytest.raises(ValueError):
            GridSpec.from_bounds(0.0, 10.0, 0.0, 10.0, 0.0)
        with pytest.raises(ValueError):
            GridSpec.from_bounds(10.0, 0.0, 0.0, 10.0, 1.0)

    def test_cell_index_rounds_to_nearest_centre(self):
        spec = GridSpec.from_bounds(0.0, 100.0, 0.0, 100.0, 10.0)
        i, j = spec.cell_index(np.array([4.9, 5.0, -5.1, 99.0]), np.array([0.0, 14.9, 0.0, 96.0]))
        assert i.tolist() == [0, 1, -1, 10]
        assert j.tolist() == [0, 1, 0, 10]
        assert spec.contains(i, j).tolist() == [True, True, False, True]

    def test_cell_centre(self):
        spec = GridSpec(10.0, 20.0, 2.0, 2.0, 5, 5)
        x, y = spec.cell_center(3, 1)
        assert (x, y) == (16.0, 22.0)

    def test_from_lonlat_bounds_derives_cell_size(self):
        projection = LocalProjection(-70.5, 42.0)
        spec = GridSpec.from_lonlat_bounds(
            (-70.501, -70.499, 41.999, 42.001), projection, altitude_max=50.0,
        )
        assert spec.dx == pytest.approx(1.0)
        assert spec.n_columns > 100
        assert spec.projection_id == projection.projection_id

        spec = GridSpec.from_lonlat_bounds(
            (-70.501, -70.499, 41.999, 42.001), projection, depth_max=200.0,
        )
        assert spec.dx == pytest.approx(4.0)


class TestContribution:
    def test_point_beam_contributes_unit_weight(self, spec):
        contribution = beam_contribution(GriddedBeam(10.2, 20.4, 30.0), spec)
        assert contribution.cells.tolist() == [10 * spec.n_rows + 20]
        assert contribution.total_weight == pytest.approx(1.0)

    def test_window_is_clamped_to_grid(self, spec):
        beam = GriddedBeam(0.0, 0.0, 50.0, Footprint(5.0, 5.0))
        contribution = beam_contribution(beam, spec)
        assert len(contribution) > 0
        assert contribution.cells.min() >= 0
        assert contribution.cells.max() < spec.n_cells
        assert len(np.unique(contribution.cells)) == len(contribution)

    def test_beam_outside_grid_contributes_nothing(self, spec):
        assert len(beam_contribution(GriddedBeam(500.0, 50.0, 10.0, Footprint(1.0, 1.0)), spec)) == 0

    def test_non_finite_beam_contributes_nothing(self, spec):
        assert len(beam_contribution(GriddedBeam(np.nan, 50.0, 10.0), spec)) == 0
        assert len(beam_contribution(GriddedBeam(50.0, 50.0, np.inf), spec)) == 0

    def test_apply_contribution_rejects_other_signs(self, spec):
        accumulators = [np.zeros(spec.n_cells, dtype=np.int64) for _ in range(3)]
        contribution = beam_contribution(GriddedBeam(50.0, 50.0, 10.0), spec)
        with pytest.raises(ValueError):
            apply_contribution(*accumulators, contribution, 0)
        with pytest.raises(ValueError):
            apply_contribution(*accumulators, contribution, 2)

    def test_apply_then_reverse_is_identity(self, spec):
        accumulators = [np.zeros(spec.n_cells, dtype=np.int64) for _ in range(3)]
        contribution = beam_contribution(GriddedBeam(50.0, 50.0, 10.0, Footprint(3.0, 2.0)), spec)
        apply_contribution(*accumulators, contribution, 1)
        assert accumulators[0].sum() > 0
        apply_contribution(*accumulators, contribution, -1)
        for acc in accumulators:
            assert not acc.any()

    def test_overflow_raises_and_leaves_accumulators(self, spec):
        accumulators = [np.zeros(spec.n_cells, dtype=np.int64) for _ in range(3)]
        contribution = beam_contribution(GriddedBeam(50.0, 50.0, 10.0, Footprint(3.0, 2.0)), spec)
        accumulators[2][contribution.cells[np.argmax(contribution.weight)]] = ACCUMULATOR_LIMIT - 1
        before = [acc.copy() for acc in accumulators]

        with pytest.raises(OverflowError):
            apply_contribution(*accumulators, contribution, 1)
        for a, b in zip(before, accumulators):
            np.testing.assert_array_equal(a, b)

        # Removal never grows the accumulators
        apply_contribution(*accumulators, contribution, -1)

    def test_empty_contribution(self):
        assert len(Contribution.empty()) == 0
        assert Contribution.empty().total_weight == 0.0


class TestIncrementalGrid:
    def test_empty_grid_has_no_data(self, spec):
        grid = IncrementalGrid(spec)
        assert grid.n_cells_with_data == 0
        assert not grid.valid_mask.any()
        assert np.all(grid.value == grid.nodata_value)

    def test_add_then_remove_restores_accumulators(self, spec):
        grid = IncrementalGrid(spec)
        beams = random_beams(60)
        initial = grid.accumulator_state()

        for beam in beams:
            grid.add_beam(beam)
        for beam in reversed(beams):
            grid.remove_beam(beam)

        for before, after in zip(initial, grid.accumulator_state()):
            np.testing.assert_array_equal(before, after)
        assert grid.n_cells_with_data == 0

    def test_removal_order_does_not_matter(self, spec):
        grid = IncrementalGrid(spec)
        beams = random_beams(60, seed=11)
        for beam in beams:
            grid.add_beam(beam)
        for beam in beams[::2] + beams[1::2]:
            grid.remove_beam(beam)
        for acc in grid.accumulator_state():
            assert not acc.any()

    def test_toggle_one_beam(self, spec):
        grid = IncrementalGrid(spec)
        beams = random_beams(30, seed=5)
        for beam in beams:
            grid.add_beam(beam)
        before = grid.accumulator_state()
        value_before = grid.value.copy()

        grid.remove_beam(beams[7])
        grid.add_beam(beams[7])

        for a, b in zip(before, grid.accumulator_state()):
            np.testing.assert_array_equal(a, b)
        np.testing.assert_array_equal(grid.value, value_before)

    def test_weight_is_conserved(self, spec):
        grid = IncrementalGrid(spec)
        beams = random_beams(40, seed=9)
        expected = 0
        for beam in beams:
            expected += int(grid.contribution(beam).weight.sum())
            grid.add_beam(beam)
        assert int(grid.accumulator_state()[0].sum()) == expected
        assert grid.total_weight == pytest.approx(expected / WEIGHT_SCALE)

    def test_footprint_value_is_depth_for_single_beam(self, spec):
        grid = IncrementalGrid(spec)
        cells = grid.add_beam(GriddedBeam(50.0, 50.0, 42.0, Footprint(2.0, 2.0)))
        i, j = grid.cell_ij(cells)
        np.testing.assert_allclose(grid.value[i, j], 42.0, rtol=1e-6)
        np.testing.assert_allclose(grid.topography[i, j], -42.0, rtol=1e-6)
        np.testing.assert_allclose(grid.sigma[i, j], 0.0, atol=0.1)

    def test_simple_mean(self, spec):
        grid = IncrementalGrid(spec, GridConfig(algorithm="simple_mean"))
        grid.add_beam(GriddedBeam(50.0, 50.0, 10.0, Footprint(3.0, 3.0)))
        grid.add_beam(GriddedBeam(50.2, 49.8, 20.0))
        cell = grid.cell(50, 50)
        assert cell.value == pytest.approx(15.0)
        assert cell.sigma == pytest.approx(5.0)
        assert cell.weight == pytest.approx(2.0)
        assert grid.n_cells_with_data == 1

    def test_shoal_bias_keeps_shallowest(self, spec):
        grid = IncrementalGrid(spec, GridConfig(algorithm="shoal_bias"))
        beams = [GriddedBeam(50.0, 50.0, depth) for depth in (10.0, 12.0, 8.0)]
        for beam in beams:
            grid.add_beam(beam)
        assert grid.cell(50, 50).value == pytest.approx(8.0)

        grid.remove_beam(beams[2])
        assert grid.cell(50, 50).value == pytest.approx(10.0)

        grid.remove_beam(beams[0])
        grid.remove_beam(beams[1])
        assert not grid.cell(50, 50).has_data

    def test_beam_outside_grid_counted(self, spec):
        grid = IncrementalGrid(spec)
        cells = grid.add_beam(GriddedBeam(500.0, 500.0, 10.0))
        assert len(cells) == 0
        assert grid.stats.beams_outside == 1
        grid.add_beam(GriddedBeam(np.nan, 5.0, 10.0))
        assert grid.stats.beams_invalid == 1

    def test_deferred_recompute(self, spec):
        grid = IncrementalGrid(spec, GridConfig(recompute_immediately=False))
        grid.add_beam(GriddedBeam(50.0, 50.0, 10.0, Footprint(2.0, 2.0)))
        assert grid.n_cells_with_data == 0
        assert grid.pending_cells > 0

        recomputed = grid.recompute()
        assert len(recomputed) > 0
        assert grid.pending_cells == 0
        assert grid.cell(50, 50).value == pytest.approx(10.0, rel=1e-6)

    def test_explicit_recompute_flag_overrides_config(self, spec):
        grid = IncrementalGrid(spec)
        grid.add_beam(GriddedBeam(50.0, 50.0, 10.0), recompute=False)
        assert not grid.cell(50, 50).has_data
        grid.recompute()
        assert grid.cell(50, 50).has_data

    def test_cell_outside_grid_raises(self, spec):
        grid = IncrementalGrid(spec)
        with pytest.raises(IndexError):
            grid.cell(spec.n_columns, 0)

    def test_parallel_rebuild_matches_sequential(self, spec):
        beams = random_beams(300, seed=21)
        sequential = IncrementalGrid(spec)
        sequential.rebuild_from(beams, workers=1)
        parallel = IncrementalGrid(spec)
        parallel.rebuild_from(beams, workers=4)

        for a, b in zip(sequential.accumulator_state(), parallel.accumulator_state()):
            np.testing.assert_array_equal(a, b)
        np.testing.assert_array_equal(sequential.value, parallel.value)

    def test_rebuild_matches_incremental(self, spec):
        beams = random_beams(100, seed=4)
        incremental = IncrementalGrid(spec)
        for beam in beams:
            incremental.add_beam(beam)
        rebuilt = IncrementalGrid(spec)
        rebuilt.rebuild_from(beams)

        for a, b in zip(incremental.accumulator_state(), rebuilt.accumulator_state()):
            np.testing.assert_array_equal(a, b)
        np.testing.assert_array_equal(incremental.value, rebuilt.value)

    def test_rebuild_reports_progress(self, spec):
        calls = []
        grid = IncrementalGrid(spec)
        grid.rebuild_from(random_beams(10), progress_callback=lambda done, total: calls.append((done, total)))
        assert calls[-1] == (10, 10)

    def test_shoal_bias_rebuild(self, spec):
        grid = IncrementalGrid(spec, GridConfig(algorithm="shoal_bias"))
        grid.rebuild_from([GriddedBeam(50.0, 50.0, depth) for depth in (10.0, 7.5, 9.0)], workers=2)
        assert grid.cell(50, 50).value == pytest.approx(7.5)

    def test_statistics(self, spec):
        grid = IncrementalGrid(spec, GridConfig(algorithm="simple_mean"))
        assert grid.get_statistics() == {}
        grid.add_beam(GriddedBeam(10.0, 10.0, 5.0))
        grid.add_beam(GriddedBeam(20.0, 20.0, 15.0))
        stats = grid.get_statistics()
        assert stats["count"] == 2
        assert stats["min"] == pytest.approx(5.0)
        assert stats["max"] == pytest.approx(15.0)
