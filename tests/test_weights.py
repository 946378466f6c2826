import numpy as np
import pytest
from scipy import special

from gridding.footprint import Footprint
from gridding.weights import BinUsage, bin_weight, bin_weights, cell_corners, erf, erf_array


class TestErf:
    def test_matches_reference(self):
        x = np.linspace(-6.0, 6.0, 10001)
        assert np.max(np.abs(erf_array(x) - special.erf(x))) < 2e-7

    def test_scalar_agrees_with_array(self):
        for x in (-2.5, -0.3, 0.0, 0.7, 4.0):
            assert erf(x) == pytest.approx(float(erf_array(np.array([x]))[0]), abs=1e-15)

    def test_odd_symmetry(self):
        x = np.linspace(0.0, 3.0, 31)
        np.testing.assert_allclose(erf_array(-x), -erf_array(x), atol=1e-12)


class TestBinWeight:
    def test_far_cell_is_skipped_with_zero_weight(self):
        weight, usage = bin_weight(Footprint(1.0, 1.0), (5.0, 0.0), (0.05, 0.05))
        assert usage is BinUsage.SKIP
        assert weight == 0.0

    def test_cell_between_one_and_two_radii_is_conditional(self):
        weight, usage = bin_weight(Footprint(1.0, 1.0), (1.5, 0.0), (0.05, 0.05))
        assert usage is BinUsage.CONDITIONAL
        assert 0.0 < weight < 0.05

    def test_cell_touching_contour_is_used(self):
        _, usage = bin_weight(Footprint(1.0, 1.0), (0.99, 0.0), (0.01, 0.01))
        assert usage is BinUsage.USE

    def test_heavy_cell_is_used(self):
        weight, usage = bin_weight(Footprint(1.0, 1.0), (0.0, 0.0), (0.5, 0.5))
        assert usage is BinUsage.USE
        assert weight > 0.05

    def test_elliptical_footprint_respects_axes(self):
        footprint = Footprint(4.0, 1.0)
        _, along_width = bin_weight(footprint, (3.0, 0.0), (0.05, 0.05))
        _, along_length = bin_weight(footprint, (0.0, 3.0), (0.05, 0.05))
        assert along_width is BinUsage.USE
        assert along_length is BinUsage.SKIP

    def test_rotated_footprint(self):
        footprint = Footprint(4.0, 1.0, dxn=0.0, dyn=1.0)
        _, usage = bin_weight(footprint, (0.0, 3.0), (0.05, 0.05))
        assert usage is BinUsage.USE


class TestBinWeights:
    @pytest.fixture
    def cells(self):
        footprint = Footprint(1.0, 1.0)
        centres = np.arange(-50, 51) * 0.1
        gx, gy = np.meshgrid(centres, centres, indexing="ij")
        ox = gx.ravel()
        oy = gy.ravel()
        pcx, pcy = footprint.to_local(ox, oy)
        corner_x, corner_y = cell_corners(ox, oy, 0.05, 0.05, footprint)
        return bin_weights(1.0, 1.0, pcx, pcy, 0.05, 0.05, corner_x, corner_y)

    def test_weights_are_non_negative(self, cells):
        weight, usage = cells
        assert np.all(weight >= 0.0)
        assert np.all(weight[usage == BinUsage.SKIP] == 0.0)

    def test_total_mass_close_to_one(self, cells):
        weight, usage = cells
        used = (usage == BinUsage.USE) | (usage == BinUsage.CONDITIONAL)
        total = weight[used].sum()
        assert 0.95 < total <= 1.0 + 1e-6

    def test_all_three_classes_present(self, cells):
        _, usage = cells
        assert set(np.unique(usage).tolist()) == {BinUsage.SKIP, BinUsage.USE, BinUsage.CONDITIONAL}

    def test_corners_shape(self):
        corner_x, corner_y = cell_corners(np.zeros(3), np.zeros(3), 0.5, 0.5, Footprint(1.0, 1.0))
        assert corner_x.shape == (3, 4)
        assert corner_y.shape == (3, 4)
