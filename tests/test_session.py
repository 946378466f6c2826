import numpy as np
import pytest

from config import EditorConfig
from conftest import make_line, make_ping
from data.edit_log import read_edit_log
from data.errors import EditLogError, GridNotReadyError, UnknownFileError
from data.flags import BeamFlag, EditAction
from data.loaders import SwathWriter
from data.swath import SwathFile
from editing.bias import BiasMode
from editing.selection import NavSelection, RectRegion
from editing.session import EditorSession, FlushPolicy
from gridding.geometry import BiasParameters
from gridding.grid import GridSpec, IncrementalGrid


def grid_weight(session):
    return int(session.grid.accumulator_state()[0].sum())


class TestStackedSoundings:
    @pytest.fixture
    def loaded(self, session, stacked_swath):
        session.load_file(stacked_swath)
        session.make_grid(cell_size=1.0)
        return session

    def test_grid_holds_mean_depth(self, loaded):
        assert loaded.grid.spec.shape == (1, 1)
        assert loaded.grid.cell(0, 0).value == pytest.approx(10.0)
        assert loaded.grid.cell(0, 0).weight == pytest.approx(6.0, rel=1e-3)

    def test_flag_removes_one_share_of_weight(self, loaded, listener):
        before = loaded.grid.cell(0, 0).weight
        assert loaded.on_edit(0, 0, 0, BeamFlag.MANUAL)
        assert loaded.grid.cell(0, 0).weight == pytest.approx(before * 5.0 / 6.0)
        assert loaded.grid.cell(0, 0).value == pytest.approx(10.0)
        assert listener.cells[-1][:2] == (0, 0)
        assert listener.soundings == [(0, 0, 0, BeamFlag.MANUAL)]
        assert listener.flushes == 1

    def test_unflag_restores_accumulators(self, loaded):
        before = loaded.grid.accumulator_state()
        value = loaded.grid.cell(0, 0).value

        loaded.on_edit(0, 0, 0, BeamFlag.MANUAL)
        loaded.on_edit(0, 1, 2, BeamFlag.FILTER)
        loaded.on_edit(0, 0, 0, BeamFlag.OK)
        loaded.on_edit(0, 1, 2, BeamFlag.OK)

        for a, b in zip(before, loaded.grid.accumulator_state()):
            np.testing.assert_array_equal(a, b)
        assert loaded.grid.cell(0, 0).value == value

    def test_flag_to_flag_keeps_grid(self, loaded):
        loaded.on_edit(0, 0, 0, BeamFlag.MANUAL)
        weight = grid_weight(loaded)
        assert loaded.on_edit(0, 0, 0, BeamFlag.FILTER)
        assert grid_weight(loaded) == weight
        assert loaded.store.ping(0, 0).flag(0) is BeamFlag.FILTER

    def test_repeated_flag_is_noop(self, loaded):
        assert loaded.on_edit(0, 0, 1, BeamFlag.MANUAL)
        assert not loaded.on_edit(0, 0, 1, BeamFlag.MANUAL)
        # Sonar flags are recorded as manual flags
        assert not loaded.on_edit(0, 0, 1, BeamFlag.SONAR)
        assert len(loaded.edits.log(0)) == 1

    def test_edits_are_logged(self, loaded):
        loaded.on_edit(0, 1, 2, BeamFlag.MANUAL)
        loaded.on_edit(0, 1, 2, BeamFlag.OK)
        records = loaded.edits.log(0).records
        assert [(r.time_d, r.beam_index, r.action) for r in records] == [
            (1001.0, 2, EditAction.FLAG),
            (1001.0, 2, EditAction.UNFLAG),
        ]
        assert loaded.store.get(0).esf_changed

    def test_deferred_edits_flush_later(self, session, stacked_swath, listener):
        session.config.grid.recompute_immediately = False
        session.load_file(stacked_swath)
        session.make_grid(cell_size=1.0)
        value_before = session.grid.value.copy()

        session.on_edit(0, 0, 0, BeamFlag.MANUAL, FlushPolicy.NO_FLUSH)
        session.on_edit(0, 0, 1, BeamFlag.MANUAL, FlushPolicy.NO_FLUSH)
        assert listener.cells == []
        assert session.grid.pending_cells == 1
        np.testing.assert_array_equal(session.grid.value, value_before)

        assert not session.on_edit(0, 0, 0, BeamFlag.OK, FlushPolicy.FLUSH_PREVIOUS)
        assert session.store.ping(0, 0).flag(0) is BeamFlag.MANUAL
        assert session.grid.pending_cells == 0
        assert listener.flushes == 1
        assert listener.cells == [(0, 0, pytest.approx(10.0))]
        assert session.grid.cell(0, 0).weight == pytest.approx(4.0, rel=1e-3)

    def test_null_beam_edit_rejected(self, session):
        flags = np.array([BeamFlag.OK, BeamFlag.NULL, BeamFlag.OK])
        session.load_file(SwathFile(path=None, pings=[make_ping(1000.0, [10.0] * 3, flags=flags)]))
        assert not session.on_edit(0, 0, 1, BeamFlag.OK)
        assert session.n_rejected_edits == 1
        assert session.store.ping(0, 0).flag(1) is BeamFlag.NULL
        assert len(session.edits.log(0)) == 0

    def test_invalid_addresses(self, loaded):
        with pytest.raises(IndexError):
            loaded.on_edit(0, 0, 3, BeamFlag.MANUAL)
        with pytest.raises(IndexError):
            loaded.on_edit(0, -1, 0, BeamFlag.MANUAL)
        with pytest.raises(IndexError):
            loaded.on_edit(0, 2, 0, BeamFlag.MANUAL)
        assert len(loaded.edits.log(0)) == 0
        assert all(ping.flag(0) is BeamFlag.OK for ping in loaded.store.pings_of(0))
        with pytest.raises(UnknownFileError):
            loaded.on_edit(5, 0, 0, BeamFlag.MANUAL)

    def test_unload_empties_grid(self, loaded, listener):
        replaced = listener.replaced
        loaded.unload_file(0)
        for acc in loaded.grid.accumulator_state():
            assert not acc.any()
        assert loaded.grid.n_cells_with_data == 0
        assert listener.replaced == replaced + 1
        assert len(loaded.store) == 0

    def test_loading_into_existing_grid_adds_beams(self, loaded):
        weight = grid_weight(loaded)
        loaded.load_file(SwathFile(
            path=None,
            pings=[make_ping(2000.0, [20.0, 20.0, 20.0])],
            beamwidth_xtrack=2.0,
            beamwidth_ltrack=2.0,
        ))
        assert grid_weight(loaded) > weight
        assert 10.0 < loaded.grid.cell(0, 0).value < 20.0

    def test_sounding_info(self, loaded):
        loaded.on_edit(0, 1, 2, BeamFlag.FILTER)
        info = loaded.sounding_info(0, 1, 2)
        assert "ping 1 beam 2" in info
        assert "depth 10.000 m" in info
        assert info.endswith("flag filter")

    def test_flag_counts(self, loaded):
        loaded.on_edit(0, 1, 2, BeamFlag.FILTER)
        counts = loaded.flag_counts()
        assert counts["ok"] == 5
        assert counts["filter"] == 1


class TestSessionFiles:
    def test_save_and_reload_reproduces_state(self, tmp_path, projection):
        path = tmp_path / "line.npz"
        SwathWriter().save(make_line(), path)

        config = EditorConfig()
        first = EditorSession(config, projection=projection)
        first.load_file(path)
        first.make_grid(cell_size=5.0)
        edits = [(0, 3, BeamFlag.MANUAL), (4, 10, BeamFlag.FILTER), (4, 10, BeamFlag.OK),
                 (7, 20, BeamFlag.SONAR), (12, 0, BeamFlag.FILTER2)]
        for ping, beam, flag in edits:
            first.on_edit(0, ping, beam, flag)
        assert first.save_edits() == len(edits)
        assert len(read_edit_log(tmp_path / "line.npz.esf")) == len(edits)

        second = EditorSession(config, projection=projection)
        second.load_file(path)
        assert second.last_replay.applied == len(edits)
        for a, b in zip(first.store.pings_of(0), second.store.pings_of(0)):
            np.testing.assert_array_equal(a.flags, b.flags)
        assert second.store.ping(0, 7).flag(20) is BeamFlag.MANUAL
        assert second.store.ping(0, 12).flag(0) is BeamFlag.FILTER

        second.make_grid(cell_size=5.0)
        assert second.grid.spec == first.grid.spec
        for a, b in zip(first.grid.accumulator_state(), second.grid.accumulator_state()):
            np.testing.assert_array_equal(a, b)

    def test_unload_saves_edits(self, tmp_path, projection):
        path = tmp_path / "line.npz"
        SwathWriter().save(make_line(n_pings=3), path)
        session = EditorSession(projection=projection)
        swath = session.load_file(path)
        session.on_edit(swath.file_id, 1, 5, BeamFlag.MANUAL)
        assert not (tmp_path / "line.npz.esf").exists()

        session.unload_file(swath.file_id)
        assert len(read_edit_log(tmp_path / "line.npz.esf")) == 1

    def test_failed_save_keeps_state_consistent(self, tmp_path, projection):
        config = EditorConfig()
        config.grid.cell_size = 5.0
        config.edit_log.flush_each_edit = True
        session = EditorSession(config, projection=projection)
        swath = session.load_file(make_line(path=tmp_path / "missing" / "line.npz"))
        session.make_grid()

        with pytest.raises(OSError):
            session.on_edit(swath.file_id, 5, 5, BeamFlag.MANUAL)

        ping = swath.pings[5]
        assert ping.flag(5) is BeamFlag.MANUAL
        assert len(session.edits.log(swath.file_id).pending) == 1
        report = session.edits.apply(
            swath.file_id,
            [p.flags_original for p in swath.pings],
            swath.ping_times,
            swath.multiplicities,
        )
        for replayed, p in zip(report.flags, swath.pings):
            np.testing.assert_array_equal(replayed, p.flags)

        rebuilt = IncrementalGrid(session.grid.spec, session.config.grid)
        rebuilt.rebuild_from(list(session.gridded_beams()))
        for a, b in zip(rebuilt.accumulator_state(), session.grid.accumulator_state()):
            np.testing.assert_array_equal(a, b)

        # The pending edit is written once the directory exists
        (tmp_path / "missing").mkdir()
        assert session.save_edits() == 1
        assert len(read_edit_log(tmp_path / "missing" / "line.npz.esf")) == 1

    def test_corrupt_edit_log_leaves_file_unloaded(self, tmp_path, projection):
        path = tmp_path / "line.npz"
        SwathWriter().save(make_line(n_pings=3), path)
        (tmp_path / "line.npz.esf").write_bytes(b"garbage")

        session = EditorSession(projection=projection)
        with pytest.raises(EditLogError):
            session.load_file(path)
        assert len(session.store) == 0

    def test_make_grid_without_files(self, session):
        with pytest.raises(GridNotReadyError):
            session.make_grid()

    def test_close_releases_everything(self, session, stacked_swath):
        session.load_file(stacked_swath)
        session.make_grid(cell_size=1.0)
        session.close()
        assert len(session.store) == 0
        assert session.grid is None

    def test_utm_projection_chosen_when_missing(self, stacked_swath):
        session = EditorSession()
        session.load_file(stacked_swath)
        session.make_grid(cell_size=1.0)
        assert session.projection.projection_id == "UTM19N"
        assert session.grid.spec.projection_id == "UTM19N"
        assert session.grid.cell(0, 0).value == pytest.approx(10.0)


class TestSessionBias:
    def test_apply_bias_moves_soundings_and_rebuilds(self, session, line_swath, listener):
        session.load_file(line_swath)
        session.make_grid()
        bathcorr = line_swath.pings[0].bathcorr.copy()
        replaced = listener.replaced

        session.on_bias_changed(5.0, 0.0, 0.0, 0.0, 1.0)

        assert session.bias == BiasParameters(roll=5.0)
        assert not np.allclose(line_swath.pings[0].bathcorr, bathcorr)
        assert listener.biases == [BiasParameters(roll=5.0)]
        assert listener.replaced == replaced + 1
        expected = sum(int(session.grid.contribution(beam).weight.sum()) for beam in session.gridded_beams())
        assert grid_weight(session) == expected

    def test_rebuilt_mass_is_near_one_per_beam(self, session, line_swath):
        session.load_file(line_swath)
        session.make_grid()
        session.apply_bias(BiasParameters(roll=5.0))

        # Padded so that no footprint is clipped by the grid edge
        spec = session.grid.spec
        padded = IncrementalGrid(
            GridSpec.from_bounds(spec.x_min - 50.0, spec.x_max + 50.0, spec.y_min - 50.0, spec.y_max + 50.0, spec.dx),
            session.config.grid,
        )
        beams = list(session.gridded_beams())
        padded.rebuild_from(beams)

        assert len(beams) == 20 * 21
        assert 0.9 * len(beams) <= padded.total_weight <= len(beams) * (1.0 + 1e-6)
        assert session.grid.total_weight <= padded.total_weight * (1.0 + 1e-9)

    def test_edit_after_bias_is_reversible(self, session, line_swath):
        session.load_file(line_swath)
        session.make_grid()
        session.apply_bias(BiasParameters(roll=3.0, heading=1.0))
        before = session.grid.accumulator_state()
        session.on_edit(0, 10, 10, BeamFlag.MANUAL)
        session.on_edit(0, 10, 10, BeamFlag.OK)
        for a, b in zip(before, session.grid.accumulator_state()):
            np.testing.assert_array_equal(a, b)

    def test_preview_requires_selection(self, session, line_swath):
        session.load_file(line_swath)
        with pytest.raises(ValueError):
            session.preview_bias(BiasParameters(roll=1.0))

    def test_preview_leaves_grid_untouched(self, session, line_swath):
        session.load_file(line_swath)
        session.make_grid()
        session.select(RectRegion.from_corners(-60.0, -10.0, 60.0, 50.0))
        before = session.grid.accumulator_state()

        buffer = session.preview_bias(BiasParameters(roll=2.0))
        assert buffer.bias.roll == 2.0
        assert session.bias == BiasParameters()
        for a, b in zip(before, session.grid.accumulator_state()):
            np.testing.assert_array_equal(a, b)

    def test_optimize_roll(self, session):
        swath = make_line(roll_error=1.0)
        session.load_file(swath)
        session.select(NavSelection.from_pairs((0, k) for k in range(swath.n_pings)))

        best = session.optimize_bias(BiasMode.ROLL)
        assert best.roll == pytest.approx(1.0, abs=0.05)
        assert best.pitch == 0.0
        assert session.selection.bias == best
        np.testing.assert_allclose(session.selection.depth(), 100.0, atol=0.1)


class TestSessionSelection:
    def test_edit_updates_selection(self, session, line_swath):
        session.load_file(line_swath)
        buffer = session.select(RectRegion.from_corners(-60.0, -10.0, 60.0, 50.0))
        index = buffer.find(0, 2, 4)
        assert index is not None

        session.on_edit(0, 2, 4, BeamFlag.FILTER)
        assert buffer.records["flag"][index] == BeamFlag.FILTER
        assert buffer.n_flagged == 1

    def test_unload_dismisses_selection(self, session, line_swath, listener):
        session.load_file(line_swath)
        session.select(RectRegion.from_corners(-60.0, -10.0, 60.0, 50.0))
        session.unload_file(0)
        assert session.selection is None
        assert listener.dismissed == 1

    def test_selection_uses_current_bias(self, session):
        session.load_file(make_line(roll_error=2.0))
        session.apply_bias(BiasParameters(roll=2.0))
        buffer = session.select(RectRegion.from_corners(-60.0, -10.0, 60.0, 50.0))
        np.testing.assert_allclose(buffer.depth(), 100.0, atol=1e-6)
