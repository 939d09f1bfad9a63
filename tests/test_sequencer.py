"""
Unit tests for the auto-step sequencer.

Sequences are driven by a ManualScheduler so every tick is deterministic.
"""

import math

import numpy as np
import pytest

from tests.conftest import EventRecorder
from zstage_control.hardware.base import ConnectionState
from zstage_control.stage.events import ControllerEvent
from zstage_control.stage.metrics import MetricKind
from zstage_control.stage.sequencer import AutoStepParams, Direction, SequencerState


@pytest.fixture
def events(sim_controller):
    return EventRecorder(sim_controller.events)


class TestDirection:
    """Test direction parsing."""

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("Up", Direction.UP),
            ("down", Direction.DOWN),
            ("DOWN", Direction.DOWN),
            (-3, Direction.DOWN),
            (2.5, Direction.UP),
            (0, Direction.UP),
            ("sideways", Direction.UP),
            (Direction.DOWN, Direction.DOWN),
        ],
    )
    def test_parse(self, value, expected):
        assert Direction.parse(value) is expected


class TestAutoStepParams:
    """Test parameter validation."""

    def test_valid_parameters(self):
        assert AutoStepParams(2.0, 5, 0.1).validate() == (True, "")

    @pytest.mark.parametrize(
        "step, steps, delay, fragment",
        [
            (0.0, 5, 0.5, "Step size"),
            (1001.0, 5, 0.5, "Step size"),
            (float("nan"), 5, 0.5, "Step size"),
            (1.0, 0, 0.5, "Number of steps"),
            (1.0, 1001, 0.5, "Number of steps"),
            (1.0, 2.5, 0.5, "Number of steps"),
            (1.0, 5, 0.05, "Delay"),
            (1.0, 5, 11.0, "Delay"),
        ],
    )
    def test_invalid_parameters(self, step, steps, delay, fragment):
        valid, message = AutoStepParams(step, steps, delay).validate()

        assert valid is False
        assert message.startswith(fragment)

    def test_planned_offsets(self):
        """Test the cumulative offsets of a downward sequence."""
        params = AutoStepParams(1.5, 3, 0.5, Direction.DOWN)

        assert params.planned_offsets() == [-1.5, -3.0, -4.5]


class TestSequence:
    """Test complete and cancelled sequences."""

    def test_five_step_sweep(self, sim_controller, manual_scheduler, events):
        """Test a 5 x 2 um sweep from Z = 0 in Simulation mode."""
        sequencer = sim_controller.sequencer

        assert sim_controller.start_auto_stepping(2, 5, 0.1, "Up", True) is True
        manual_scheduler.advance(1.0)

        assert sim_controller.position.z == pytest.approx(10.0)
        assert [sample.position.z for sample in sequencer.last_session.collected] == [2.0, 4.0, 6.0, 8.0, 10.0]
        assert events.count(ControllerEvent.AUTO_STEP_COMPLETE) == 1
        assert sequencer.state is SequencerState.COMPLETED
        assert sequencer.current_step == sequencer.total_steps == 5
        assert manual_scheduler.active_timers == []

    def test_complete_fires_once_after_exact_ticks(self, sim_controller, manual_scheduler, events):
        """Test that completion happens on the last tick and not before."""
        sim_controller.start_auto_stepping(1.0, 3, 0.5)

        manual_scheduler.advance(1.0)
        assert sim_controller.sequencer.current_step == 2
        assert events.count(ControllerEvent.AUTO_STEP_COMPLETE) == 0

        manual_scheduler.advance(0.5)
        assert sim_controller.sequencer.current_step == 3
        assert events.count(ControllerEvent.AUTO_STEP_COMPLETE) == 1

        manual_scheduler.advance(5.0)
        assert events.count(ControllerEvent.AUTO_STEP_COMPLETE) == 1
        assert sim_controller.position.z == pytest.approx(3.0)

    def test_start_while_running_is_ignored(self, sim_controller, manual_scheduler):
        """Test that a second start() changes neither progress nor schedule."""
        sequencer = sim_controller.sequencer
        sim_controller.start_auto_stepping(1.0, 10, 0.5)
        manual_scheduler.advance(1.0)
        timers_before = manual_scheduler.active_timers

        assert sim_controller.start_auto_stepping(5.0, 3, 0.2) is False

        assert sequencer.current_step == 2
        assert sequencer.total_steps == 10
        assert manual_scheduler.active_timers == timers_before

    def test_invalid_start_changes_nothing(self, sim_controller, manual_scheduler):
        """Test that rejected parameters leave the sequencer idle."""
        assert sim_controller.start_auto_stepping(0.0, 5, 0.5) is False

        assert sim_controller.sequencer.state is SequencerState.IDLE
        assert manual_scheduler.active_timers == []

    def test_stop_ends_sequence(self, sim_controller, manual_scheduler, events):
        """Test that stop() cancels, returns to Idle and reports the end."""
        sequencer = sim_controller.sequencer
        sim_controller.start_auto_stepping(1.0, 5, 0.5)
        manual_scheduler.advance(1.0)

        assert sim_controller.stop_auto_stepping() is True

        assert sequencer.state is SequencerState.IDLE
        assert events.count(ControllerEvent.AUTO_STEP_COMPLETE) == 1
        assert sequencer.current_step == 2
        assert sequencer.total_steps == 5

        manual_scheduler.advance(5.0)
        assert sim_controller.position.z == pytest.approx(2.0)

    def test_stop_while_idle_is_noop(self, sim_controller, events):
        """Test that stopping an idle sequencer emits nothing."""
        assert sim_controller.stop_auto_stepping() is False
        assert events.count(ControllerEvent.AUTO_STEP_COMPLETE) == 0

    def test_restart_after_completion(self, sim_controller, manual_scheduler):
        """Test that a completed sequence can be followed by a new one."""
        sim_controller.start_auto_stepping(1.0, 2, 0.5)
        manual_scheduler.advance(1.0)

        assert sim_controller.start_auto_stepping(1.0, 4, 0.5, Direction.DOWN) is True
        assert sim_controller.sequencer.current_step == 0

        manual_scheduler.advance(2.0)
        assert sim_controller.position.z == pytest.approx(-2.0)

    def test_move_failure_stops_sequence(self, sim_controller, manual_scheduler, events):
        """Test that a rejected move (stage limit) ends the sequence early."""
        sim_controller.set_position(4995.0)
        sim_controller.start_auto_stepping(2.0, 5, 0.5)

        manual_scheduler.advance(5.0)

        sequencer = sim_controller.sequencer
        assert sequencer.state is SequencerState.IDLE
        assert sequencer.current_step == 3
        assert sim_controller.position.z == pytest.approx(4999.0)
        assert events.count(ControllerEvent.AUTO_STEP_COMPLETE) == 1

    def test_degrade_mid_sweep(self, hw_controller, fake_adapter, manual_scheduler):
        """Test that a hardware failure stops the sweep in Simulation mode."""
        hw_controller.start_auto_stepping(1.0, 5, 0.5)
        manual_scheduler.advance(1.0)
        fake_adapter.fail_on.add("move")

        manual_scheduler.advance(0.5)

        assert hw_controller.connection_state is ConnectionState.SIMULATION
        assert not hw_controller.is_auto_running
        assert hw_controller.position.z == pytest.approx(2.0)


class TestMetricRecording:
    """Test metric collection and max tracking during a sweep."""

    def test_rising_metric_tracks_last_position(self, sim_controller, manual_scheduler):
        """Test that a monotonically rising metric leaves one Max bookmark at the end."""
        sim_controller.start_auto_stepping(2, 5, 0.1, Direction.UP, True)
        manual_scheduler.advance(1.0)

        max_bookmarks = [b for b in sim_controller.bookmarks if b.label.startswith("Max Std Dev")]
        assert len(max_bookmarks) == 1
        assert max_bookmarks[0].label == "Max Std Dev (20.0)"
        assert max_bookmarks[0].z == pytest.approx(10.0)

    def test_falling_metric_keeps_first_position(self, sim_controller, manual_scheduler):
        """Test that the Max bookmark stays on the best step when values fall."""
        sim_controller.set_position(50.0)
        sim_controller.start_auto_stepping(2, 5, 0.1)
        manual_scheduler.advance(1.0)

        max_bookmark = sim_controller.bookmarks.find("Max Std Dev (58.0)")
        assert max_bookmark is not None
        assert max_bookmark.z == pytest.approx(52.0)
        assert len(sim_controller.bookmarks) == 1

    def test_active_kind_is_tracked(self, sim_controller, manual_scheduler):
        """Test that max tracking follows the active metric kind."""
        sim_controller.set_metric_kind(MetricKind.MEAN)
        sim_controller.start_auto_stepping(2, 3, 0.5)
        manual_scheduler.advance(2.0)

        labels = sim_controller.bookmarks.labels()
        assert len(labels) == 1
        assert labels[0].startswith("Max Mean")

    def test_empty_buffer_sweep_leaves_no_max(self, hw_controller, fake_adapter, manual_scheduler):
        """Test that a sweep without image data records NaN and bookmarks nothing."""
        fake_adapter.buffer = np.array([])
        hw_controller.start_auto_stepping(1, 3, 0.5)
        manual_scheduler.advance(2.0)

        values = hw_controller.get_auto_step_metrics()["values"]["Std Dev"]
        assert len(values) == 3
        assert all(math.isnan(value) for value in values)
        assert hw_controller.connection_state is ConnectionState.CONNECTED
        assert len(hw_controller.bookmarks) == 0

    def test_max_skips_nan_then_tracks_first_finite(self, hw_controller, fake_adapter, manual_scheduler):
        """Test that a finite value after NaN readings becomes the Max bookmark."""
        fake_adapter.buffer = np.array([])
        hw_controller.start_auto_stepping(1, 3, 0.5)
        manual_scheduler.advance(0.5)
        assert len(hw_controller.bookmarks) == 0

        fake_adapter.buffer = np.arange(9, dtype=np.uint16).reshape(3, 3)
        manual_scheduler.advance(1.0)

        assert hw_controller.bookmarks.labels() == ["Max Std Dev (2.7)"]
        assert hw_controller.bookmarks.get(1).z == pytest.approx(2.0)

    def test_no_recording(self, sim_controller, manual_scheduler):
        """Test that record_metrics=False moves without collecting."""
        sim_controller.start_auto_stepping(2, 3, 0.5, record_metrics=False)
        manual_scheduler.advance(2.0)

        assert sim_controller.position.z == pytest.approx(6.0)
        assert sim_controller.get_auto_step_metrics() == {"positions": [], "values": {}}
        assert len(sim_controller.bookmarks) == 0

    def test_get_metrics_series(self, sim_controller, manual_scheduler):
        """Test the per-kind series returned after a sweep."""
        sim_controller.start_auto_stepping(2, 5, 0.1)
        manual_scheduler.advance(1.0)

        metrics = sim_controller.get_auto_step_metrics()

        assert metrics["positions"] == pytest.approx([2.0, 4.0, 6.0, 8.0, 10.0])
        assert set(metrics["values"]) == {"Std Dev", "Mean", "Max"}
        assert all(len(series) == 5 for series in metrics["values"].values())
        assert metrics["values"]["Std Dev"] == pytest.approx([12.0, 14.0, 16.0, 18.0, 20.0])

    def test_session_summary(self, sim_controller, manual_scheduler):
        """Test the summary of a completed sweep."""
        sim_controller.start_auto_stepping(2, 5, 0.1)
        manual_scheduler.advance(1.0)

        summary = sim_controller.sequencer.last_session.summary()

        assert summary["total_steps"] == 5
        assert summary["start_position"] == pytest.approx(2.0)
        assert summary["end_position"] == pytest.approx(10.0)
        assert summary["total_distance"] == pytest.approx(8.0)
        assert summary["actual_step_size"] == pytest.approx(2.0)
        assert summary["requested_step_size"] == 2.0
        assert summary["requested_steps"] == 5
        assert summary["direction"] == "UP"
