"""
StageController - the aggregate a user interface talks to.

Owns the position state, metric engine, bookmark store and auto-step
sequencer, wires them to one event bus, and serialises every public call and
timer callback with a single re-entrant lock.

Example:
    controller = StageController(settings)   # no adapter: Simulation mode
    controller.connect()
    controller.events.subscribe(ControllerEvent.AUTO_STEP_COMPLETE, on_done)
    controller.start_auto_stepping(step_size=2, total_steps=5, delay_s=0.5)
"""

from threading import RLock
from typing import Any, Dict, List, Optional, Tuple
import logging

from zstage_control.config.manager import get_default_settings
from zstage_control.hardware.base import Axis, ConnectionState, HardwareAdapter, Position, is_finite_number
from zstage_control.metadata import BookmarkMetadataLog
from zstage_control.stage.bookmarks import Bookmark, BookmarkStore, validate_label
from zstage_control.stage.events import EventBus
from zstage_control.stage.metrics import MetricEngine, MetricSnapshot
from zstage_control.stage.position import PositionState
from zstage_control.stage.sequencer import AutoStepSequencer, Direction
from zstage_control.stage.timers import Scheduler, ThreadTimerScheduler, TimerHandle

logger = logging.getLogger(__name__)


class StageController:
    """
    Stage control core: position, metrics, bookmarks and auto-stepping.

    Args:
        settings: Complete settings dictionary (``ConfigManager.get_settings()``).
            Defaults to the built-in settings.
        adapter: Hardware adapter for the real stage; None runs in Simulation.
        scheduler: Timer scheduler. Defaults to a ThreadTimerScheduler that
            shares this controller's lock.
        metadata_log: Bookmark metadata sink. If None and
            ``bookmarks.metadata_file`` is set, a BookmarkMetadataLog is
            created for that file and existing bookmarks are loaded from it.
    """

    def __init__(
        self,
        settings: Optional[Dict[str, Any]] = None,
        adapter: Optional[HardwareAdapter] = None,
        scheduler: Optional[Scheduler] = None,
        metadata_log: Optional[BookmarkMetadataLog] = None,
    ):
        self.settings = settings if settings is not None else get_default_settings()
        self.lock = RLock()
        self.scheduler = scheduler or ThreadTimerScheduler(self.lock)
        self.events = EventBus()

        if metadata_log is None:
            metadata_file = self.settings.get("bookmarks", {}).get("metadata_file")
            if metadata_file:
                metadata_log = BookmarkMetadataLog(metadata_file)
        self.metadata_log = metadata_log

        self.position_state = PositionState(self.settings, adapter, self.events)
        self.metric_engine = MetricEngine(self.settings, self.position_state, self.events)
        self.bookmarks = BookmarkStore(metadata_sink=metadata_log)
        self.sequencer = AutoStepSequencer(
            self.settings,
            self.position_state,
            self.metric_engine,
            self.bookmarks,
            self.scheduler,
            self.events,
            lock=self.lock,
        )

        stage = self.settings.get("stage", {})
        self.step_sizes: List[float] = [float(s) for s in stage.get("step_sizes_um") or [1.0]]
        self.min_step = float(stage.get("min_step_um", 0.01))
        default_step = float(stage.get("default_step_um", self.step_sizes[0]))
        self.step_size_index = min(
            range(len(self.step_sizes)), key=lambda i: abs(self.step_sizes[i] - default_step)
        )

        self._refresh_timers: List[TimerHandle] = []

        if self.metadata_log is not None:
            if self.metadata_log.mode_source is None:
                self.metadata_log.mode_source = lambda: self.position_state.state
            self.bookmarks.load_records(self.metadata_log.load_bookmarks())

    # State ------------------------------------------------------------------

    @property
    def position(self) -> Position:
        return self.position_state.position.copy()

    @property
    def connection_state(self) -> ConnectionState:
        return self.position_state.state

    @property
    def status_message(self) -> str:
        return self.position_state.status_message

    @property
    def is_auto_running(self) -> bool:
        return self.sequencer.is_running

    @property
    def current_metric(self) -> MetricSnapshot:
        return self.metric_engine.snapshot

    @property
    def step_size(self) -> float:
        return self.step_sizes[self.step_size_index]

    # Connection -------------------------------------------------------------

    def connect(self) -> bool:
        """Connect to the hardware, falling back to Simulation. True if hardware is live."""
        with self.lock:
            return self.position_state.connect()

    def refresh_connection(self) -> bool:
        """Retry the hardware connection (e.g. after a degrade to Simulation)."""
        with self.lock:
            if self.sequencer.is_running:
                logger.warning("Cannot reconnect while auto-stepping is running")
                return False
            logger.info("Refreshing connection")
            return self.position_state.connect()

    # Movement ---------------------------------------------------------------

    def move_stage(self, delta) -> bool:
        """Move Z by ``delta`` micrometers."""
        with self.lock:
            return self.position_state.move_stage(Axis.Z, delta)

    def move_stage_x(self, delta) -> bool:
        with self.lock:
            return self.position_state.move_stage(Axis.X, delta)

    def move_stage_y(self, delta) -> bool:
        with self.lock:
            return self.position_state.move_stage(Axis.Y, delta)

    def move_stage_manual(self, step_size, direction) -> bool:
        """
        Move Z by one manual step.

        Args:
            step_size: Positive step in micrometers
            direction: +1 (up) or -1 (down)
        """
        if isinstance(direction, bool) or direction not in (1, -1):
            logger.warning(f"Invalid direction: {direction!r} (must be 1 or -1)")
            return False
        if not is_finite_number(step_size) or step_size < self.min_step:
            logger.warning(f"Invalid step size: {step_size!r}")
            return False
        return self.move_stage(float(step_size) * direction)

    def set_position(self, z) -> bool:
        """Move Z to an absolute position."""
        with self.lock:
            return self.position_state.set_position(z)

    def set_xyz_position(self, x=None, y=None, z=None) -> bool:
        with self.lock:
            return self.position_state.set_xyz_position(x, y, z)

    def reset_position(self, axis: str = "Z") -> bool:
        """Move ``axis`` ('X', 'Y', 'Z' or 'ALL') to zero."""
        with self.lock:
            return self.position_state.reset_position(axis)

    def refresh_position(self) -> bool:
        """Poll the hardware position. Skipped while auto-stepping."""
        with self.lock:
            if self.sequencer.is_running:
                return False
            return self.position_state.refresh_position()

    def change_step_size(self, current_index: int, change: int) -> Tuple[int, float]:
        """
        Move through the preset step sizes.

        Args:
            current_index: 0-based index into ``step_sizes``
            change: Offset, e.g. +1 for the next larger step

        Returns:
            (new index clamped to the list, step size at that index)
        """
        new_index = max(0, min(int(current_index) + int(change), len(self.step_sizes) - 1))
        self.step_size_index = new_index
        return new_index, self.step_sizes[new_index]

    # Metrics ----------------------------------------------------------------

    def update_metric(self) -> MetricSnapshot:
        with self.lock:
            return self.metric_engine.update()

    def set_metric_kind(self, kind) -> bool:
        with self.lock:
            return self.metric_engine.set_metric_kind(kind)

    # Auto-stepping ----------------------------------------------------------

    def start_auto_stepping(
        self,
        step_size=None,
        total_steps=None,
        delay_s=None,
        direction=Direction.UP,
        record_metrics: bool = True,
    ) -> bool:
        """Start an auto-step sequence; omitted parameters use the configured defaults."""
        autostep = self.settings.get("autostep", {})
        if step_size is None:
            step_size = autostep.get("default_step_um", 10.0)
        if total_steps is None:
            total_steps = autostep.get("default_steps", 10)
        if delay_s is None:
            delay_s = autostep.get("default_delay_s", 0.5)

        with self.lock:
            return self.sequencer.start(step_size, total_steps, delay_s, direction, record_metrics)

    def stop_auto_stepping(self) -> bool:
        with self.lock:
            return self.sequencer.stop()

    def get_auto_step_metrics(self) -> Dict[str, Any]:
        """Positions and per-kind value series of the current or last sequence."""
        with self.lock:
            return self.sequencer.get_metrics()

    # Bookmarks --------------------------------------------------------------

    def mark_current_position(self, label) -> Optional[Bookmark]:
        """
        Bookmark the current position with the current metric.

        Returns:
            The new bookmark, or None if the label is invalid
        """
        valid, message = validate_label(label)
        if not valid:
            logger.warning(f"Cannot mark position: {message}")
            return None

        with self.lock:
            position = self.position_state.position
            snapshot = self.metric_engine.snapshot
            return self.bookmarks.add(label.strip(), position.x, position.y, position.z, snapshot)

    def go_to_marked_position(self, index) -> bool:
        """Move to the bookmark at a 1-based index. Rejected while auto-stepping."""
        with self.lock:
            bookmark = self.bookmarks.get(index)
            if bookmark is None:
                logger.warning(f"Invalid bookmark index: {index!r}")
                return False
            if self.sequencer.is_running:
                logger.warning("Cannot navigate to bookmark while auto-stepping is running")
                return False

            success = self.position_state.set_xyz_position(bookmark.x, bookmark.y, bookmark.z)
            if success:
                logger.info(
                    f"Moved to bookmark '{bookmark.label}': "
                    f"X:{bookmark.x:.1f}, Y:{bookmark.y:.1f}, Z:{bookmark.z:.1f} um"
                )
            return success

    def delete_marked_position(self, index) -> bool:
        with self.lock:
            return self.bookmarks.remove(index)

    # Timers -----------------------------------------------------------------

    def _timed_refresh_position(self) -> None:
        with self.lock:
            if self.position_state.is_connected and not self.sequencer.is_running:
                self.position_state.refresh_position()

    def _timed_update_metric(self) -> None:
        with self.lock:
            if not self.sequencer.is_running:
                self.metric_engine.update()

    def start_refresh_timers(self) -> None:
        """Start the periodic position and metric refresh."""
        with self.lock:
            if self._refresh_timers:
                return
            timers = self.settings.get("timers", {})
            self._refresh_timers = [
                self.scheduler.schedule_repeating(
                    float(timers.get("position_refresh_s", 0.5)), self._timed_refresh_position, name="position"
                ),
                self.scheduler.schedule_repeating(
                    float(timers.get("metric_refresh_s", 1.0)), self._timed_update_metric, name="metric"
                ),
            ]

    def stop_refresh_timers(self) -> None:
        with self.lock:
            for timer in self._refresh_timers:
                timer.cancel()
            self._refresh_timers = []

    def cleanup(self) -> None:
        """Stop any running sequence and every timer, then wait for timer threads to exit."""
        with self.lock:
            self.sequencer.stop()
            self.stop_refresh_timers()
        self.scheduler.close()
        logger.info("Stage controller cleaned up")
