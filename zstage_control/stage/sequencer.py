"""
Timed auto-step sequences along Z.

A sequence moves the Z axis by a fixed step on every timer tick, optionally
records the metric after each move, and keeps a "Max <kind>" bookmark on the
best position found so far.

States:
    IDLE -> RUNNING -> COMPLETED -> (next start) RUNNING
    RUNNING -> IDLE on stop()

AutoStepComplete is emitted whenever a sequence ends, whether it finished
all steps or was stopped. Compare ``current_step`` with ``total_steps`` to
tell the two apart.
"""

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from threading import RLock
from typing import Any, Dict, List, Optional, Tuple
import logging
import math
import time

from zstage_control.hardware.base import Axis, Position, is_finite_number
from zstage_control.stage.events import ControllerEvent, EventBus
from zstage_control.stage.metrics import MetricKind, MetricSnapshot
from zstage_control.stage.timers import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

# Fallbacks when the settings dictionary has no autostep section
DEFAULT_AUTOSTEP_LIMITS = {
    "min_step_um": 0.01,
    "max_step_um": 1000.0,
    "min_steps": 1,
    "max_steps": 1000,
    "min_delay_s": 0.1,
    "max_delay_s": 10.0,
}


class Direction(IntEnum):
    UP = 1
    DOWN = -1

    @classmethod
    def parse(cls, value) -> "Direction":
        """
        Convert 'Up'/'Down' (any case) or a signed number to a Direction.

        Zero, unknown strings and anything else map to UP.
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls.DOWN if value.strip().lower() == "down" else cls.UP
        if is_finite_number(value) and float(value) < 0:
            return cls.DOWN
        return cls.UP


class SequencerState(str, Enum):
    IDLE = "Idle"
    RUNNING = "Running"
    COMPLETED = "Completed"


@dataclass
class AutoStepParams:
    """Parameters of one auto-step sequence."""

    # Step size in micrometers (always positive, direction is separate)
    step_size: float

    # Number of steps to take
    total_steps: int

    # Seconds between ticks; should not be shorter than the stage settle time
    delay_s: float

    direction: Direction = Direction.UP

    # Update the metric and track maxima after every step
    record_metrics: bool = True

    def validate(self, limits: Optional[Dict[str, Any]] = None) -> Tuple[bool, str]:
        """
        Check the parameters against the autostep limits.

        Returns:
            (valid, error message)
        """
        limits = {**DEFAULT_AUTOSTEP_LIMITS, **(limits or {})}

        step = self.step_size
        if not is_finite_number(step) or not limits["min_step_um"] <= step <= limits["max_step_um"]:
            return False, (
                f"Step size must be between {limits['min_step_um']:.2f} and {limits['max_step_um']:.0f} um"
            )

        steps = self.total_steps
        if (
            not is_finite_number(steps)
            or float(steps) != int(steps)
            or not limits["min_steps"] <= steps <= limits["max_steps"]
        ):
            return False, f"Number of steps must be between {limits['min_steps']} and {limits['max_steps']}"

        delay = self.delay_s
        if not is_finite_number(delay) or not limits["min_delay_s"] <= delay <= limits["max_delay_s"]:
            return False, (
                f"Delay must be between {limits['min_delay_s']:.1f} and {limits['max_delay_s']:.1f} seconds"
            )
        return True, ""

    def planned_offsets(self) -> List[float]:
        """Cumulative Z offsets after each step."""
        step = self.step_size * int(self.direction)
        return [step * (i + 1) for i in range(int(self.total_steps))]


@dataclass
class AutoStepSample:
    """Position and metrics recorded after one step."""

    position: Position
    metric: MetricSnapshot
    values: Dict[MetricKind, float] = field(default_factory=dict)


@dataclass
class AutoStepSession:
    params: AutoStepParams
    current_step: int = 0
    collected: List[AutoStepSample] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    ended_at: Optional[float] = None

    # Best finite value per metric kind recorded in this session
    best: Dict[MetricKind, float] = field(default_factory=dict)

    @property
    def total_steps(self) -> int:
        return int(self.params.total_steps)

    @property
    def duration_s(self) -> float:
        end = self.ended_at if self.ended_at is not None else time.monotonic()
        return end - self.started_at

    def is_new_max(self, snapshot: MetricSnapshot) -> bool:
        if not snapshot.is_available:
            return False
        return snapshot.value > self.best.get(snapshot.kind, -math.inf)

    def summary(self) -> Dict[str, Any]:
        """Totals for the recorded part of the session."""
        positions = [sample.position.z for sample in self.collected]
        duration = self.duration_s
        summary = {
            "total_steps": len(positions),
            "duration_s": duration,
            "average_step_rate": len(positions) / max(duration, 0.1),
            "start_position": 0.0,
            "end_position": 0.0,
            "total_distance": 0.0,
            "actual_step_size": 0.0,
            "requested_step_size": self.params.step_size,
            "requested_steps": self.params.total_steps,
            "direction": self.params.direction.name,
        }
        if positions:
            distance = abs(positions[-1] - positions[0])
            summary.update(
                start_position=positions[0],
                end_position=positions[-1],
                total_distance=distance,
                actual_step_size=distance / max(len(positions) - 1, 1),
            )
        return summary


class AutoStepSequencer:
    """
    Drives auto-step sequences using a scheduler.

    Args:
        settings: Settings dictionary; reads the ``autostep`` section
        position_state: PositionState used for Z moves
        metric_engine: MetricEngine refreshed after each move
        bookmarks: BookmarkStore receiving "Max <kind>" updates
        scheduler: Scheduler for the repeating tick
        events: Event bus (defaults to the position state's bus)
        lock: Lock held while a tick runs; pass the owner's lock so ticks
            never interleave with its public calls
    """

    def __init__(
        self,
        settings,
        position_state,
        metric_engine,
        bookmarks,
        scheduler: Scheduler,
        events: Optional[EventBus] = None,
        lock: Optional[RLock] = None,
    ):
        self.limits = settings.get("autostep", {})
        self.position_state = position_state
        self.metric_engine = metric_engine
        self.bookmarks = bookmarks
        self.scheduler = scheduler
        self.lock = lock or RLock()
        self.events = events or position_state.events

        self.state = SequencerState.IDLE
        self.session: Optional[AutoStepSession] = None
        self.last_session: Optional[AutoStepSession] = None
        self._timer: Optional[TimerHandle] = None

    @property
    def is_running(self) -> bool:
        return self.state is SequencerState.RUNNING

    @property
    def current_step(self) -> int:
        session = self.session or self.last_session
        return session.current_step if session else 0

    @property
    def total_steps(self) -> int:
        session = self.session or self.last_session
        return session.total_steps if session else 0

    def start(self, step_size, total_steps, delay_s, direction=Direction.UP, record_metrics: bool = True) -> bool:
        """
        Start a new sequence.

        Returns:
            False (nothing changed) if a sequence is already running or the
            parameters are invalid
        """
        if self.is_running:
            logger.warning("Auto-step sequence already running")
            return False

        params = AutoStepParams(step_size, total_steps, delay_s, Direction.parse(direction), bool(record_metrics))
        valid, message = params.validate(self.limits)
        if not valid:
            logger.warning(f"Auto-step rejected: {message}")
            return False
        params.step_size = float(step_size)
        params.total_steps = int(total_steps)
        params.delay_s = float(delay_s)

        if self.session is not None:
            self.last_session = self.session
        self.session = AutoStepSession(params)
        self.state = SequencerState.RUNNING
        logger.info(
            f"Auto-step started: {params.total_steps} x {params.step_size:.2f} um "
            f"{params.direction.name}, every {params.delay_s:.2f} s"
        )
        self.events.emit(ControllerEvent.STATUS_CHANGED)
        self._timer = self.scheduler.schedule_repeating(params.delay_s, self._locked_tick, name="autostep")
        return True

    def stop(self) -> bool:
        """
        Cancel a running sequence. The tick in progress, if any, completes.

        Returns:
            False if no sequence was running (no event emitted)
        """
        if not self.is_running:
            return False
        logger.info(f"Auto-step stopped at step {self.current_step}/{self.total_steps}")
        self._finish(SequencerState.IDLE)
        return True

    def _finish(self, state: SequencerState) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        session = self.session
        session.ended_at = time.monotonic()
        self.last_session = session
        self.state = state
        if state is SequencerState.IDLE:
            self.session = None

        summary = session.summary()
        logger.info(
            f"Auto-step ended: {session.current_step}/{session.total_steps} steps, "
            f"{summary['total_distance']:.2f} um in {summary['duration_s']:.1f} s"
        )
        self.events.emit(ControllerEvent.STATUS_CHANGED)
        self.events.emit(ControllerEvent.AUTO_STEP_COMPLETE)

    def _locked_tick(self) -> None:
        with self.lock:
            self._tick()

    def _tick(self) -> None:
        if not self.is_running:
            return
        session = self.session
        params = session.params

        session.current_step += 1
        logger.debug(f"Auto-step tick {session.current_step}/{session.total_steps}")
        self.events.emit(ControllerEvent.STATUS_CHANGED)

        if not self.position_state.move_stage(Axis.Z, params.step_size * int(params.direction)):
            logger.warning(f"Auto-step move failed at step {session.current_step}, stopping")
            self.stop()
            return

        if params.record_metrics:
            snapshot = self.metric_engine.update()
            position = self.position_state.position.copy()
            session.collected.append(AutoStepSample(position, snapshot, self.metric_engine.values))
            if session.is_new_max(snapshot):
                session.best[snapshot.kind] = snapshot.value
                self.bookmarks.update_max(snapshot.kind, snapshot.value, position.x, position.y, position.z)

        if session.current_step >= session.total_steps:
            self._finish(SequencerState.COMPLETED)

    def get_metrics(self) -> Dict[str, Any]:
        """
        Recorded series of the current (or last) session.

        Returns:
            {"positions": [z, ...], "values": {kind name: [value, ...]}}
        """
        session = self.session or self.last_session
        if session is None:
            return {"positions": [], "values": {}}

        values: Dict[str, List[float]] = {}
        for sample in session.collected:
            for kind, value in sample.values.items():
                values.setdefault(kind.value, []).append(value)
        return {
            "positions": [sample.position.z for sample in session.collected],
            "values": values,
        }
