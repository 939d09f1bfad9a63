"""
Stage package - Position, metrics, bookmarks and auto-stepping.

Modules:
    events: ControllerEvent and the EventBus
    timers: Repeating, non-overlapping timers (threaded and manual)
    metrics: MetricKind, MetricSnapshot and the MetricEngine
    bookmarks: Bookmark and the BookmarkStore
    position: PositionState with the degrade-to-Simulation policy
    sequencer: AutoStepSequencer and its session/parameter types
    controller: StageController aggregate
"""

from zstage_control.stage.events import ControllerEvent, EventBus
from zstage_control.stage.timers import ManualScheduler, ThreadTimerScheduler
from zstage_control.stage.metrics import MetricEngine, MetricKind, MetricSnapshot
from zstage_control.stage.bookmarks import Bookmark, BookmarkStore, validate_label
from zstage_control.stage.position import PositionState
from zstage_control.stage.sequencer import (
    AutoStepParams,
    AutoStepSequencer,
    AutoStepSession,
    Direction,
    SequencerState,
)
from zstage_control.stage.controller import StageController

__all__ = [
    "AutoStepParams",
    "AutoStepSequencer",
    "AutoStepSession",
    "Bookmark",
    "BookmarkStore",
    "ControllerEvent",
    "Direction",
    "EventBus",
    "ManualScheduler",
    "MetricEngine",
    "MetricKind",
    "MetricSnapshot",
    "PositionState",
    "SequencerState",
    "StageController",
    "ThreadTimerScheduler",
    "validate_label",
]
