"""
Z-Stage Control - Motorized Stage Positioning with Focus Metrics
================================================================

A control core for motorized microscope stages. Provides:

- Stage position tracking with automatic fallback to a Simulation mode
- Timed auto-step sequences along Z with metric recording
- Image quality metrics (std dev, mean, max, Laplacian, Tenengrad)
- Position bookmarks with running-maximum tracking and CSV metadata
- Configuration management for stage settings

The hardware side is reached through a HardwareAdapter; a Pycromanager
(Micro-Manager) implementation is included.

Example Usage:
-------------
from zstage_control import ConfigManager, StageController
from zstage_control.hardware.pycromanager import PycromanagerAdapter

config_mgr = ConfigManager()
settings = config_mgr.get_settings('config_default')

controller = StageController(settings, adapter=PycromanagerAdapter(settings))
controller.connect()
controller.start_refresh_timers()

# Sweep 20 steps of 2 um upwards, bookmarking the sharpest position
controller.start_auto_stepping(step_size=2.0, total_steps=20, delay_s=0.5)
"""

__version__ = "1.0.0"

from zstage_control.hardware.base import Axis, ConnectionState, HardwareAdapter, Position, is_coordinate_in_range
from zstage_control.hardware.simulated import SimulatedAdapter
from zstage_control.stage.controller import StageController
from zstage_control.stage.events import ControllerEvent
from zstage_control.stage.metrics import MetricKind, MetricSnapshot
from zstage_control.stage.sequencer import Direction
from zstage_control.metadata import BookmarkMetadataLog
# Note: PycromanagerAdapter is not imported here so the package works without
# a Micro-Manager installation. Import it directly when needed:
#   from zstage_control.hardware.pycromanager import PycromanagerAdapter
from zstage_control.config.manager import ConfigManager

__all__ = [
    "Axis",
    "BookmarkMetadataLog",
    "ConfigManager",
    "ConnectionState",
    "ControllerEvent",
    "Direction",
    "HardwareAdapter",
    "MetricKind",
    "MetricSnapshot",
    "Position",
    "SimulatedAdapter",
    "StageController",
    "is_coordinate_in_range",
]
