"""
Hardware package - Stage hardware abstraction.

This package contains the adapter contract between the stage core and the
acquisition software, plus its implementations.

Modules:
    base: Adapter contract, Position, Axis, ConnectionState and range checks
    simulated: Deterministic adapter used in Simulation mode
    pycromanager: Pycromanager-based adapter for real hardware
"""

from zstage_control.hardware.base import (
    Axis,
    ConnectionState,
    HardwareAdapter,
    HardwareError,
    Position,
    StageConnectionError,
    StageMovementError,
    is_axis_in_range,
    is_coordinate_in_range,
)
from zstage_control.hardware.simulated import SimulatedAdapter

__all__ = [
    "Axis",
    "ConnectionState",
    "HardwareAdapter",
    "HardwareError",
    "Position",
    "SimulatedAdapter",
    "StageConnectionError",
    "StageMovementError",
    "is_axis_in_range",
    "is_coordinate_in_range",
]

# Optional: Export PycromanagerAdapter if pycromanager is installed
try:
    from zstage_control.hardware.pycromanager import PycromanagerAdapter, init_pycromanager
    __all__.extend(["PycromanagerAdapter", "init_pycromanager"])
except ImportError:
    # pycromanager not installed, skip these exports
    pass
