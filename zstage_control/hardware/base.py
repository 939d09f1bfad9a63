"""Hardware abstraction layer for stage positioning and image acquisition."""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Dict, Any, Tuple, Union
import math
import logging

import numpy as np

logger = logging.getLogger(__name__)


class HardwareError(Exception):
    """Base class for failures reported by a hardware adapter."""
    pass


class StageConnectionError(HardwareError):
    """Raised when the acquisition software is unreachable or unusable."""
    pass


class StageMovementError(HardwareError):
    """Raised when a move command could not be executed."""
    pass


class Axis(str, Enum):
    X = "X"
    Y = "Y"
    Z = "Z"

    @classmethod
    def parse(cls, value: Union["Axis", str]) -> Optional["Axis"]:
        """Return the Axis for ``value`` ('x', 'Z', Axis.Y, ...) or None."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().upper())
            except ValueError:
                return None
        return None


class ConnectionState(str, Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"
    SIMULATION = "Simulation"
    ERROR = "Error"


class Position:
    """Simple X/Y/Z stage position in micrometers."""

    def __init__(self, x: Optional[float] = None, y: Optional[float] = None, z: Optional[float] = None):
        self.x = x
        self.y = y
        self.z = z

    def populate_missing(self, current_position: "Position") -> None:
        """Populate missing coordinates with values from current_position."""
        if self.x is None:
            self.x = current_position.x
        if self.y is None:
            self.y = current_position.y
        if self.z is None:
            self.z = current_position.z

    def get(self, axis: Axis) -> Optional[float]:
        return getattr(self, axis.value.lower())

    def set(self, axis: Axis, value: float) -> None:
        setattr(self, axis.value.lower(), value)

    def copy(self) -> "Position":
        return Position(self.x, self.y, self.z)

    def as_tuple(self) -> Tuple[Optional[float], Optional[float], Optional[float]]:
        return (self.x, self.y, self.z)

    def __eq__(self, other):
        if not isinstance(other, Position):
            return NotImplemented
        return self.as_tuple() == other.as_tuple()

    def __repr__(self):
        return f"Position(x={self.x}, y={self.y}, z={self.z})"


class HardwareAdapter(ABC):
    """
    Contract between the stage core and the acquisition software.

    Implementations raise ``HardwareError`` subclasses on failure. They never
    have to degrade on their own; the caller owns that policy.
    """

    @abstractmethod
    def connect(self) -> Tuple[bool, str]:
        """Connect to the hardware. Returns (connected, human readable message)."""
        pass

    @abstractmethod
    def read_axis(self, axis: Axis) -> float:
        """Read the position of one axis in micrometers; NaN if unreadable."""
        pass

    @abstractmethod
    def command_move(self, axis: Axis, delta_um: float) -> float:
        """Move one axis by ``delta_um`` and return the expected new position."""
        pass

    @abstractmethod
    def get_pixel_buffer(self) -> Optional[np.ndarray]:
        """Return the most recent image as a numeric array, or None/empty."""
        pass

    def disconnect(self) -> None:
        """Release any resources held by the adapter."""
        pass


def is_finite_number(value: Any) -> bool:
    """True for real, finite numbers (bools and strings excluded)."""
    if isinstance(value, (bool, str, bytes)):
        return False
    try:
        return math.isfinite(float(value))
    except (TypeError, ValueError):
        return False


def is_axis_in_range(settings: Dict[str, Any], axis: Axis, value: float) -> bool:
    """
    Check a single axis value against the stage limits in settings.

    Limits are inclusive. An axis without a complete ``low``/``high`` entry
    is treated as unbounded.
    """
    stage_limits = settings.get("stage", {}).get("limits") or {}
    limits = stage_limits.get(f"{axis.value.lower()}_um") or {}
    if not isinstance(limits, dict):
        logger.warning(f"Ignoring malformed {axis.value} limits: {limits!r}")
        return True
    low = limits.get("low")
    high = limits.get("high")

    if low is None or high is None:
        return True

    if low <= value <= high:
        return True

    logger.warning(f"{axis.value} position {value} out of range [{low}, {high}]")
    return False


def is_coordinate_in_range(settings: Dict[str, Any], position: Position) -> bool:
    """
    Check if position is within stage limits defined in settings.

    Args:
        settings: Dictionary containing stage configuration
        position: Position object to check; None coordinates are skipped

    Returns:
        True if every specified coordinate is within limits, False otherwise
    """
    for axis in Axis:
        value = position.get(axis)
        if value is None:
            continue
        if not is_axis_in_range(settings, axis, value):
            return False
    return True
