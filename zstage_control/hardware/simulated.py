"""Deterministic stand-in for the stage hardware."""

from typing import Optional, Tuple
import logging

import numpy as np

from zstage_control.hardware.base import Axis, HardwareAdapter, Position

logger = logging.getLogger(__name__)


class SimulatedAdapter(HardwareAdapter):
    """
    Bookkeeping adapter used while the core runs in Simulation mode.

    Moves are applied exactly and never fail. There is no camera, so the
    pixel buffer is always empty; metric values are synthesised by the
    metric engine instead.
    """

    MESSAGE = "Simulation Mode"

    def __init__(self, position: Optional[Position] = None):
        start = position or Position(0.0, 0.0, 0.0)
        self._positions = {
            Axis.X: float(start.x or 0.0),
            Axis.Y: float(start.y or 0.0),
            Axis.Z: float(start.z or 0.0),
        }

    def connect(self) -> Tuple[bool, str]:
        return True, self.MESSAGE

    def seed(self, position: Position) -> None:
        """Align the simulated axes with ``position`` (e.g. after a degrade)."""
        for axis in Axis:
            value = position.get(axis)
            if value is not None:
                self._positions[axis] = float(value)

    def read_axis(self, axis: Axis) -> float:
        return self._positions[axis]

    def command_move(self, axis: Axis, delta_um: float) -> float:
        self._positions[axis] += delta_um
        logger.debug(f"Simulated {axis.value} move {delta_um:+.2f} um -> {self._positions[axis]:.2f} um")
        return self._positions[axis]

    def get_pixel_buffer(self) -> Optional[np.ndarray]:
        return None
