"""
Stage position and connection state.

``PositionState`` caches the X/Y/Z position, tracks the connection mode and
validates every move before it reaches a hardware adapter. While the state
is anything but Connected, calls are routed to an internal
``SimulatedAdapter`` so the stage stays operable without hardware.

All adapter calls go through ``_call_adapter``: it is the one place where a
hardware failure is caught, logged and turned into a switch to Simulation.
"""

from typing import Any, Callable, Dict, Optional, Tuple
import logging
import math
import time

from zstage_control.hardware.base import (
    Axis,
    ConnectionState,
    HardwareAdapter,
    Position,
    is_axis_in_range,
    is_finite_number,
)
from zstage_control.hardware.simulated import SimulatedAdapter
from zstage_control.stage.events import ControllerEvent, EventBus

logger = logging.getLogger(__name__)

# Status message prefix per kind of adapter call that can fail
_FAILURE_PREFIXES = {
    "connect": "Connection error",
    "move": "Movement error",
    "read": "Lost connection",
    "buffer": "Lost connection",
}


class PositionState:
    """
    Cached stage position plus connection/mode status.

    Args:
        settings: Settings dictionary (see ``zstage_control.config.DEFAULT_SETTINGS``)
        adapter: Hardware adapter for the real stage. None means Simulation only.
        events: Event bus used for StatusChanged and PositionChanged
    """

    def __init__(
        self,
        settings: Dict[str, Any],
        adapter: Optional[HardwareAdapter] = None,
        events: Optional[EventBus] = None,
    ):
        self.settings = settings
        self.adapter = adapter
        self.events = events or EventBus()
        self.simulator = SimulatedAdapter()

        stage = settings.get("stage", {})
        self.tolerance = float(stage.get("position_tolerance_um", 0.01))
        self.max_step = float(stage.get("max_step_um", 1000.0))
        self.settle_time_s = float(stage.get("settle_time_s", 0.2))

        self.position = Position(0.0, 0.0, 0.0)
        self.state = ConnectionState.DISCONNECTED
        self.status_message = "Disconnected"

    # Connection -------------------------------------------------------------

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    @property
    def is_simulation(self) -> bool:
        return self.state is ConnectionState.SIMULATION

    def _set_state(self, state: ConnectionState, message: str) -> None:
        self.state = state
        self.status_message = message
        self.events.emit(ControllerEvent.STATUS_CHANGED)

    def _degrade(self, message: str) -> None:
        logger.warning(f"Switching to Simulation mode: {message}")
        self.simulator.seed(self.position)
        self._set_state(ConnectionState.SIMULATION, message)

    def _call_adapter(self, operation: str, func: Callable, *args) -> Tuple[bool, Any]:
        """
        Run one adapter call; on any failure degrade to Simulation.

        Returns:
            (succeeded, result). ``result`` is None when the call failed.
        """
        try:
            return True, func(*args)
        except Exception as e:
            logger.error(f"Adapter {operation} failed: {e}")
            self._degrade(f"{_FAILURE_PREFIXES[operation]}: {e}")
            return False, None

    def connect(self) -> bool:
        """
        Connect to the hardware adapter, falling back to Simulation.

        Returns:
            True if the real hardware is connected
        """
        self._set_state(ConnectionState.CONNECTING, "Connecting...")

        if self.adapter is None:
            logger.info("No hardware adapter configured, running in Simulation mode")
            self.simulator.seed(self.position)
            self._set_state(ConnectionState.SIMULATION, SimulatedAdapter.MESSAGE)
            return False

        ok, result = self._call_adapter("connect", self.adapter.connect)
        if not ok:
            return False

        connected, message = result
        if not connected:
            self._degrade(message or SimulatedAdapter.MESSAGE)
            return False

        self.state = ConnectionState.CONNECTED
        self.status_message = message or "Connected"
        logger.info(f"Stage connected: {self.status_message}")

        with self.events.coalesced():
            self.events.emit(ControllerEvent.STATUS_CHANGED)
            for axis in Axis:
                ok, value = self._call_adapter("read", self.adapter.read_axis, axis)
                if not ok:
                    return False
                if is_finite_number(value):
                    self._commit(axis, float(value))
        return True

    def disconnect(self) -> None:
        if self.adapter is not None and self.is_connected:
            self._call_adapter("connect", self.adapter.disconnect)
        self._set_state(ConnectionState.DISCONNECTED, "Disconnected")

    def get_pixel_buffer(self) -> Tuple[bool, Any]:
        """Fetch a pixel buffer from the connected adapter (degrades on failure)."""
        if not self.is_connected:
            return True, None
        return self._call_adapter("buffer", self.adapter.get_pixel_buffer)

    # Moves ------------------------------------------------------------------

    def _commit(self, axis: Axis, value: float) -> None:
        self.position.set(axis, value)
        self.simulator.seed(self.position)

    def _validate_move(self, axis: Optional[Axis], delta: Any) -> Optional[str]:
        if axis is None:
            return "Unknown axis"
        if not is_finite_number(delta):
            return f"Invalid movement delta: {delta!r}"
        delta = float(delta)
        if delta == 0:
            return "Movement delta must be non-zero"
        if self.is_connected and abs(delta) > self.max_step:
            return f"Step size {abs(delta):.2f} um exceeds maximum of {self.max_step:.2f} um"
        target = self.position.get(axis) + delta
        if not is_axis_in_range(self.settings, axis, target):
            return f"Target {axis.value}={target:.2f} um is outside the stage limits"
        return None

    def move_stage(self, axis, delta) -> bool:
        """
        Move one axis by ``delta`` micrometers.

        Args:
            axis: Axis or axis name ('X', 'Y', 'Z')
            delta: Relative move in micrometers

        Returns:
            True if the move was accepted. False on validation failure or if
            the adapter failed (in which case the state is now Simulation).
        """
        parsed = Axis.parse(axis)
        error = self._validate_move(parsed, delta)
        if error:
            logger.warning(f"Move rejected: {error}")
            return False

        delta = float(delta)
        old = self.position.get(parsed)

        if not self.is_connected:
            self._commit(parsed, self.simulator.command_move(parsed, delta))
            self.events.emit(ControllerEvent.POSITION_CHANGED)
            return True

        ok, _ = self._call_adapter("move", self.adapter.command_move, parsed, delta)
        if not ok:
            return False

        if self.settle_time_s > 0:
            time.sleep(self.settle_time_s)

        ok, value = self._call_adapter("read", self.adapter.read_axis, parsed)
        if ok and is_finite_number(value):
            self._commit(parsed, float(value))
        else:
            self._commit(parsed, old + delta)

        logger.debug(f"{parsed.value} moved {delta:+.2f} um to {self.position.get(parsed):.2f} um")
        self.events.emit(ControllerEvent.POSITION_CHANGED)
        return True

    def set_xyz_position(self, x=None, y=None, z=None) -> bool:
        """
        Move to an absolute position. Axes given as None are left alone.

        Axes already within tolerance of the target are skipped. A call emits
        at most one PositionChanged, after every axis has been moved.

        Returns:
            True if every required move was accepted
        """
        targets = {}
        for axis, value in ((Axis.X, x), (Axis.Y, y), (Axis.Z, z)):
            if value is None:
                continue
            if not is_finite_number(value):
                logger.warning(f"Invalid {axis.value} target: {value!r}")
                return False
            if not is_axis_in_range(self.settings, axis, float(value)):
                return False
            targets[axis] = float(value)

        with self.events.coalesced():
            for axis, target in targets.items():
                delta = target - self.position.get(axis)
                if abs(delta) <= self.tolerance:
                    continue
                if not self.move_stage(axis, delta):
                    return False
        return True

    def set_position(self, z) -> bool:
        """Move Z to an absolute position."""
        return self.set_xyz_position(z=z)

    def reset_position(self, axis: str = "Z") -> bool:
        """Move one axis, or 'ALL' axes, back to zero."""
        if isinstance(axis, str) and axis.strip().upper() == "ALL":
            return self.set_xyz_position(0.0, 0.0, 0.0)
        parsed = Axis.parse(axis)
        if parsed is None:
            logger.warning(f"Cannot reset unknown axis: {axis!r}")
            return False
        old = self.position.get(parsed)
        success = self.set_xyz_position(**{parsed.value.lower(): 0.0})
        if success:
            logger.info(f"{parsed.value} position reset to 0 um (was {old:.1f} um)")
        return success

    def refresh_position(self) -> bool:
        """
        Poll the adapter and adopt readings that differ from the cached position.

        Only runs while Connected. Unreadable (NaN) axes are ignored.

        Returns:
            True if any axis changed
        """
        if not self.is_connected:
            return False

        changed = False
        for axis in Axis:
            ok, value = self._call_adapter("read", self.adapter.read_axis, axis)
            if not ok:
                break
            if not is_finite_number(value):
                continue
            value = float(value)
            old = self.position.get(axis)
            if old is None or math.isnan(old) or abs(value - old) > self.tolerance:
                self._commit(axis, value)
                changed = True

        if changed:
            self.events.emit(ControllerEvent.POSITION_CHANGED)
        return changed
