"""Pycromanager (Micro-Manager) implementation of the stage hardware adapter."""

from collections import OrderedDict
from typing import Dict, Any, Optional, Tuple
import logging
import platform
import re

import numpy as np
import psutil
from pycromanager import Core, Studio

from zstage_control.hardware.base import (
    Axis,
    HardwareAdapter,
    StageConnectionError,
    StageMovementError,
)

logger = logging.getLogger(__name__)

DEFAULT_MIN_MMCORE_VERSION = "10.0.0"


class MicroManagerConnectionError(StageConnectionError):
    """Raised when connection to Micro-Manager fails."""
    pass


def is_mm_running() -> bool:
    """Check if Micro-Manager is running as a Windows executable."""
    if platform.system() != "Windows":
        return False

    for proc in psutil.process_iter(["name"]):
        try:
            if proc.exe().find("Micro-Manager") > 0:
                return True
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            pass
    return False


def init_pycromanager(timeout_ms: int = 20000):
    """
    Initialize Pycromanager connection to Micro-Manager.

    Args:
        timeout_ms: Core command timeout in milliseconds

    Returns:
        Tuple of (core, studio)

    Raises:
        MicroManagerConnectionError: If connection fails with details about the failure
    """
    if not is_mm_running():
        error_msg = "Micro-Manager is not running"
        logger.error(error_msg)
        raise MicroManagerConnectionError(error_msg)

    logger.info("Connecting to Micro-Manager...")
    try:
        core = Core()
        studio = Studio()
        core.set_timeout_ms(timeout_ms)
        return core, studio
    except Exception as e:
        error_msg = f"Failed to connect to Micro-Manager ({type(e).__name__}: {e})"
        logger.error(error_msg)
        raise MicroManagerConnectionError(error_msg) from e


def parse_mmcore_version(version_info: str) -> Optional[Tuple[int, ...]]:
    """Extract the MMCore version tuple from ``core.get_version_info()`` output."""
    match = re.search(r"(\d+)\.(\d+)\.(\d+)", str(version_info))
    if not match:
        return None
    return tuple(int(part) for part in match.groups())


class PycromanagerAdapter(HardwareAdapter):
    """Stage adapter for Pycromanager-based microscopes."""

    def __init__(self, settings: Dict[str, Any], core: Optional[Core] = None, studio: Optional[Studio] = None):
        """
        Args:
            settings: Dictionary containing stage configuration
            core: Already connected Pycromanager Core; created on connect() if None
            studio: Pycromanager Studio object (used to stop live mode before snapping)
        """
        self.settings = settings
        self.core = core
        self.studio = studio

        hardware = settings.get("hardware", {})
        self.min_version = hardware.get("min_mmcore_version", DEFAULT_MIN_MMCORE_VERSION)
        self.z_stage_device = settings.get("stage", {}).get("z_stage")

    def connect(self) -> Tuple[bool, str]:
        if self.core is None:
            try:
                self.core, self.studio = init_pycromanager()
            except MicroManagerConnectionError as e:
                return False, str(e)

        compatible, message = self.check_version()
        if not compatible:
            return False, message

        if self.z_stage_device and self.core.get_focus_device() != self.z_stage_device:
            self.core.set_focus_device(self.z_stage_device)

        logger.info(f"Connected to Micro-Manager ({message})")
        return True, "Connected"

    def check_version(self) -> Tuple[bool, str]:
        """Compare the running MMCore version against the configured minimum."""
        try:
            version_info = self.core.get_version_info()
        except Exception as e:
            return False, f"Version check failed: {e}"

        found = parse_mmcore_version(version_info)
        required = parse_mmcore_version(self.min_version)
        if found is None or required is None:
            logger.warning(f"Could not parse MMCore version from {version_info!r}")
            return True, str(version_info)

        if found < required:
            message = (
                f"Incompatible Micro-Manager: MMCore {'.'.join(map(str, found))} "
                f"< required {self.min_version}"
            )
            logger.error(message)
            return False, message
        return True, str(version_info)

    def _require_core(self):
        if self.core is None:
            raise StageConnectionError("Not connected to Micro-Manager")
        return self.core

    def read_axis(self, axis: Axis) -> float:
        core = self._require_core()
        try:
            if axis is Axis.X:
                return float(core.get_x_position())
            if axis is Axis.Y:
                return float(core.get_y_position())
            return float(core.get_position())
        except Exception as e:
            raise StageConnectionError(f"Could not read {axis.value} position: {e}") from e

    def command_move(self, axis: Axis, delta_um: float) -> float:
        core = self._require_core()
        try:
            if axis is Axis.Z:
                start = float(core.get_position())
                core.set_relative_position(delta_um)
                core.wait_for_device(core.get_focus_device())
            else:
                start = float(core.get_x_position() if axis is Axis.X else core.get_y_position())
                dx, dy = (delta_um, 0.0) if axis is Axis.X else (0.0, delta_um)
                core.set_relative_xy_position(dx, dy)
                core.wait_for_device(core.get_xy_stage_device())
        except Exception as e:
            raise StageMovementError(f"{axis.value} move of {delta_um:+.2f} um failed: {e}") from e

        logger.debug(f"Commanded {axis.value} move {delta_um:+.2f} um from {start:.2f} um")
        return start + delta_um

    def get_pixel_buffer(self) -> Optional[np.ndarray]:
        """Snap an image and return its pixels (alpha channel removed)."""
        core = self._require_core()
        try:
            if core.is_sequence_running() and self.studio is not None:
                self.studio.live().set_live_mode(False)
            core.snap_image()
            tagged_image = core.get_tagged_image()
        except Exception as e:
            raise StageConnectionError(f"Image acquisition failed: {e}") from e

        tags = OrderedDict(sorted(tagged_image.tags.items()))
        pixels = np.asarray(tagged_image.pix)
        if pixels.size == 0:
            return None

        height, width = tags["Height"], tags["Width"]
        total_pixels = pixels.shape[0]
        if total_pixels % (height * width) != 0:
            logger.warning(f"Pixel count {total_pixels} does not match {width}x{height}")
            return pixels

        nchannels = total_pixels // (height * width)
        if nchannels > 1:
            pixels = pixels.reshape(height, width, nchannels)
            if nchannels == 4:
                pixels = pixels[:, :, :3]
        else:
            pixels = pixels.reshape(height, width)
        return pixels
