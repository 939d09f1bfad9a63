"""
Shared pytest fixtures for zstage_control tests.

Provides settings dictionaries, a scriptable fake hardware adapter, event
recording and synthetic images for metric testing.
"""

import cv2
import numpy as np
import pytest

from zstage_control.config.manager import get_default_settings
from zstage_control.hardware.base import (
    Axis,
    HardwareAdapter,
    Position,
    StageConnectionError,
    StageMovementError,
)
from zstage_control.stage.controller import StageController
from zstage_control.stage.events import ControllerEvent, EventBus
from zstage_control.stage.timers import ManualScheduler


class FakeAdapter(HardwareAdapter):
    """
    In-memory stand-in for a connected stage and camera.

    Failures are scripted by adding operation names ('connect', 'move',
    'read', 'buffer') to ``fail_on``. ``read_overrides`` forces the value
    returned by read_axis for an axis (e.g. NaN or a read-back offset).
    """

    def __init__(self, position=(0.0, 0.0, 0.0), buffer=None):
        self.positions = dict(zip(Axis, map(float, position)))
        self.buffer = buffer
        self.connect_result = (True, "Connected")
        self.fail_on = set()
        self.read_overrides = {}
        self.moves = []

    def connect(self):
        if "connect" in self.fail_on:
            raise StageConnectionError("ScanImage not running")
        return self.connect_result

    def read_axis(self, axis):
        if "read" in self.fail_on:
            raise StageConnectionError("read timed out")
        if axis in self.read_overrides:
            return self.read_overrides[axis]
        return self.positions[axis]

    def command_move(self, axis, delta_um):
        if "move" in self.fail_on:
            raise StageMovementError("motor stalled")
        self.positions[axis] += delta_um
        self.moves.append((axis, delta_um))
        return self.positions[axis]

    def get_pixel_buffer(self):
        if "buffer" in self.fail_on:
            raise StageConnectionError("camera offline")
        return self.buffer


class EventRecorder:
    """Collects every event emitted on a bus, in order."""

    def __init__(self, bus: EventBus):
        self.events = []
        for event in ControllerEvent:
            bus.subscribe(event, self.events.append)

    def count(self, event: ControllerEvent) -> int:
        return self.events.count(event)

    def clear(self):
        self.events.clear()


@pytest.fixture
def settings():
    """
    Default settings with no settle delay and finite stage limits.

    Returns:
        dict: Complete settings dictionary
    """
    config = get_default_settings()
    config["stage"]["settle_time_s"] = 0.0
    config["stage"]["limits"] = {
        "x_um": {"low": -10000.0, "high": 10000.0},
        "y_um": {"low": -10000.0, "high": 10000.0},
        "z_um": {"low": -5000.0, "high": 5000.0},
    }
    return config


@pytest.fixture
def fake_adapter():
    """
    Fake connected stage at the origin with a small gradient image as buffer.

    Returns:
        FakeAdapter: Scriptable adapter
    """
    buffer = np.arange(64, dtype=np.uint16).reshape(8, 8)
    return FakeAdapter(buffer=buffer)


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def recorder(event_bus):
    return EventRecorder(event_bus)


@pytest.fixture
def manual_scheduler():
    return ManualScheduler()


@pytest.fixture
def sim_controller(settings, manual_scheduler):
    """
    Controller without hardware, connected (i.e. in Simulation mode).

    Returns:
        StageController: Controller driven by a ManualScheduler
    """
    controller = StageController(settings, adapter=None, scheduler=manual_scheduler)
    controller.connect()
    return controller


@pytest.fixture
def hw_controller(settings, manual_scheduler, fake_adapter):
    """
    Controller connected to the fake adapter.

    Returns:
        StageController: Controller driven by a ManualScheduler
    """
    controller = StageController(settings, adapter=fake_adapter, scheduler=manual_scheduler)
    controller.connect()
    return controller


@pytest.fixture
def synthetic_focused_image():
    """
    Generate a synthetic focused image with high-frequency content.

    Returns:
        np.ndarray: 256x256 uint8 image with sharp grid lines and texture
    """
    size = 256
    img = np.zeros((size, size), dtype=np.uint8)

    # Sharp edges (high frequency content indicates good focus)
    for i in range(0, size, 32):
        img[i:i + 4, :] = 255
        img[:, i:i + 4] = 255

    rng = np.random.default_rng(0)
    noise = rng.integers(0, 30, (size, size), dtype=np.uint8)
    return np.clip(img.astype(np.int16) + noise, 0, 255).astype(np.uint8)


@pytest.fixture
def synthetic_blurred_image(synthetic_focused_image):
    """
    The focused image after a strong Gaussian blur (out of focus).

    Returns:
        np.ndarray: 256x256 uint8 image
    """
    return cv2.GaussianBlur(synthetic_focused_image, (31, 31), 10)


@pytest.fixture
def sample_stage_limits():
    """
    Sample stage limits configuration for coordinate validation testing.

    Returns:
        dict: Stage limit configuration dictionary
    """
    return {
        'stage': {
            'limits': {
                'x_um': {'low': 0.0, 'high': 100000.0},  # micrometers
                'y_um': {'low': 0.0, 'high': 75000.0},
                'z_um': {'low': 0.0, 'high': 10000.0}
            }
        }
    }


@pytest.fixture
def sample_position_valid():
    """
    Sample valid position within stage limits.

    Returns:
        Position: Valid position object
    """
    return Position(x=50000.0, y=37500.0, z=5000.0)


@pytest.fixture
def sample_position_out_of_range():
    """
    Sample position outside stage limits.

    Returns:
        Position: Out-of-range position object
    """
    return Position(x=150000.0, y=37500.0, z=5000.0)  # X exceeds max
