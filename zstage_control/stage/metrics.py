"""
Image quality metrics for focus tracking.

Metrics are computed over the pixel buffer returned by the connected
hardware adapter. In Simulation mode they are synthesised from the current
stage position with pure functions, so a sweep over the same positions
always produces the same series.

Metric Kinds:
    Std Dev: Sample standard deviation of all pixels (ddof=1)
    Mean: Arithmetic mean of all pixels
    Max: Maximum pixel value
    Laplacian Var: Variance of the Laplacian - sensitive to sharp edges
    Tenengrad: Mean squared Sobel gradient magnitude
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Union
import logging
import math

import cv2
import numpy as np

from zstage_control.hardware.base import Position
from zstage_control.stage.events import ControllerEvent, EventBus

logger = logging.getLogger(__name__)


class MetricKind(str, Enum):
    STD_DEV = "Std Dev"
    MEAN = "Mean"
    MAX = "Max"
    LAPLACIAN_VAR = "Laplacian Var"
    TENENGRAD = "Tenengrad"

    @classmethod
    def parse(cls, value: Union["MetricKind", str]) -> Optional["MetricKind"]:
        """Return the kind for an enum member or its display name, else None."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            for kind in cls:
                if kind.value.lower() == value.strip().lower():
                    return kind
        return None


DEFAULT_METRIC_KINDS = (MetricKind.STD_DEV, MetricKind.MEAN, MetricKind.MAX)


@dataclass(frozen=True)
class MetricSnapshot:
    """One metric reading. NaN means no data was available."""

    kind: MetricKind
    value: float = float("nan")

    @property
    def is_available(self) -> bool:
        return not math.isnan(self.value)


def _to_gray(values: np.ndarray) -> Optional[np.ndarray]:
    if values.ndim == 3 and values.shape[2] == 3:
        return cv2.cvtColor(values.astype(np.float32), cv2.COLOR_BGR2GRAY).astype(np.float64)
    if values.ndim == 2:
        return values
    return None


def compute_metric(kind: MetricKind, buffer: Any) -> float:
    """
    Compute one metric over a pixel buffer.

    Args:
        kind: Metric to compute
        buffer: Numeric array of any shape; gradient metrics need a 2-D
            (or 3-channel) image of at least 3x3 pixels

    Returns:
        Metric value, or NaN if the buffer holds too little data
    """
    if buffer is None:
        return float("nan")
    values = np.asarray(buffer, dtype=np.float64)
    flat = values.ravel()
    if flat.size == 0:
        return float("nan")

    if kind is MetricKind.STD_DEV:
        return float(np.std(flat, ddof=1)) if flat.size >= 2 else float("nan")
    if kind is MetricKind.MEAN:
        return float(np.mean(flat))
    if kind is MetricKind.MAX:
        return float(np.max(flat))

    gray = _to_gray(values)
    if gray is None or min(gray.shape) < 3:
        return float("nan")

    if kind is MetricKind.LAPLACIAN_VAR:
        laplacian = cv2.Laplacian(gray, cv2.CV_64F, ksize=3)
        return float(np.var(laplacian))

    sobel_x = cv2.Sobel(gray, cv2.CV_64F, 1, 0, ksize=3)
    sobel_y = cv2.Sobel(gray, cv2.CV_64F, 0, 1, ksize=3)
    return float(np.mean(sobel_x**2 + sobel_y**2))


def synthesize_metric(kind: MetricKind, position: Position) -> float:
    """
    Deterministic simulated metric value for a stage position.

    Every kind is periodic in Z with a focus-like peak at Z = 50 + 100*k um.
    Values are never negative.
    """
    x = float(position.x or 0.0)
    y = float(position.y or 0.0)
    z = float(position.z or 0.0)
    offset = (z % 100.0) - 50.0

    if kind is MetricKind.STD_DEV:
        value = 50.0 - abs(offset) + 10.0 * math.exp(-(x**2 + y**2) / 10000.0)
    elif kind is MetricKind.MEAN:
        value = 100.0 - math.sqrt(x**2 + y**2 + z**2) % 100.0
    elif kind is MetricKind.MAX:
        value = 200.0 - abs(z) % 150.0 + 5.0 * math.sin(x / 20.0) * math.cos(y / 20.0)
    elif kind is MetricKind.LAPLACIAN_VAR:
        value = 1000.0 * math.exp(-((offset / 15.0) ** 2))
    else:
        value = 2500.0 / (1.0 + (offset / 10.0) ** 2)
    return max(0.0, value)


class MetricEngine:
    """
    Holds the registered metric kinds, the active kind and the latest values.

    Args:
        settings: Settings dictionary; reads ``metrics.registered`` and ``metrics.default``
        position_state: PositionState used for the connection mode, the
            pixel buffer and the simulated position
        events: Event bus for MetricChanged
    """

    def __init__(self, settings: Dict[str, Any], position_state, events: Optional[EventBus] = None):
        self.position_state = position_state
        self.events = events or position_state.events

        metrics = settings.get("metrics", {})
        registered = []
        for name in metrics.get("registered") or []:
            kind = MetricKind.parse(name)
            if kind is None:
                logger.warning(f"Ignoring unknown metric kind in settings: {name!r}")
            elif kind not in registered:
                registered.append(kind)
        self._registered: Tuple[MetricKind, ...] = tuple(registered) or DEFAULT_METRIC_KINDS

        default = MetricKind.parse(metrics.get("default") or "")
        if default not in self._registered:
            default = self._registered[0]
        self.active_kind: MetricKind = default
        self._values: Dict[MetricKind, float] = {kind: float("nan") for kind in self._registered}

    @property
    def registered_kinds(self) -> Tuple[MetricKind, ...]:
        return self._registered

    @property
    def current_value(self) -> float:
        """Value of the active kind from the last update(); NaN if unavailable."""
        return self._values[self.active_kind]

    @property
    def snapshot(self) -> MetricSnapshot:
        return MetricSnapshot(self.active_kind, self.current_value)

    @property
    def values(self) -> Dict[MetricKind, float]:
        return dict(self._values)

    def set_metric_kind(self, kind) -> bool:
        """
        Select the active metric kind.

        Returns:
            False (active kind unchanged) if ``kind`` is unknown or not registered
        """
        parsed = MetricKind.parse(kind)
        if parsed is None or parsed not in self._registered:
            logger.warning(f"Rejected metric kind {kind!r}; registered: {[k.value for k in self._registered]}")
            return False
        if parsed is not self.active_kind:
            self.active_kind = parsed
            logger.info(f"Active metric set to {parsed.value}")
            self.events.emit(ControllerEvent.METRIC_CHANGED)
        return True

    def update(self) -> MetricSnapshot:
        """
        Refresh every registered metric.

        Connected: computed from a freshly fetched pixel buffer; an empty
        buffer sets every value to NaN. Otherwise synthesised from the
        current position.
        """
        buffer = None
        from_hardware = False
        if self.position_state.is_connected:
            from_hardware, buffer = self.position_state.get_pixel_buffer()

        if from_hardware:
            for kind in self._registered:
                self._values[kind] = compute_metric(kind, buffer)
        else:
            position = self.position_state.position
            for kind in self._registered:
                self._values[kind] = synthesize_metric(kind, position)

        logger.debug(f"Metric {self.active_kind.value} = {self.current_value:.3f}")
        self.events.emit(ControllerEvent.METRIC_CHANGED)
        return self.snapshot
