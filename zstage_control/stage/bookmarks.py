"""
Labelled position bookmarks.

Bookmarks are kept in insertion order and addressed by a 1-based index.
Labels are unique: adding an existing label replaces the old entry and moves
it to the end. A sweep keeps at most one "Max <kind>" bookmark per metric
kind, pointing at the best value seen so far.
"""

from dataclasses import dataclass
from numbers import Integral
from typing import Iterable, Iterator, List, Optional, Tuple
import logging
import math

from zstage_control.hardware.base import Position
from zstage_control.stage.metrics import MetricKind, MetricSnapshot

logger = logging.getLogger(__name__)

MAX_LABEL_LENGTH = 50
FORBIDDEN_LABEL_CHARS = '<>:"/\\|?*'


def validate_label(label) -> Tuple[bool, str]:
    """
    Check a user supplied bookmark label.

    Returns:
        (valid, error message). The message is empty for a valid label.
    """
    if not isinstance(label, str) or not label.strip():
        return False, "Please enter a label"
    if len(label) > MAX_LABEL_LENGTH:
        return False, f"Label too long (max {MAX_LABEL_LENGTH} characters)"
    if any(char in FORBIDDEN_LABEL_CHARS for char in label):
        return False, f"Label contains invalid characters ({FORBIDDEN_LABEL_CHARS})"
    return True, ""


def max_label_prefix(kind: MetricKind) -> str:
    return f"Max {kind.value}"


@dataclass(frozen=True)
class Bookmark:
    """A saved stage position with the metric observed there."""

    label: str
    x: float
    y: float
    z: float
    metric: MetricSnapshot

    @property
    def position(self) -> Position:
        return Position(self.x, self.y, self.z)


class BookmarkStore:
    """
    Ordered, label-keyed bookmark collection.

    Args:
        metadata_sink: Optional object with ``record(bookmark)``; called after
            every add() (including those made by update_max()).
    """

    def __init__(self, metadata_sink=None):
        self._bookmarks: List[Bookmark] = []
        self.metadata_sink = metadata_sink

    def __len__(self) -> int:
        return len(self._bookmarks)

    def __iter__(self) -> Iterator[Bookmark]:
        return iter(list(self._bookmarks))

    @property
    def count(self) -> int:
        return len(self._bookmarks)

    def labels(self) -> List[str]:
        return [bookmark.label for bookmark in self._bookmarks]

    def is_valid_index(self, index) -> bool:
        """True for an integer index in [1, count]."""
        if isinstance(index, bool) or not isinstance(index, Integral):
            return False
        return 1 <= index <= len(self._bookmarks)

    def _insert(self, bookmark: Bookmark) -> None:
        self._bookmarks = [b for b in self._bookmarks if b.label != bookmark.label]
        self._bookmarks.append(bookmark)

    def add(self, label: str, x: float, y: float, z: float, metric: Optional[MetricSnapshot] = None) -> Bookmark:
        """
        Add a bookmark, replacing any bookmark with the same label.

        Label syntax is not checked here; see ``validate_label``.
        """
        if metric is None:
            metric = MetricSnapshot(MetricKind.STD_DEV)
        bookmark = Bookmark(label, float(x), float(y), float(z), metric)
        self._insert(bookmark)
        logger.info(f"Bookmark '{label}' saved at ({x:.1f}, {y:.1f}, {z:.1f})")

        if self.metadata_sink is not None:
            try:
                self.metadata_sink.record(bookmark)
            except OSError as e:
                logger.error(f"Failed to write bookmark metadata for '{label}': {e}")
        return bookmark

    def remove(self, index) -> bool:
        """Remove the bookmark at a 1-based index. Out of range: no change, False."""
        if not self.is_valid_index(index):
            logger.warning(f"Invalid bookmark index: {index!r}")
            return False
        removed = self._bookmarks.pop(index - 1)
        logger.info(f"Bookmark '{removed.label}' removed")
        return True

    def get(self, index) -> Optional[Bookmark]:
        if not self.is_valid_index(index):
            return None
        return self._bookmarks[index - 1]

    def find(self, label: str) -> Optional[Bookmark]:
        for bookmark in self._bookmarks:
            if bookmark.label == label:
                return bookmark
        return None

    def update_max(self, kind: MetricKind, value: float, x: float, y: float, z: float) -> Optional[Bookmark]:
        """
        Replace the "Max <kind>" bookmark with one at the given position.

        The new label is ``"Max <kind> (<value to 1 decimal>)"``. NaN or
        infinite values are ignored.
        """
        if value is None or not math.isfinite(value):
            return None
        prefix = max_label_prefix(kind)
        self._bookmarks = [b for b in self._bookmarks if not b.label.startswith(prefix)]
        label = f"{prefix} ({value:.1f})"
        return self.add(label, x, y, z, MetricSnapshot(kind, float(value)))

    def load_records(self, bookmarks: Iterable[Bookmark]) -> int:
        """
        Rebuild the store from persisted bookmarks, oldest first.

        Later entries with the same label replace earlier ones, and only the
        last "Max <kind>" entry per kind is kept. The metadata sink is not
        called. Returns the resulting bookmark count.
        """
        self._bookmarks = []
        for bookmark in bookmarks:
            if bookmark.label.startswith("Max "):
                prefix = max_label_prefix(bookmark.metric.kind)
                if bookmark.label.startswith(prefix):
                    self._bookmarks = [b for b in self._bookmarks if not b.label.startswith(prefix)]
            self._insert(bookmark)
        logger.info(f"Loaded {len(self._bookmarks)} bookmark(s) from metadata")
        return len(self._bookmarks)

    def clear(self) -> None:
        self._bookmarks = []
