"""
Append-only CSV log of saved bookmarks.

Every bookmark added to a ``BookmarkStore`` can be recorded here; on startup
the log is read back to rebuild the store.

File format (one header row, then one row per saved bookmark):
    timestamp,label,x_um,y_um,z_um,metric_kind,metric_value,mode

``mode`` is the connection mode when the row was written ("Connected" for
real hardware, "Simulation" for synthesised positions). Files written
without that column still load; their rows read as "Unknown".
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union
import csv
import logging

from zstage_control.stage.bookmarks import Bookmark
from zstage_control.stage.metrics import MetricKind, MetricSnapshot

logger = logging.getLogger(__name__)

CSV_HEADER = ["timestamp", "label", "x_um", "y_um", "z_um", "metric_kind", "metric_value", "mode"]

UNKNOWN_MODE = "Unknown"


@dataclass
class BookmarkRecord:
    """One row of the metadata log."""

    timestamp: str
    label: str
    x: float
    y: float
    z: float
    metric_kind: str
    metric_value: float

    # Connection mode at record time
    mode: str = UNKNOWN_MODE

    @classmethod
    def from_bookmark(
        cls, bookmark: Bookmark, timestamp: Optional[str] = None, mode: Optional[str] = None
    ) -> "BookmarkRecord":
        return cls(
            timestamp=timestamp or datetime.now().isoformat(timespec="seconds"),
            label=bookmark.label,
            x=bookmark.x,
            y=bookmark.y,
            z=bookmark.z,
            metric_kind=bookmark.metric.kind.value,
            metric_value=bookmark.metric.value,
            mode=mode or UNKNOWN_MODE,
        )

    def to_bookmark(self) -> Optional[Bookmark]:
        """Convert back to a Bookmark; None if the metric kind is unknown."""
        kind = MetricKind.parse(self.metric_kind)
        if kind is None:
            return None
        return Bookmark(self.label, self.x, self.y, self.z, MetricSnapshot(kind, self.metric_value))

    def as_row(self) -> List[str]:
        return [
            self.timestamp,
            self.label,
            f"{self.x:.4f}",
            f"{self.y:.4f}",
            f"{self.z:.4f}",
            self.metric_kind,
            f"{self.metric_value:.6g}",
            self.mode,
        ]


def _parse_timestamp(value: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return None


class BookmarkMetadataLog:
    """
    Metadata sink for ``BookmarkStore`` backed by a CSV file.

    Args:
        path: CSV file to append to. Parent directories are created on first write.
        mode_source: Optional callable returning the current connection mode
            (a ConnectionState or a string), written to each row's ``mode`` column
    """

    def __init__(self, path: Union[str, Path], mode_source: Optional[Callable[[], Any]] = None):
        self.path = Path(path)
        self.mode_source = mode_source

    def _current_mode(self) -> str:
        if self.mode_source is None:
            return UNKNOWN_MODE
        mode = self.mode_source()
        if isinstance(mode, Enum):
            mode = mode.value
        return str(mode) if mode else UNKNOWN_MODE

    def record(self, bookmark: Bookmark) -> BookmarkRecord:
        """Append one bookmark row, writing the header if the file is new."""
        record = BookmarkRecord.from_bookmark(bookmark, mode=self._current_mode())
        self.path.parent.mkdir(parents=True, exist_ok=True)
        write_header = not self.path.exists() or self.path.stat().st_size == 0

        with open(self.path, "a", newline="") as csvfile:
            writer = csv.writer(csvfile)
            if write_header:
                writer.writerow(CSV_HEADER)
            writer.writerow(record.as_row())

        logger.debug(f"Bookmark metadata written to {self.path}: {record.label} ({record.mode})")
        return record

    def load(self) -> List[BookmarkRecord]:
        """
        Read every record in file order.

        Rows that cannot be parsed are skipped with a warning. A missing file
        gives an empty list.
        """
        if not self.path.exists():
            logger.warning(f"Metadata file not found: {self.path}")
            return []

        records = []
        with open(self.path, "r", newline="") as csvfile:
            reader = csv.DictReader(csvfile)
            for line_number, row in enumerate(reader, start=2):
                try:
                    records.append(
                        BookmarkRecord(
                            timestamp=row["timestamp"],
                            label=row["label"],
                            x=float(row["x_um"]),
                            y=float(row["y_um"]),
                            z=float(row["z_um"]),
                            metric_kind=row["metric_kind"],
                            metric_value=float(row["metric_value"]),
                            mode=row.get("mode") or UNKNOWN_MODE,
                        )
                    )
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning(f"Skipping malformed metadata row {line_number} in {self.path}: {e}")
        return records

    def load_bookmarks(self) -> List[Bookmark]:
        """Records converted to bookmarks, skipping unknown metric kinds."""
        bookmarks = []
        for record in self.load():
            bookmark = record.to_bookmark()
            if bookmark is None:
                logger.warning(f"Skipping bookmark '{record.label}' with unknown metric {record.metric_kind!r}")
                continue
            bookmarks.append(bookmark)
        return bookmarks

    def session_stats(self) -> Dict[str, float]:
        """
        Summary of the log file.

        Returns:
            Dictionary with:
                - bookmark_count: Number of readable rows
                - duration_s: Seconds between the first and last parseable timestamp
                - average_rate: Rows per second (0 if the duration is 0)
                - file_size_kb: Size of the file in kilobytes
        """
        stats = {"bookmark_count": 0, "duration_s": 0.0, "average_rate": 0.0, "file_size_kb": 0.0}
        if not self.path.exists():
            return stats

        records = self.load()
        stats["bookmark_count"] = len(records)
        stats["file_size_kb"] = self.path.stat().st_size / 1024.0

        times = [t for t in (_parse_timestamp(r.timestamp) for r in records) if t is not None]
        if len(times) >= 2:
            stats["duration_s"] = (max(times) - min(times)).total_seconds()
        if stats["duration_s"] > 0:
            stats["average_rate"] = stats["bookmark_count"] / stats["duration_s"]
        return stats
