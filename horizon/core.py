"""Timeline primitives shared by the acquisition engine and the renderer."""
from __future__ import annotations

import logging
import math
from collections import deque
from dataclasses import dataclass
from datetime import tzinfo
from typing import Deque, Iterator, List, Optional, Sequence, Tuple

import pandas as pd
from dateutil import tz

from .exceptions import OutOfOrderError

LOGGER = logging.getLogger(__name__)

DEFAULT_METRIC = "deltaPacketsPerSec"
DEFAULT_STEP_SECONDS = 5
DEFAULT_REFRESH_MS = 5000
DEFAULT_WINDOW = 1440

KNOWN_METRICS: Sequence[str] = (
    "deltaPacketsPerSec",
    "deltaBytesPerSec",
    "deltaSessionsPerSec",
    "deltaDroppedPerSec",
    "deltaFragsDroppedPerSec",
    "deltaOverloadDroppedPerSec",
    "deltaESDroppedPerSec",
    "deltaTotalDroppedPerSec",
    "monitoring",
    "tcpSessions",
    "udpSessions",
    "icmpSessions",
    "frags",
    "memory",
    "cpu",
    "diskQueue",
    "esQueue",
    "packetQueue",
    "closeQueue",
    "needSave",
)
INTERVAL_CHOICES: Sequence[int] = (5, 60, 600)
REFRESH_CHOICES: Sequence[int] = (5000, 15000, 30000, 60000)


@dataclass(frozen=True)
class MetricSelector:
    """What is being charted: one metric at one bucket width."""

    metric_name: str = DEFAULT_METRIC
    step_seconds: int = DEFAULT_STEP_SECONDS

    def __post_init__(self) -> None:
        if not self.metric_name or not str(self.metric_name).strip():
            raise ValueError("metric_name must be a non-empty string")
        if int(self.step_seconds) != self.step_seconds or self.step_seconds <= 0:
            raise ValueError("step_seconds must be a positive integer")


@dataclass
class DisplayPreferences:
    timezone: str = "local"

    def tzinfo(self) -> tzinfo:
        """Resolve the configured zone, falling back to the host zone."""
        if not self.timezone or self.timezone.lower() == "local":
            return tz.tzlocal()
        zone = tz.gettz(self.timezone)
        if zone is None:
            LOGGER.warning("Unknown timezone '%s', falling back to local time", self.timezone)
            return tz.tzlocal()
        return zone


@dataclass(frozen=True)
class Bucket:
    timestamp: int
    value: Optional[float] = None

    @property
    def missing(self) -> bool:
        return self.value is None


def align_down(timestamp: float, step_seconds: int) -> int:
    if step_seconds <= 0:
        raise ValueError("step_seconds must be greater than zero")
    return int(math.floor(timestamp / step_seconds)) * step_seconds


def window_bounds(now: float, step_seconds: int, window_length: int) -> Tuple[int, int]:
    """Return ``(start, stop)`` of the trailing window ending at the last complete bucket edge."""
    if window_length <= 0:
        raise ValueError("window_length must be greater than zero")
    stop = align_down(now, step_seconds)
    return stop - window_length * step_seconds, stop


class NodeStream:
    """Bounded, strictly ordered bucket buffer for one node.

    Buckets sit on a contiguous ``step_seconds`` grid. Writes never reorder the
    buffer: a segment that would land in front of the head, or off the grid,
    is rejected with :class:`OutOfOrderError` before anything is modified.
    """

    def __init__(self, node_id: str, step_seconds: int, capacity: int = DEFAULT_WINDOW) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be greater than zero")
        self.node_id = node_id
        self.step_seconds = step_seconds
        self.capacity = capacity
        self._buffer: Deque[Bucket] = deque(maxlen=capacity)
        self.consecutive_failures = 0
        self.last_error: Optional[str] = None

    def __len__(self) -> int:
        return len(self._buffer)

    def __iter__(self) -> Iterator[Bucket]:
        return iter(list(self._buffer))

    def __repr__(self) -> str:
        return f"NodeStream(node_id={self.node_id!r}, buckets={len(self._buffer)})"

    @property
    def buffer(self) -> List[Bucket]:
        return list(self._buffer)

    @property
    def first_timestamp(self) -> Optional[int]:
        return self._buffer[0].timestamp if self._buffer else None

    @property
    def last_timestamp(self) -> Optional[int]:
        return self._buffer[-1].timestamp if self._buffer else None

    @property
    def last_populated_timestamp(self) -> Optional[int]:
        for bucket in reversed(self._buffer):
            if bucket.value is not None:
                return bucket.timestamp
        return None

    def _check_segment(self, start: int) -> None:
        if start % self.step_seconds:
            raise OutOfOrderError(f"{self.node_id}: segment start {start} is off the {self.step_seconds}s grid")
        first = self.first_timestamp
        if first is not None and start < first:
            raise OutOfOrderError(f"{self.node_id}: segment start {start} precedes buffer head {first}")

    def _fill_gap_until(self, start: int) -> None:
        last = self.last_timestamp
        if last is None:
            return
        ts = last + self.step_seconds
        while ts < start:
            self._buffer.append(Bucket(ts))
            ts += self.step_seconds

    def merge(self, start: int, values: Sequence[Optional[float]]) -> int:
        """Write ``values`` for buckets beginning at ``start``.

        Buckets already buffered are overwritten, newer ones appended. Returns
        the number of buckets appended.
        """
        self._check_segment(start)
        self._fill_gap_until(start)
        appended = 0
        for offset, value in enumerate(values):
            ts = start + offset * self.step_seconds
            last = self.last_timestamp
            if last is not None and ts <= last:
                index = (ts - self._buffer[0].timestamp) // self.step_seconds
                self._buffer[index] = Bucket(ts, value)
            else:
                self._buffer.append(Bucket(ts, value))
                appended += 1
        return appended

    def mark_missing(self, start: int, count: int) -> int:
        """Append gaps for requested buckets past the tail; buffered buckets keep their value."""
        if count <= 0:
            return 0
        last = self.last_timestamp
        if last is not None and start > last:
            self._fill_gap_until(start)
        appended = 0
        for offset in range(count):
            ts = start + offset * self.step_seconds
            last = self.last_timestamp
            if last is not None and ts <= last:
                continue
            self._buffer.append(Bucket(ts))
            appended += 1
        return appended

    def evict_before(self, timestamp: int) -> int:
        evicted = 0
        while self._buffer and self._buffer[0].timestamp < timestamp:
            self._buffer.popleft()
            evicted += 1
        return evicted

    def clear(self) -> None:
        self._buffer.clear()

    def value_at(self, timestamp: int) -> Optional[float]:
        first = self.first_timestamp
        if first is None or timestamp < first or (timestamp - first) % self.step_seconds:
            return None
        index = (timestamp - first) // self.step_seconds
        if index >= len(self._buffer):
            return None
        return self._buffer[index].value

    def to_series(self) -> pd.Series:
        index = pd.to_datetime([bucket.timestamp for bucket in self._buffer], unit="s", utc=True)
        values = [float("nan") if bucket.value is None else bucket.value for bucket in self._buffer]
        return pd.Series(values, index=index, name=self.node_id, dtype="float64")


__all__ = [
    "DEFAULT_METRIC",
    "DEFAULT_REFRESH_MS",
    "DEFAULT_STEP_SECONDS",
    "DEFAULT_WINDOW",
    "INTERVAL_CHOICES",
    "KNOWN_METRICS",
    "REFRESH_CHOICES",
    "Bucket",
    "DisplayPreferences",
    "MetricSelector",
    "NodeStream",
    "align_down",
    "window_bounds",
]
