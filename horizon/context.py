"""Periodic per-node acquisition over a shared sliding window."""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from app.poll import Clock, format_wall_time, next_boundary, sleep_until, to_iso

from .core import DEFAULT_REFRESH_MS, DEFAULT_WINDOW, MetricSelector, NodeStream, window_bounds
from .exceptions import OutOfOrderError, StatsError
from .fetcher import MetricFetcher

LOGGER = logging.getLogger(__name__)

Listener = Callable[["SeriesContext"], None]


class SeriesContext:
    """Owns the timeline of one selector and the streams of every roster node.

    Every stream shares the selector and the bucket grid derived from the last
    tick. Buffers are only touched from the event loop thread, by this
    context's own tick handlers; results that arrive after :meth:`close` are
    dropped.
    """

    def __init__(
        self,
        selector: MetricSelector,
        roster: Sequence[str],
        fetcher: MetricFetcher,
        *,
        refresh_ms: int = DEFAULT_REFRESH_MS,
        window_length: int = DEFAULT_WINDOW,
        refetch_buckets: int = 1,
        stall_after: Optional[int] = None,
        clock: Clock = time.time,
    ) -> None:
        if refresh_ms <= 0:
            raise ValueError("refresh_ms must be greater than zero")
        if refetch_buckets < 0:
            raise ValueError("refetch_buckets cannot be negative")
        self.selector = selector
        self.roster: Tuple[str, ...] = tuple(roster)
        self.fetcher = fetcher
        self.refresh_ms = refresh_ms
        self.window_length = window_length
        self.refetch_buckets = refetch_buckets
        self.stall_after = stall_after
        self._clock = clock

        self.streams: Dict[str, NodeStream] = {
            node: NodeStream(node, selector.step_seconds, window_length) for node in self.roster
        }
        self.running = False
        self.closed = False
        self.last_tick: Optional[float] = None
        self.window: Optional[Tuple[int, int]] = None
        self.tick_count = 0
        self._task: Optional[asyncio.Task] = None
        self._inflight: Dict[str, asyncio.Task] = {}
        self._listeners: List[Listener] = []

    def __repr__(self) -> str:
        return (
            f"SeriesContext(metric={self.selector.metric_name!r}, step={self.selector.step_seconds}, "
            f"nodes={len(self.roster)}, running={self.running})"
        )

    @property
    def step_seconds(self) -> int:
        return self.selector.step_seconds

    @property
    def refresh_seconds(self) -> float:
        return self.refresh_ms / 1000.0

    def current_window(self) -> Tuple[int, int]:
        if self.window is not None:
            return self.window
        return window_bounds(self._clock(), self.step_seconds, self.window_length)

    # lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self.closed:
            raise RuntimeError("A closed SeriesContext cannot be restarted")
        if self.running:
            return
        loop = asyncio.get_running_loop()
        self.running = True
        self._task = loop.create_task(self._run(), name=f"series-{self.selector.metric_name}")
        LOGGER.info(
            "Started %s every %dms for %d nodes",
            self.selector.metric_name,
            self.refresh_ms,
            len(self.roster),
        )

    def stop(self) -> None:
        if not self.running and self._task is None:
            return
        self.running = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
        LOGGER.info("Stopped %s after %d ticks", self.selector.metric_name, self.tick_count)

    def close(self) -> None:
        """Stop ticking and drop every buffer; late fetch results are ignored."""
        self.stop()
        self.closed = True
        self._listeners.clear()
        for stream in self.streams.values():
            stream.clear()
        self.streams = {}

    async def _run(self) -> None:
        try:
            while self.running:
                await self.tick()
                if not self.running:
                    break
                target = next_boundary(self._clock(), self.refresh_seconds)
                LOGGER.debug("Next %s tick at %s", self.selector.metric_name, format_wall_time(target))
                await sleep_until(target, self._clock)
        except asyncio.CancelledError:
            LOGGER.debug("Tick loop for %s cancelled", self.selector.metric_name)
            raise

    # acquisition ---------------------------------------------------------

    async def tick(self) -> None:
        if self.closed:
            return
        now = self._clock()
        start, stop = window_bounds(now, self.step_seconds, self.window_length)
        self.last_tick = now
        self.window = (start, stop)
        self.tick_count += 1

        loop = asyncio.get_running_loop()
        tasks: List[asyncio.Task] = []
        for node in self.roster:
            stream = self.streams[node]
            stream.evict_before(start)
            if node in self._inflight:
                LOGGER.debug("Previous fetch for %s still running, skipping tick", node)
                continue
            if self._stalled(stream):
                continue
            since = self._since(stream, start)
            if since >= stop:
                continue
            task = loop.create_task(self._refresh(stream, since, stop))
            self._inflight[node] = task
            task.add_done_callback(lambda done, node=node: self._forget(node, done))
            tasks.append(task)

        self._notify()
        if tasks:
            await asyncio.wait(tasks)

    def _forget(self, node: str, task: asyncio.Task) -> None:
        if self._inflight.get(node) is task:
            del self._inflight[node]

    def _since(self, stream: NodeStream, window_start: int) -> int:
        last_good = stream.last_populated_timestamp
        if last_good is None:
            since = window_start
        else:
            since = last_good + self.step_seconds * (1 - self.refetch_buckets)
        head = stream.first_timestamp
        if head is not None:
            since = max(since, head)
        return max(since, window_start)

    def _stalled(self, stream: NodeStream) -> bool:
        if self.stall_after is None or stream.consecutive_failures < self.stall_after:
            return False
        return self.tick_count % self.stall_after != 0

    async def _refresh(self, stream: NodeStream, since: int, stop: int) -> None:
        node = stream.node_id
        count = (stop - since) // self.step_seconds
        try:
            values = await self.fetcher.fetch(node, self.selector.metric_name, since, stop, self.step_seconds)
        except StatsError as exc:
            if self.closed:
                return
            self._record_failure(stream, since, count, exc)
        except Exception as exc:  # noqa: BLE001
            if self.closed:
                return
            LOGGER.exception("Unexpected error while fetching %s", node)
            self._record_failure(stream, since, count, exc)
        else:
            if self.closed:
                LOGGER.debug("Discarding %s result for %s from a superseded context", self.selector.metric_name, node)
                return
            try:
                stream.merge(since, values)
            except OutOfOrderError as exc:
                self._record_failure(stream, since, count, exc)
            else:
                if stream.consecutive_failures:
                    LOGGER.info("%s recovered after %d failed fetches", node, stream.consecutive_failures)
                stream.consecutive_failures = 0
                stream.last_error = None
        self._notify()

    def _record_failure(self, stream: NodeStream, since: int, count: int, exc: Exception) -> None:
        stream.mark_missing(since, count)
        stream.consecutive_failures += 1
        stream.last_error = str(exc)
        if stream.consecutive_failures == 1:
            LOGGER.warning("Unable to load %s for %s: %s", self.selector.metric_name, stream.node_id, exc)
        else:
            LOGGER.debug(
                "Still unable to load %s for %s (%d failures): %s",
                self.selector.metric_name,
                stream.node_id,
                stream.consecutive_failures,
                exc,
            )

    # observers -----------------------------------------------------------

    def subscribe(self, listener: Listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Listener %r failed", listener)

    # exports -------------------------------------------------------------

    def to_frame(self) -> pd.DataFrame:
        """Buffers as a UTC-indexed frame, one column per node, NaN for gaps."""
        columns = {node: self.streams[node].to_series() for node in self.roster if node in self.streams}
        if not columns:
            return pd.DataFrame()
        frame = pd.DataFrame(columns)
        frame.index.name = "timestamp"
        return frame.sort_index()

    def snapshot(self) -> Dict[str, object]:
        return {
            "metric": self.selector.metric_name,
            "step_seconds": self.step_seconds,
            "refresh_ms": self.refresh_ms,
            "running": self.running,
            "closed": self.closed,
            "last_tick": self.last_tick,
            "last_tick_at": to_iso(self.last_tick),
            "window": list(self.window) if self.window else None,
            "ticks": self.tick_count,
            "streams": {
                node: {
                    "buckets": len(stream),
                    "missing": sum(1 for bucket in stream if bucket.missing),
                    "failures": stream.consecutive_failures,
                    "last_error": stream.last_error,
                }
                for node, stream in self.streams.items()
            },
        }
