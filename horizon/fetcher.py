"""Async access to bucketed detail stats for one node at a time."""
from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, List, Optional

from .exceptions import MalformedResponseError, TransportError

LOGGER = logging.getLogger(__name__)


def expected_bucket_count(window_start: int, window_stop: int, step_seconds: int) -> int:
    if step_seconds <= 0:
        raise ValueError("step_seconds must be greater than zero")
    if window_start >= window_stop:
        raise ValueError(f"window_start {window_start} must precede window_stop {window_stop}")
    span = window_stop - window_start
    if span % step_seconds:
        raise ValueError(f"window span {span}s is not a multiple of the {step_seconds}s step")
    return span // step_seconds


class MetricFetcher:
    """Request one segment of pre-aggregated buckets; no state, no retries.

    ``service`` is anything exposing ``get_detail_stats`` with the keyword
    arguments of :meth:`app.stats_client.StatsService.get_detail_stats`. The
    call blocks, so it runs on the loop's default executor.
    """

    def __init__(self, service: Any, *, timeout_s: Optional[float] = None) -> None:
        self.service = service
        self.timeout_s = timeout_s

    async def fetch(
        self,
        node_id: str,
        metric_name: str,
        window_start: int,
        window_stop: int,
        step_seconds: int,
    ) -> List[Optional[float]]:
        expected = expected_bucket_count(window_start, window_stop, step_seconds)
        loop = asyncio.get_running_loop()
        call = functools.partial(
            self.service.get_detail_stats,
            node_name=node_id,
            start=window_start,
            stop=window_stop,
            step=step_seconds,
            interval=step_seconds,
            name=metric_name,
            timeout=self.timeout_s,
        )
        try:
            values = await asyncio.wait_for(loop.run_in_executor(None, call), timeout=self.timeout_s)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"Detail stats for {node_id} timed out after {self.timeout_s}s") from exc

        if values is None:
            raise MalformedResponseError(f"Detail stats for {node_id} returned no payload")
        values = list(values)
        if len(values) != expected:
            raise MalformedResponseError(
                f"Detail stats for {node_id} returned {len(values)} buckets, expected {expected}"
            )
        LOGGER.debug("Fetched %d buckets of %s for %s", expected, metric_name, node_id)
        return values
