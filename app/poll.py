"""Wall-clock helpers used to keep acquisition ticks aligned."""
from __future__ import annotations

import asyncio
import math
import time
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], float]

# Scheduling slack: a boundary closer than this is treated as already reached.
MIN_DELAY_S = 0.001


def ceil_to_interval(timestamp: float, interval_seconds: float) -> float:
    if interval_seconds <= 0:
        raise ValueError("interval_seconds must be greater than zero")
    return math.ceil(timestamp / interval_seconds) * interval_seconds


def next_boundary(now: float, interval_seconds: float) -> float:
    """Return the first interval boundary strictly after ``now``."""
    target = ceil_to_interval(now, interval_seconds)
    if target - now < MIN_DELAY_S:
        target += interval_seconds
    return target


async def sleep_until(target_wall_time: float, clock: Clock = time.time) -> None:
    """Sleep until ``target_wall_time`` measured on ``clock``.

    Long waits are chopped so that a wall clock jump is noticed within half a second.
    """
    while True:
        remaining = target_wall_time - clock()
        if remaining <= 0:
            return
        await asyncio.sleep(min(remaining, 0.5))


def format_wall_time(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "-"
    return time.strftime("%H:%M:%S", time.localtime(timestamp))


def to_iso(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).astimezone().isoformat()
