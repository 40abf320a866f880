"""Tests for the per-selector acquisition context."""

from __future__ import annotations

import asyncio
import math
from types import SimpleNamespace

import pytest

from horizon.context import SeriesContext
from horizon.core import MetricSelector
from horizon.exceptions import TransportError
from horizon.fetcher import MetricFetcher
from tests.conftest import get_test_logger
from tests.helpers import FakeClock, FakeFetcher, pairs_of, timestamps_of

logger = get_test_logger(__name__)
logger.info("Starting tests for horizon.context module")

METRIC = "deltaPacketsPerSec"


def _context(fetcher, clock: FakeClock, *, window: int = 2, roster=("node-a", "node-b"), **kwargs) -> SeriesContext:
    return SeriesContext(
        MetricSelector(METRIC, 5),
        roster,
        fetcher,
        refresh_ms=kwargs.pop("refresh_ms", 5000),
        window_length=window,
        clock=clock,
        **kwargs,
    )


def test_tick_populates_streams_and_isolates_failures(clock: FakeClock) -> None:
    """One node succeeding and one failing leaves values and gaps side by side."""
    logger.info("Running tick scenario test")
    fetcher = FakeFetcher({"node-a": [10.0, 12.0], "node-b": TransportError("down")})
    context = _context(fetcher, clock)

    asyncio.run(context.tick())

    assert context.window == (0, 10)
    assert pairs_of(context.streams["node-a"]) == [(0, 10.0), (5, 12.0)]
    assert pairs_of(context.streams["node-b"]) == [(0, None), (5, None)]
    assert context.streams["node-a"].consecutive_failures == 0
    assert context.streams["node-b"].consecutive_failures == 1
    assert context.streams["node-b"].last_error == "down"
    assert fetcher.calls_for("node-a") == [("node-a", METRIC, 0, 10, 5)]


def test_wrong_bucket_count_becomes_gaps() -> None:
    """Three values for a four-bucket window are discarded as malformed."""
    logger.info("Running malformed response handling test")
    service = SimpleNamespace(get_detail_stats=lambda **_: [1.0, 2.0, 3.0])
    context = _context(MetricFetcher(service), FakeClock(100.0), window=4, roster=("node-a",))

    asyncio.run(context.tick())

    stream = context.streams["node-a"]
    assert pairs_of(stream) == [(80, None), (85, None), (90, None), (95, None)]
    assert "expected 4" in stream.last_error


def test_following_ticks_request_only_the_tail() -> None:
    """After the first window only the last good bucket onwards is re-requested."""
    logger.info("Running incremental refetch test")
    clock = FakeClock(100.0)
    fetcher = FakeFetcher()
    context = _context(fetcher, clock, window=4, roster=("node-a",))

    asyncio.run(context.tick())
    clock.advance(5)
    asyncio.run(context.tick())

    assert fetcher.calls == [
        ("node-a", METRIC, 80, 100, 5),
        ("node-a", METRIC, 95, 105, 5),
    ]
    assert pairs_of(context.streams["node-a"]) == [(85, 85.0), (90, 90.0), (95, 95.0), (100, 100.0)]


def test_refetch_overlap_can_be_disabled() -> None:
    """With no overlap the request starts right after the last good bucket."""
    logger.info("Running zero overlap refetch test")
    clock = FakeClock(100.0)
    fetcher = FakeFetcher()
    context = _context(fetcher, clock, window=4, roster=("node-a",), refetch_buckets=0)

    asyncio.run(context.tick())
    clock.advance(5)
    asyncio.run(context.tick())

    assert fetcher.calls[-1] == ("node-a", METRIC, 100, 105, 5)


def test_failure_keeps_buffered_values_then_recovers() -> None:
    """A failed refresh only adds gaps past the tail; the next success fills them."""
    logger.info("Running failure then recovery test")
    clock = FakeClock(100.0)
    fetcher = FakeFetcher()
    context = _context(fetcher, clock, window=4, roster=("node-a",))
    stream = context.streams["node-a"]

    asyncio.run(context.tick())
    fetcher.outcomes["node-a"] = TransportError("flaky")
    clock.advance(5)
    asyncio.run(context.tick())

    assert pairs_of(stream) == [(85, 85.0), (90, 90.0), (95, 95.0), (100, None)]
    assert stream.consecutive_failures == 1

    del fetcher.outcomes["node-a"]
    clock.advance(5)
    asyncio.run(context.tick())

    assert fetcher.calls[-1] == ("node-a", METRIC, 95, 110, 5)
    assert pairs_of(stream) == [(90, 90.0), (95, 95.0), (100, 100.0), (105, 105.0)]
    assert stream.consecutive_failures == 0
    assert stream.last_error is None


def test_clock_jumps_never_reorder_buffers() -> None:
    """A backwards jump fetches nothing; a forward jump restarts the window."""
    logger.info("Running clock jump test")
    clock = FakeClock(100.0)
    fetcher = FakeFetcher()
    context = _context(fetcher, clock, window=4, roster=("node-a",))
    stream = context.streams["node-a"]

    asyncio.run(context.tick())
    before = pairs_of(stream)
    clock.now = 50.0
    asyncio.run(context.tick())

    assert len(fetcher.calls) == 1
    assert pairs_of(stream) == before

    clock.now = 1000.0
    asyncio.run(context.tick())

    assert fetcher.calls[-1] == ("node-a", METRIC, 980, 1000, 5)
    assert timestamps_of(stream) == [980, 985, 990, 995]


def test_node_with_fetch_in_flight_is_skipped(clock: FakeClock) -> None:
    """A slow node is not requested again until its previous fetch settles."""
    logger.info("Running in-flight skip test")
    fetcher = FakeFetcher()
    context = _context(fetcher, clock)

    async def scenario() -> None:
        fetcher.gate = asyncio.Event()
        first = asyncio.create_task(context.tick())
        await asyncio.sleep(0.01)
        assert len(fetcher.calls) == 2

        await context.tick()
        assert len(fetcher.calls) == 2

        fetcher.gate.set()
        await first
        await context.tick()

    asyncio.run(scenario())

    assert len(fetcher.calls) == 4
    assert fetcher.calls_for("node-a")[-1] == ("node-a", METRIC, 5, 10, 5)


def test_results_of_a_closed_context_are_discarded(clock: FakeClock) -> None:
    """Fetches that settle after close never write into the old buffers."""
    logger.info("Running superseded context test")
    fetcher = FakeFetcher({"node-b": TransportError("late failure")})
    context = _context(fetcher, clock)
    stream_a = context.streams["node-a"]
    stream_b = context.streams["node-b"]

    async def scenario() -> None:
        fetcher.gate = asyncio.Event()
        pending = asyncio.create_task(context.tick())
        await asyncio.sleep(0.01)
        context.close()
        fetcher.gate.set()
        await pending
        await context.tick()

    asyncio.run(scenario())

    assert len(stream_a) == 0
    assert len(stream_b) == 0
    assert stream_b.consecutive_failures == 0
    assert context.streams == {}
    assert len(fetcher.calls) == 2
    with pytest.raises(RuntimeError):
        context.start()


def test_failing_node_polled_every_tick_by_default(clock: FakeClock) -> None:
    """Without a stall threshold a failing node is retried on each tick."""
    logger.info("Running default retry cadence test")
    fetcher = FakeFetcher({"node-b": TransportError("down")})
    context = _context(fetcher, clock)

    for _ in range(3):
        asyncio.run(context.tick())

    assert len(fetcher.calls_for("node-b")) == 3
    assert context.streams["node-b"].consecutive_failures == 3


def test_stalled_node_is_polled_less_often(clock: FakeClock) -> None:
    """Past the stall threshold a node is only retried every Nth tick."""
    logger.info("Running stall threshold test")
    fetcher = FakeFetcher({"node-b": TransportError("down")})
    context = _context(fetcher, clock, stall_after=2)

    for _ in range(6):
        asyncio.run(context.tick())

    assert len(fetcher.calls_for("node-a")) == 6
    assert len(fetcher.calls_for("node-b")) == 4


def test_listeners_are_notified_and_isolated(clock: FakeClock) -> None:
    """Every tick and every settled fetch notifies; a broken listener is contained."""
    logger.info("Running listener notification test")
    context = _context(FakeFetcher(), clock)
    seen = []

    def broken(_context: SeriesContext) -> None:
        raise RuntimeError("listener bug")

    context.subscribe(broken)
    context.subscribe(seen.append)
    context.subscribe(seen.append)
    asyncio.run(context.tick())

    assert len(seen) == 3
    context.unsubscribe(seen.append)
    asyncio.run(context.tick())
    assert len(seen) == 3


def test_start_stop_resume_keeps_order() -> None:
    """Stopping and restarting picks up from the current window without reordering."""
    logger.info("Running start/stop resume test")
    clock = FakeClock(10.0)
    fetcher = FakeFetcher()
    context = _context(fetcher, clock, roster=("node-a",))

    async def scenario() -> None:
        context.start()
        context.start()
        await asyncio.sleep(0.05)
        assert context.running
        assert context.tick_count == 1

        context.stop()
        assert not context.running
        await asyncio.sleep(0.01)
        clock.advance(20)

        context.start()
        await asyncio.sleep(0.05)
        context.stop()

    asyncio.run(scenario())

    assert context.tick_count == 2
    assert pairs_of(context.streams["node-a"]) == [(20, 20.0), (25, 25.0)]


def test_frame_and_snapshot_exports(clock: FakeClock) -> None:
    """The pandas export and the status snapshot reflect the buffers."""
    logger.info("Running export test")
    fetcher = FakeFetcher({"node-a": [10.0, 12.0], "node-b": TransportError("down")})
    context = _context(fetcher, clock)
    asyncio.run(context.tick())

    frame = context.to_frame()
    assert list(frame.columns) == ["node-a", "node-b"]
    assert frame["node-a"].tolist() == [10.0, 12.0]
    assert all(math.isnan(value) for value in frame["node-b"])

    snapshot = context.snapshot()
    assert snapshot["window"] == [0, 10]
    assert snapshot["ticks"] == 1
    assert snapshot["streams"]["node-b"] == {"buckets": 2, "missing": 2, "failures": 1, "last_error": "down"}


def test_constructor_rejects_bad_parameters(clock: FakeClock) -> None:
    """Refresh must be positive and overlap non-negative."""
    logger.info("Running constructor validation test")
    with pytest.raises(ValueError):
        _context(FakeFetcher(), clock, refresh_ms=0)
    with pytest.raises(ValueError):
        _context(FakeFetcher(), clock, refetch_buckets=-1)
