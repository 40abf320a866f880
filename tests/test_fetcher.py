"""Tests for the async detail-stats fetcher."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

from horizon.exceptions import MalformedResponseError, TransportError
from horizon.fetcher import MetricFetcher, expected_bucket_count
from tests.conftest import get_test_logger
from tests.helpers import FakeStatsService

logger = get_test_logger(__name__)
logger.info("Starting tests for horizon.fetcher module")


def test_expected_bucket_count_preconditions() -> None:
    """The window must be non-empty and a whole number of steps."""
    logger.info("Running bucket count precondition test")
    assert expected_bucket_count(0, 20, 5) == 4
    with pytest.raises(ValueError):
        expected_bucket_count(20, 20, 5)
    with pytest.raises(ValueError):
        expected_bucket_count(0, 22, 5)
    with pytest.raises(ValueError):
        expected_bucket_count(0, 20, 0)


def test_fetch_returns_one_value_per_bucket(stats_service: FakeStatsService) -> None:
    """A well-formed response is returned as-is, with interval equal to the step."""
    logger.info("Running fetch happy path test")
    fetcher = MetricFetcher(stats_service, timeout_s=2.0)

    values = asyncio.run(fetcher.fetch("node-a", "deltaBytesPerSec", 0, 20, 5))

    assert values == [0.0, 1.0, 2.0, 3.0]
    call = stats_service.detail_calls[0]
    assert call == {
        "node_name": "node-a",
        "start": 0,
        "stop": 20,
        "step": 5,
        "interval": 5,
        "name": "deltaBytesPerSec",
    }


def test_fetch_rejects_wrong_bucket_count() -> None:
    """Three values for a four-bucket window is a malformed response."""
    logger.info("Running bucket count mismatch test")
    service = SimpleNamespace(get_detail_stats=lambda **_: [1.0, 2.0, 3.0])
    fetcher = MetricFetcher(service)

    with pytest.raises(MalformedResponseError, match="expected 4"):
        asyncio.run(fetcher.fetch("node-a", "cpu", 0, 20, 5))


def test_fetch_rejects_missing_payload() -> None:
    """An empty body cannot be interpreted as buckets."""
    logger.info("Running missing payload test")
    fetcher = MetricFetcher(SimpleNamespace(get_detail_stats=lambda **_: None))

    with pytest.raises(MalformedResponseError):
        asyncio.run(fetcher.fetch("node-a", "cpu", 0, 10, 5))


def test_fetch_propagates_transport_errors() -> None:
    """Transport failures from the service reach the caller untouched."""
    logger.info("Running transport propagation test")
    fetcher = MetricFetcher(FakeStatsService(failing_nodes=["node-a"]))

    with pytest.raises(TransportError, match="node-a unreachable"):
        asyncio.run(fetcher.fetch("node-a", "cpu", 0, 10, 5))


def test_fetch_times_out_as_transport_error() -> None:
    """A request slower than the timeout surfaces as a transport failure."""
    logger.info("Running fetch timeout test")
    fetcher = MetricFetcher(FakeStatsService(delay_s=0.3), timeout_s=0.05)

    with pytest.raises(TransportError, match="timed out"):
        asyncio.run(fetcher.fetch("node-a", "cpu", 0, 10, 5))


def test_fetch_validates_before_calling_the_service(stats_service: FakeStatsService) -> None:
    """A bad window never reaches the network."""
    logger.info("Running fetch precondition test")
    fetcher = MetricFetcher(stats_service)

    with pytest.raises(ValueError):
        asyncio.run(fetcher.fetch("node-a", "cpu", 10, 0, 5))
    assert stats_service.detail_calls == []
