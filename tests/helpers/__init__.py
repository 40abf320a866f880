"""Shared helper utilities for the horizon test-suite."""

from .data import as_dict, build_stream, pairs_of, timestamps_of, values_of
from .mocks import (
    FakeClock,
    FakeFetcher,
    FakeHttpResponse,
    FakeSession,
    FakeStatsService,
)

__all__ = [
    "as_dict",
    "build_stream",
    "pairs_of",
    "timestamps_of",
    "values_of",
    "FakeClock",
    "FakeFetcher",
    "FakeHttpResponse",
    "FakeSession",
    "FakeStatsService",
]
