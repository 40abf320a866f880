"""Sliding-window acquisition engine for per-node horizon charts."""
from __future__ import annotations

from typing import Any

from .core import Bucket, DisplayPreferences, MetricSelector, NodeStream, window_bounds
from .exceptions import (
    MalformedResponseError,
    OutOfOrderError,
    PreferencesLoadError,
    RosterLoadError,
    StatsError,
    TransportError,
)

__all__ = [
    "Bucket",
    "DisplayPreferences",
    "MetricSelector",
    "NodeStream",
    "window_bounds",
    "StatsError",
    "TransportError",
    "MalformedResponseError",
    "OutOfOrderError",
    "PreferencesLoadError",
    "RosterLoadError",
    "MetricFetcher",
    "SeriesContext",
    "StatsEngine",
    "VisibilityGate",
]

_LAZY = {
    "MetricFetcher": ".fetcher",
    "SeriesContext": ".context",
    "StatsEngine": ".engine",
    "VisibilityGate": ".visibility",
}


def __getattr__(name: str) -> Any:
    if name in _LAZY:
        import importlib

        module = importlib.import_module(_LAZY[name], __name__)
        return getattr(module, name)
    raise AttributeError(f"module 'horizon' has no attribute '{name}'")
