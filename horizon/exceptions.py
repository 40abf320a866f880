"""Error taxonomy for stats acquisition."""
from __future__ import annotations


class StatsError(RuntimeError):
    """Base class for every stats acquisition failure."""


class TransportError(StatsError):
    """Network or HTTP failure while talking to the viewer."""


class MalformedResponseError(StatsError):
    """The viewer answered, but the payload cannot be used."""


class OutOfOrderError(MalformedResponseError):
    """Writing the segment would break timestamp ordering of a buffer."""


class PreferencesLoadError(StatsError):
    """Display preferences could not be loaded; callers fall back to defaults."""


class RosterLoadError(StatsError):
    """The node list could not be loaded; nothing can be charted."""


__all__ = [
    "StatsError",
    "TransportError",
    "MalformedResponseError",
    "OutOfOrderError",
    "PreferencesLoadError",
    "RosterLoadError",
]
