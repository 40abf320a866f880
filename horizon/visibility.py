"""Suspend acquisition while no page is looking at the charts."""
from __future__ import annotations

import enum
import logging
from typing import Optional

from .context import SeriesContext

LOGGER = logging.getLogger(__name__)


class GateState(str, enum.Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"


def suspend(state: GateState) -> GateState:
    return GateState.SUSPENDED


def resume(state: GateState) -> GateState:
    return GateState.ACTIVE


def transition(state: GateState, hidden: bool) -> GateState:
    return suspend(state) if hidden else resume(state)


class VisibilityGate:
    """Two-state bridge between page visibility and a context's tick loop.

    Background pages get throttled timers, which would misalign fixed-width
    buckets, so the bound context is stopped outright while hidden.
    """

    def __init__(self, hidden: bool = False) -> None:
        self.state = GateState.SUSPENDED if hidden else GateState.ACTIVE
        self.context: Optional[SeriesContext] = None

    @property
    def active(self) -> bool:
        return self.state is GateState.ACTIVE

    def bind(self, context: Optional[SeriesContext]) -> None:
        """Attach a (new) context and bring it in line with the current state."""
        self.context = context
        self._apply()

    def on_visibility_change(self, hidden: bool) -> GateState:
        previous = self.state
        self.state = transition(previous, hidden)
        if self.state is not previous:
            LOGGER.info("Visibility gate %s -> %s", previous.value, self.state.value)
            self._apply()
        return self.state

    def _apply(self) -> None:
        if self.context is None or self.context.closed:
            return
        if self.state is GateState.ACTIVE:
            self.context.start()
        else:
            self.context.stop()
