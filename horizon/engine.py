"""Orchestrates the roster, the live SeriesContext and the visibility gate."""
from __future__ import annotations

import asyncio
import functools
import logging
import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from app.poll import Clock

from .context import SeriesContext
from .core import DEFAULT_REFRESH_MS, DEFAULT_WINDOW, DisplayPreferences, MetricSelector
from .exceptions import PreferencesLoadError, RosterLoadError, StatsError
from .fetcher import MetricFetcher
from .visibility import VisibilityGate

if TYPE_CHECKING:
    from app.settings import Settings
    from ui.render import RenderSurface

LOGGER = logging.getLogger(__name__)

# Fetches must settle before the next tick is due.
FETCH_TIMEOUT_FRACTION = 0.9


class StatsEngine:
    """Keeps at most one polling SeriesContext alive.

    ``service`` provides ``get_settings``, ``get_moloch_stats`` and
    ``get_detail_stats`` (see :class:`app.stats_client.StatsService`).
    """

    def __init__(
        self,
        service: Any,
        *,
        surface: Optional["RenderSurface"] = None,
        gate: Optional[VisibilityGate] = None,
        selector: Optional[MetricSelector] = None,
        refresh_ms: int = DEFAULT_REFRESH_MS,
        window_length: int = DEFAULT_WINDOW,
        refetch_buckets: int = 1,
        stall_after: Optional[int] = None,
        fetch_timeout_s: Optional[float] = None,
        clock: Clock = time.time,
    ) -> None:
        self.service = service
        self.surface = surface
        self.gate = gate or VisibilityGate()
        self.selector = selector or MetricSelector()
        self.refresh_ms = refresh_ms
        self.window_length = window_length
        self.refetch_buckets = refetch_buckets
        self.stall_after = stall_after
        self.fetch_timeout_s = fetch_timeout_s
        self._clock = clock

        self.preferences = DisplayPreferences()
        self.roster: Tuple[str, ...] = ()
        self.snapshot: List[Dict[str, Any]] = []
        self.context: Optional[SeriesContext] = None
        self.error: Optional[str] = None

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        service: Any,
        *,
        surface: Optional["RenderSurface"] = None,
        hidden: Optional[bool] = None,
    ) -> "StatsEngine":
        display = settings.display
        start_hidden = not settings.ui.start_visible if hidden is None else hidden
        return cls(
            service,
            surface=surface,
            gate=VisibilityGate(hidden=start_hidden),
            selector=MetricSelector(display.metric, display.interval_s),
            refresh_ms=display.refresh_ms,
            window_length=display.window,
            refetch_buckets=settings.engine.refetch_buckets,
            stall_after=settings.engine.stall_after,
            fetch_timeout_s=settings.viewer.timeout_s,
        )

    async def _call(self, func: Callable[..., Any], *args: Any) -> Any:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args))

    async def load_preferences(self) -> DisplayPreferences:
        try:
            preferences = await self._call(self.service.get_settings)
        except PreferencesLoadError as exc:
            LOGGER.warning("Unable to load display preferences, using local time: %s", exc)
            preferences = DisplayPreferences()
        self.preferences = preferences
        if self.surface is not None:
            self.surface.set_preferences(preferences)
        return preferences

    async def load_roster(self) -> Tuple[str, ...]:
        try:
            rows = await self._call(self.service.get_moloch_stats, {})
        except StatsError as exc:
            self.error = f"Unable to load node list: {exc}"
            LOGGER.error(self.error)
            raise RosterLoadError(self.error) from exc
        self.snapshot = list(rows)
        self.roster = tuple(dict.fromkeys(str(row["nodeName"]) for row in rows))
        self.error = None
        LOGGER.info("Loaded roster of %d nodes", len(self.roster))
        return self.roster

    async def initialize(self) -> SeriesContext:
        """Load preferences and roster, then start charting the default selector."""
        await self.load_preferences()
        await self.load_roster()
        return self._install(self.build_context())

    def fetch_timeout(self) -> float:
        bound = self.refresh_ms / 1000.0 * FETCH_TIMEOUT_FRACTION
        if self.fetch_timeout_s is None:
            return bound
        return min(self.fetch_timeout_s, bound)

    def build_context(self) -> SeriesContext:
        fetcher = MetricFetcher(self.service, timeout_s=self.fetch_timeout())
        return SeriesContext(
            self.selector,
            self.roster,
            fetcher,
            refresh_ms=self.refresh_ms,
            window_length=self.window_length,
            refetch_buckets=self.refetch_buckets,
            stall_after=self.stall_after,
            clock=self._clock,
        )

    def _install(self, context: SeriesContext) -> SeriesContext:
        previous, self.context = self.context, context
        if previous is not None:
            previous.close()
        if self.surface is not None:
            self.surface.attach(context)
        self.gate.bind(context)
        return context

    def select(
        self,
        metric_name: Optional[str] = None,
        step_seconds: Optional[int] = None,
        refresh_ms: Optional[int] = None,
    ) -> SeriesContext:
        """Replace the live context after a metric, interval or refresh change."""
        if self.error is not None:
            raise RosterLoadError(self.error)
        selector = MetricSelector(
            metric_name if metric_name is not None else self.selector.metric_name,
            step_seconds if step_seconds is not None else self.selector.step_seconds,
        )
        if refresh_ms is not None and refresh_ms <= 0:
            raise ValueError("refresh_ms must be greater than zero")
        self.selector = selector
        if refresh_ms is not None:
            self.refresh_ms = refresh_ms
        LOGGER.info(
            "Switching to %s every %ds (refresh %dms)",
            selector.metric_name,
            selector.step_seconds,
            self.refresh_ms,
        )
        return self._install(self.build_context())

    def set_visibility(self, hidden: bool) -> None:
        self.gate.on_visibility_change(hidden)

    def shutdown(self) -> None:
        if self.context is not None:
            self.context.close()
            self.context = None
        self.gate.bind(None)
        if self.surface is not None:
            self.surface.detach()
