"""Project a SeriesContext into horizon-chart frames."""

from __future__ import annotations

import asyncio
import logging
import math
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from app.settings import DEFAULT_COLORS
from horizon.context import SeriesContext
from horizon.core import DisplayPreferences, MetricSelector, NodeStream

from .schemas import AxisTick, FocusResponse, FocusValue, HorizonCell, HorizonFrame, HorizonRow

LOGGER = logging.getLogger(__name__)

PALETTE = [
    "#0062ff",
    "#8a3ffc",
    "#ff832b",
    "#24a148",
    "#d12771",
    "#009d9a",
    "#a56eff",
    "#ff7eb6",
    "#fa4d56",
    "#42be65",
    "#be95ff",
    "#12c2e9",
    "#f1c21b",
    "#198038",
    "#1192e8",
    "#9f1853",
]

TICK_LADDER_S: Sequence[int] = (
    5, 10, 15, 30, 60, 120, 300, 600, 900, 1800,
    3600, 7200, 10800, 21600, 43200, 86400,
)
TARGET_TICKS = 12


def tick_spacing(span_seconds: int, step_seconds: int) -> int:
    """Smallest ladder spacing fitting at most ``TARGET_TICKS`` ticks in the span.

    Steps that divide no ladder entry get the smallest multiple of the step
    that still fits.
    """
    for spacing in TICK_LADDER_S:
        if spacing < step_seconds or spacing % step_seconds:
            continue
        if span_seconds / spacing <= TARGET_TICKS:
            return spacing
    buckets_per_tick = max(1, math.ceil(span_seconds / (TARGET_TICKS * step_seconds)))
    return buckets_per_tick * step_seconds


def band_cells(
    timestamps: Sequence[int],
    values: np.ndarray,
    extent: Optional[float],
    colors: Sequence[str],
) -> List[HorizonCell]:
    """Fold values into signed horizon bands; NaN stays a gap."""
    bands = len(colors) // 2
    cells: List[HorizonCell] = []
    for ts, value in zip(timestamps, values):
        if math.isnan(value):
            cells.append(HorizonCell(timestamp=ts))
            continue
        if not extent or value == 0:
            cells.append(HorizonCell(timestamp=ts, value=float(value)))
            continue
        scaled = min(abs(value) / extent * bands, float(bands))
        band = max(1, math.ceil(scaled))
        fill = min(1.0, scaled - (band - 1))
        if value > 0:
            color = colors[bands + band - 1]
            signed = band
        else:
            color = colors[bands - band]
            signed = -band
        cells.append(HorizonCell(timestamp=ts, value=float(value), band=signed, color=color, fill=round(fill, 4)))
    return cells


class RenderSurface:
    """Reactive horizon layout for whichever context is attached.

    Context updates only bump :attr:`version`; the frame is rebuilt lazily
    the next time it is asked for.
    """

    def __init__(
        self,
        colors: Optional[Sequence[str]] = None,
        *,
        extent: Optional[float] = None,
        preferences: Optional[DisplayPreferences] = None,
    ) -> None:
        self.colors: List[str] = list(colors or DEFAULT_COLORS)
        if len(self.colors) < 2 or len(self.colors) % 2:
            raise ValueError("Horizon colours must come in negative/positive pairs")
        if extent is not None and extent <= 0:
            raise ValueError("Horizon extent must be positive")
        self.extent = extent
        self.preferences = preferences or DisplayPreferences()
        self.context: Optional[SeriesContext] = None
        self.version = 0
        self._frame: Optional[HorizonFrame] = None
        self._layout_key: Optional[Tuple[MetricSelector, Tuple[str, ...]]] = None
        self._ranks: Dict[str, int] = {}
        self._changed: Optional[asyncio.Event] = None

    @property
    def bands(self) -> int:
        return len(self.colors) // 2

    def attach(self, context: SeriesContext) -> None:
        if self.context is not None:
            self.detach()
        self.clear()
        self.context = context
        context.subscribe(self._on_update)
        self._bump()

    def detach(self) -> None:
        if self.context is not None:
            self.context.unsubscribe(self._on_update)
        self.context = None
        self.clear()
        self._bump()

    def clear(self) -> None:
        """Forget every rendered row and the rank assignment."""
        self._frame = None
        self._layout_key = None
        self._ranks = {}

    def set_preferences(self, preferences: DisplayPreferences) -> None:
        self.preferences = preferences
        self._bump()

    def _on_update(self, context: SeriesContext) -> None:
        if context is self.context:
            self._bump()

    def _bump(self) -> None:
        self.version += 1
        self._frame = None
        if self._changed is not None:
            self._changed.set()
            self._changed = None

    async def wait_for_update(self, version: int, timeout: Optional[float] = None) -> bool:
        """Wait until :attr:`version` moves past ``version``; ``False`` on timeout."""
        while self.version <= version:
            if self._changed is None:
                self._changed = asyncio.Event()
            try:
                await asyncio.wait_for(self._changed.wait(), timeout)
            except asyncio.TimeoutError:
                return False
        return True

    # projection ----------------------------------------------------------

    def frame(self) -> Optional[HorizonFrame]:
        if self.context is None:
            return None
        if self._frame is None or self._frame.version != self.version:
            self._frame = self.redraw()
        return self._frame

    def redraw(self) -> HorizonFrame:
        context = self.context
        if context is None:
            raise RuntimeError("No SeriesContext attached")
        key = (context.selector, context.roster)
        if key != self._layout_key:
            self.clear()
            self._layout_key = key
            self._ranks = {node: rank for rank, node in enumerate(context.roster)}

        start, stop = context.current_window()
        step = context.step_seconds
        timestamps = list(range(start, stop, step))
        rows = [
            self._row(node, context.streams.get(node), start, step, timestamps)
            for node in context.roster
        ]
        return HorizonFrame(
            version=self.version,
            metric=context.selector.metric_name,
            step_seconds=step,
            refresh_ms=context.refresh_ms,
            running=context.running,
            window_start=start,
            window_stop=stop,
            columns=len(timestamps),
            timezone=self.preferences.timezone,
            bands=self.bands,
            colors=list(self.colors),
            axis=self.axis(start, stop, step),
            rows=rows,
        )

    def _row(
        self,
        node: str,
        stream: Optional[NodeStream],
        start: int,
        step: int,
        timestamps: Sequence[int],
    ) -> HorizonRow:
        values = np.full(len(timestamps), np.nan)
        if stream is not None:
            for bucket in stream:
                column = (bucket.timestamp - start) // step
                if 0 <= column < len(values) and bucket.value is not None:
                    values[column] = bucket.value
        extent = self.extent
        if extent is None:
            finite = np.abs(values[~np.isnan(values)])
            extent = float(finite.max()) if finite.size and finite.max() > 0 else None
        present = values[~np.isnan(values)]
        rank = self._ranks[node]
        return HorizonRow(
            node=node,
            rank=rank,
            color=PALETTE[rank % len(PALETTE)],
            extent=extent,
            latest=float(present[-1]) if present.size else None,
            failures=stream.consecutive_failures if stream is not None else 0,
            cells=band_cells(timestamps, values, extent, self.colors),
        )

    def axis(self, start: int, stop: int, step: int) -> List[AxisTick]:
        zone = self.preferences.tzinfo()
        spacing = tick_spacing(stop - start, step)
        fmt = "%H:%M:%S" if spacing < 60 else "%H:%M"
        first = -(-start // spacing) * spacing
        ticks: List[AxisTick] = []
        for ts in range(first, stop, spacing):
            label = datetime.fromtimestamp(ts, tz=zone).strftime(fmt)
            ticks.append(AxisTick(timestamp=ts, column=(ts - start) // step, label=label))
        return ticks

    def focus(self, column: int) -> FocusResponse:
        """Values of every node at ``column``, the hover rule of the chart."""
        context = self.context
        if context is None:
            raise RuntimeError("No SeriesContext attached")
        start, stop = context.current_window()
        step = context.step_seconds
        columns = (stop - start) // step
        if not 0 <= column < columns:
            raise IndexError(f"column {column} outside 0..{columns - 1}")
        ts = start + column * step
        values = [
            FocusValue(node=node, value=context.streams[node].value_at(ts) if node in context.streams else None)
            for node in context.roster
        ]
        label = datetime.fromtimestamp(ts, tz=self.preferences.tzinfo()).strftime("%Y-%m-%d %H:%M:%S")
        return FocusResponse(column=column, timestamp=ts, label=label, values=values)
