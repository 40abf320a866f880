"""Pydantic models for UI API responses."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class HorizonCell(BaseModel):
    timestamp: int = Field(..., description="Bucket start, Unix seconds")
    value: Optional[float] = Field(None, description="Bucket value (gaps represented as null)")
    band: int = Field(0, description="Signed horizon band, 0 for gaps and zero values")
    color: Optional[str] = None
    fill: float = Field(0.0, ge=0.0, le=1.0, description="Fraction of the top band covered")


class HorizonRow(BaseModel):
    node: str
    rank: int
    color: str
    extent: Optional[float] = None
    latest: Optional[float] = None
    failures: int = 0
    cells: List[HorizonCell] = Field(default_factory=list)


class AxisTick(BaseModel):
    timestamp: int
    column: int
    label: str


class HorizonFrame(BaseModel):
    version: int
    metric: str
    step_seconds: int
    refresh_ms: int
    running: bool
    window_start: int
    window_stop: int
    columns: int
    timezone: str
    bands: int
    colors: List[str]
    axis: List[AxisTick] = Field(default_factory=list)
    rows: List[HorizonRow] = Field(default_factory=list)


class FocusValue(BaseModel):
    node: str
    value: Optional[float] = None


class FocusResponse(BaseModel):
    column: int
    timestamp: int
    label: str
    values: List[FocusValue] = Field(default_factory=list)


class SelectionRequest(BaseModel):
    metric: Optional[str] = Field(None, min_length=1)
    interval: Optional[int] = Field(None, gt=0, description="Bucket width in seconds")
    refresh_ms: Optional[int] = Field(None, gt=0)


class OptionsResponse(BaseModel):
    metrics: List[str]
    intervals: List[int]
    refresh_rates: List[int]
    selected: Dict[str, Any] = Field(default_factory=dict)


class StatsSnapshot(BaseModel):
    rows: List[Dict[str, Any]] = Field(default_factory=list)
    error: Optional[str] = None
