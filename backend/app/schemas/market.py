from __future__ import annotations

import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PricePoint(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime.datetime
    open: float
    high: float
    low: float
    close: float
    volume: int = 0


class SymbolQuote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    name: str
    type: str = "Stock"
    price: float = 0.0
    change: float = 0.0
    percent_change: float = 0.0
    volume: int = 0
    open: float | None = None
    high: float | None = None
    low: float | None = None
    previous_close: float | None = None
    quoted_at: str | None = None
    series: tuple[PricePoint, ...] = ()
    error: str | None = None


class MarketSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbols: tuple[SymbolQuote, ...] = ()
    last_updated: datetime.datetime


class TimeSeriesResponse(BaseModel):
    symbol: str
    interval: str
    count: int
    data: list[PricePoint] = Field(default_factory=list)


class SnapshotState(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["idle", "fetching", "ready", "blocked"]
    snapshot: MarketSnapshot | None = None
    loading: bool = False
    error: str | None = None
    last_update: datetime.datetime | None = None
    credits_exhausted: bool = False
    retry_after_seconds: float | None = None
    is_stale: bool = False


class ErrorResponse(BaseModel):
    kind: Literal["RateLimited", "ServiceUnavailable", "NotFound", "BadRequest"]
    message: str
    retry_after_ms: int | None = None
