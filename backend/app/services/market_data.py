from __future__ import annotations

import asyncio
import datetime
import logging
import re
from typing import Sequence

from app.config.settings import Settings
from app.errors import BadRequestError, MarketDataError, NotFoundError, RateLimitedError
from app.providers.twelvedata import TwelveDataClient
from app.response_cache import ResponseCache, make_cache_key
from app.schemas.market import MarketSnapshot, PricePoint, SymbolQuote, TimeSeriesResponse

log = logging.getLogger("market_data")

_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9.\-]{0,11}$")
_INTERVALS = {"1min", "5min", "15min", "30min", "45min", "1h", "2h", "4h", "1day"}
_MAX_BATCH = 8


def normalize_symbol(symbol: str) -> str:
    cleaned = (symbol or "").strip().upper()
    if not _SYMBOL_RE.match(cleaned):
        raise BadRequestError(f"Invalid symbol: {symbol!r}")
    return cleaned


class MarketDataService:
    """Inbound market data operations, all routed through the response cache."""

    def __init__(self, settings: Settings, client: TwelveDataClient, cache: ResponseCache) -> None:
        self._settings = settings
        self._client = client
        self._cache = cache

    def _build_quote(self, raw: dict) -> SymbolQuote:
        info = self._settings.symbol_info(raw["symbol"])
        fields = {key: value for key, value in raw.items() if value is not None}
        fields.setdefault("name", info.name if info else raw["symbol"])
        if info is not None:
            fields["type"] = info.type
        return SymbolQuote(**fields)

    async def _fetch_quotes(self, symbols: Sequence[str]) -> dict[str, dict]:
        key = make_cache_key("quote", {"symbol": sorted(symbols)})

        async def fetcher() -> dict:
            result = await self._client.fetch_quotes(sorted(symbols))
            return result.unwrap()

        payload = await self._cache.get(key, fetcher, label=f"quote ({','.join(sorted(symbols))})")
        return payload["quotes"]

    async def get_batch_quotes(self, symbols: Sequence[str]) -> dict[str, SymbolQuote]:
        normalized = list(dict.fromkeys(normalize_symbol(symbol) for symbol in symbols))
        if not normalized:
            raise BadRequestError("At least one symbol is required")
        if len(normalized) > _MAX_BATCH:
            raise BadRequestError(f"At most {_MAX_BATCH} symbols per batch request")
        quotes = await self._fetch_quotes(normalized)
        return {symbol: self._build_quote(quotes[symbol]) for symbol in normalized}

    async def get_quote(self, symbol: str) -> SymbolQuote:
        normalized = normalize_symbol(symbol)
        quotes = await self._fetch_quotes([normalized])
        quote = self._build_quote(quotes[normalized])
        if quote.error:
            raise NotFoundError(f"No quote data available for {normalized}")
        return quote

    async def get_time_series(
        self, symbol: str, interval: str | None = None, outputsize: int | None = None
    ) -> TimeSeriesResponse:
        normalized = normalize_symbol(symbol)
        interval = interval or self._settings.series_interval
        outputsize = outputsize or self._settings.series_outputsize
        if interval not in _INTERVALS:
            raise BadRequestError(f"Unsupported interval: {interval}")
        if not 1 <= outputsize <= 5000:
            raise BadRequestError("outputsize must be between 1 and 5000")

        key = make_cache_key(
            "time_series", {"symbol": normalized, "interval": interval, "outputsize": outputsize}
        )

        async def fetcher() -> dict:
            result = await self._client.fetch_time_series(normalized, interval, outputsize)
            return result.unwrap()

        payload = await self._cache.get(key, fetcher, label=f"time_series ({normalized} {interval})")
        points = [PricePoint(**point) for point in payload["values"]]
        if not points:
            raise NotFoundError(f"No market data available for {normalized}")
        return TimeSeriesResponse(symbol=normalized, interval=interval, count=len(points), data=points)

    async def get_market_snapshot(self) -> MarketSnapshot:
        """Quotes for the whole symbol universe, one upstream call per refresh."""
        universe = self._settings.symbol_list
        key = make_cache_key("market_snapshot", {"symbols": universe})

        async def fetcher() -> dict:
            result = await self._client.fetch_quotes(universe)
            quotes = result.unwrap()["quotes"]
            return {
                "symbols": [quotes[symbol] for symbol in universe],
                "last_updated": datetime.datetime.now(datetime.UTC).isoformat(),
            }

        payload = await self._cache.get(key, fetcher, label="market_snapshot")
        quotes = [self._build_quote(raw) for raw in payload["symbols"]]
        if self._settings.snapshot_include_series:
            quotes = await self._attach_series(quotes)
        return MarketSnapshot(symbols=tuple(quotes), last_updated=payload["last_updated"])

    async def _attach_series(self, quotes: list[SymbolQuote]) -> list[SymbolQuote]:
        # Each lookup is its own queue item; the queue still serialises them.
        results = await asyncio.gather(
            *(self.get_time_series(quote.symbol) for quote in quotes if not quote.error),
            return_exceptions=True,
        )
        series: dict[str, tuple[PricePoint, ...]] = {}
        for result in results:
            if isinstance(result, TimeSeriesResponse):
                series[result.symbol] = tuple(result.data)
            elif isinstance(result, RateLimitedError):
                log.warning(f"Series lookup rate limited, snapshot keeps quotes only: {result}")
            elif isinstance(result, MarketDataError):
                log.warning(f"Series lookup failed: {result}")
            else:
                raise result
        return [
            quote.model_copy(update={"series": series[quote.symbol]}) if quote.symbol in series else quote
            for quote in quotes
        ]
