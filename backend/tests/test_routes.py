import asyncio

import httpx
import pytest
from fastapi import HTTPException

from app.api.routes import (
    admin_reset_endpoint,
    market_data_batch_endpoint,
    market_snapshot_endpoint,
    market_snapshot_state_endpoint,
    quote_endpoint,
    status_endpoint,
)
from app.config.settings import CoordinationSettings, Settings, UpstreamSettings
from app.container import build_container

UNIVERSE = ["SPY", "QQQ", "AAPL", "MSFT", "NVDA"]


def quote_body(symbols: list[str]) -> dict:
    return {
        symbol: {
            "symbol": symbol,
            "name": symbol,
            "datetime": "2026-10-16",
            "close": "100.5",
            "change": "1.0",
            "percent_change": "1.0",
            "volume": "1000",
        }
        for symbol in symbols
    }


class StubHttpClient:
    def __init__(self, status_code: int = 200, headers: dict | None = None) -> None:
        self.status_code = status_code
        self.headers = headers or {}
        self.calls: list[dict] = []
        self.is_closed = False

    async def get(self, url: str, params: dict) -> httpx.Response:
        self.calls.append(params)
        if self.status_code != 200:
            return httpx.Response(self.status_code, headers=self.headers, json={"status": "error"})
        symbols = params["symbol"].split(",")
        body = quote_body(symbols)
        if len(symbols) == 1:
            body = body[symbols[0]]
        return httpx.Response(200, json=body)

    async def aclose(self) -> None:
        self.is_closed = True


def build(http_client: StubHttpClient):
    settings = Settings(
        redis_url=None,
        upstream=UpstreamSettings(api_key="test"),
        coordination=CoordinationSettings(request_spacing_seconds=0),
    )
    return build_container(settings, http_client=http_client)


def test_market_snapshot_endpoint_returns_universe() -> None:
    http_client = StubHttpClient()
    container = build(http_client)

    snapshot = asyncio.run(market_snapshot_endpoint(container=container))

    assert [item.symbol for item in snapshot.symbols] == UNIVERSE
    assert http_client.calls[0]["symbol"] == ",".join(UNIVERSE)
    assert http_client.calls[0]["apikey"] == "test"


def test_rate_limited_upstream_maps_to_429_and_blocks_other_routes() -> None:
    http_client = StubHttpClient(status_code=429)
    container = build(http_client)

    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(market_snapshot_endpoint(container=container))
    assert excinfo.value.status_code == 429
    assert excinfo.value.detail["kind"] == "RateLimited"
    assert excinfo.value.detail["retry_after_ms"] > 0
    assert excinfo.value.headers["Retry-After"] == "180"

    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(quote_endpoint(symbol="AAPL", container=container))
    assert excinfo.value.status_code == 429
    assert len(http_client.calls) == 1

    status = asyncio.run(status_endpoint(container=container))
    assert status["breaker"]["blocked"] is True
    assert status["durable_cache"] is False


def test_invalid_symbol_is_bad_request() -> None:
    http_client = StubHttpClient()
    container = build(http_client)

    with pytest.raises(HTTPException) as excinfo:
        asyncio.run(quote_endpoint(symbol="$$$", container=container))
    assert excinfo.value.status_code == 400
    assert excinfo.value.detail["kind"] == "BadRequest"
    assert http_client.calls == []


def test_batch_endpoint_defaults_to_universe() -> None:
    container = build(StubHttpClient())
    quotes = asyncio.run(market_data_batch_endpoint(symbols=None, container=container))
    assert list(quotes) == UNIVERSE


def test_snapshot_state_and_admin_reset() -> None:
    http_client = StubHttpClient(status_code=429)
    container = build(http_client)

    state = asyncio.run(market_snapshot_state_endpoint(container=container))
    assert state.status == "blocked"
    assert state.credits_exhausted is True

    state = asyncio.run(admin_reset_endpoint(container=container))
    assert state.status == "idle"
    assert container.breaker.is_blocked() is False

    http_client.status_code = 200
    state = asyncio.run(market_snapshot_state_endpoint(container=container))
    assert state.status == "ready"
    assert len(state.snapshot.symbols) == 5


def test_retry_inside_min_interval_does_not_block_snapshot() -> None:
    http_client = StubHttpClient(status_code=502)
    container = build(http_client)

    first = asyncio.run(container.snapshots.fetch_snapshot())
    assert first.status == "idle"
    assert first.error == "Twelve Data API error: 502"

    http_client.status_code = 200
    second = asyncio.run(container.snapshots.fetch_snapshot())
    assert second.status == "idle"
    assert second.credits_exhausted is False
    assert second.error.startswith("Rate limited: wait")
    assert container.breaker.is_blocked() is False
    assert len(http_client.calls) == 1
