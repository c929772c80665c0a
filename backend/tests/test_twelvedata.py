"""Twelve Data client tests."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from app.config.settings import UpstreamSettings
from app.errors import (
    ConfigurationError,
    MalformedResponseError,
    NotFoundError,
    RateLimitedError,
    UpstreamTimeoutError,
)
from app.providers.twelvedata import TwelveDataClient, classify_response, normalize_series


class StubClient:
    def __init__(self, response: httpx.Response | Exception) -> None:
        self.response = response
        self.calls: list[tuple[str, dict]] = []
        self.is_closed = False

    async def get(self, url: str, params: dict) -> httpx.Response:
        self.calls.append((url, params))
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    async def aclose(self) -> None:
        self.is_closed = True


def build_client(response: httpx.Response | Exception) -> TwelveDataClient:
    upstream = UpstreamSettings(api_key="test", base_url="https://api.example.test/")
    return TwelveDataClient(upstream, client=StubClient(response))


QUOTE_BODY = {
    "AAPL": {
        "symbol": "AAPL",
        "name": "Apple Inc",
        "datetime": "2026-10-16",
        "open": "190.1",
        "high": "192.0",
        "low": "189.5",
        "close": "191.25",
        "volume": "51234000",
        "previous_close": "189.9",
        "change": "1.35",
        "percent_change": "0.71",
    },
    "MSFT": {"code": 404, "message": "symbol not found", "status": "error"},
}


def test_batch_quote_injects_key_and_normalizes() -> None:
    client = build_client(httpx.Response(200, json=QUOTE_BODY))
    result = asyncio.run(client.fetch_quotes(["AAPL", "MSFT"]))

    url, params = client._client.calls[0]
    assert url == "https://api.example.test/quote"
    assert params == {"symbol": "AAPL,MSFT", "apikey": "test"}
    assert result.ok is True
    aapl = result.payload["quotes"]["AAPL"]
    assert aapl["price"] == 191.25
    assert aapl["volume"] == 51234000
    assert aapl["quoted_at"] == "2026-10-16"
    assert result.payload["quotes"]["MSFT"] == {"symbol": "MSFT", "error": "No data available"}


def test_single_symbol_quote_body_is_wrapped() -> None:
    client = build_client(httpx.Response(200, json=QUOTE_BODY["AAPL"]))
    result = asyncio.run(client.fetch_quotes(["AAPL"]))
    assert result.payload["quotes"]["AAPL"]["name"] == "Apple Inc"


def test_http_429_is_rate_limited_with_retry_hint() -> None:
    client = build_client(httpx.Response(429, headers={"Retry-After": "120"}, json={}))
    result = asyncio.run(client.fetch_quotes(["AAPL"]))

    assert result.status == "rate_limited"
    assert result.retry_after == 120
    with pytest.raises(RateLimitedError) as excinfo:
        result.unwrap()
    assert excinfo.value.retry_after == 120


def test_credit_exhaustion_body_is_rate_limited() -> None:
    body = {
        "code": 429,
        "message": "You have run out of API credits for the current minute.",
        "status": "error",
    }
    result = classify_response(200, body)
    assert result.status == "rate_limited"
    assert isinstance(result.to_error(), RateLimitedError)


def test_provider_error_payload_is_rejected() -> None:
    result = classify_response(400, {"code": 404, "message": "symbol not found", "status": "error"})
    assert result.status == "rejected"
    assert isinstance(result.to_error(), NotFoundError)


def test_non_json_body_is_malformed() -> None:
    client = build_client(httpx.Response(200, text="<html>maintenance</html>"))
    result = asyncio.run(client.fetch_quotes(["AAPL"]))
    assert result.status == "malformed"
    assert isinstance(result.to_error(), MalformedResponseError)


def test_server_error_is_network_error() -> None:
    assert classify_response(502, None).status == "network_error"


def test_transport_failures_are_classified() -> None:
    timeout = build_client(httpx.ReadTimeout("read timed out"))
    result = asyncio.run(timeout.fetch_quotes(["AAPL"]))
    assert result.status == "timeout"
    assert isinstance(result.to_error(), UpstreamTimeoutError)

    broken = build_client(httpx.ConnectError("connection refused"))
    assert asyncio.run(broken.fetch_quotes(["AAPL"])).status == "network_error"


def test_missing_api_key_raises_configuration_error() -> None:
    upstream = UpstreamSettings(api_key=None)
    client = TwelveDataClient(upstream, client=StubClient(httpx.Response(200, json={})))
    with pytest.raises(ConfigurationError):
        asyncio.run(client.fetch_quotes(["AAPL"]))


def test_time_series_returned_oldest_first() -> None:
    body = {
        "meta": {"symbol": "AAPL", "interval": "1min"},
        "values": [
            {"datetime": "2026-10-16 15:59:00", "open": "191", "high": "192", "low": "190", "close": "191.5", "volume": "1200"},
            {"datetime": "2026-10-16 15:58:00", "open": "190", "high": "191", "low": "189", "close": "190.5", "volume": "900"},
            {"datetime": "not a date", "close": "1"},
        ],
        "status": "ok",
    }
    client = build_client(httpx.Response(200, json=body))
    result = asyncio.run(client.fetch_time_series("AAPL", "1min", 3))

    _, params = client._client.calls[0]
    assert params["outputsize"] == "3"
    values = result.payload["values"]
    assert [point["close"] for point in values] == [190.5, 191.5]
    assert values[0]["timestamp"] == "2026-10-16T15:58:00"


def test_time_series_values_must_be_a_list() -> None:
    client = build_client(httpx.Response(200, json={"values": "nope"}))
    result = asyncio.run(client.fetch_time_series("AAPL"))
    assert result.status == "malformed"


def test_normalize_series_skips_rows_without_close() -> None:
    assert normalize_series([{"datetime": "2026-10-16 09:30:00"}, "junk"]) == []
