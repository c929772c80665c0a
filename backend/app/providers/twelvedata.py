"""
app/providers/twelvedata.py
Thin async client for the Twelve Data REST API.

Every call is one bounded GET whose outcome is classified into an
UpstreamResult instead of raised:
  ok            → parsed, normalised payload
  rate_limited  → HTTP 429, or a 200 body reporting exhausted API credits
  rejected      → provider error payload (unknown symbol, bad key, ...)
  malformed     → body is not the JSON shape we expect
  timeout       → call exceeded request_timeout_seconds
  network_error → transport failure or 5xx
Only missing configuration raises.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
from typing import Any, Sequence

import httpx

from app.config.settings import UpstreamSettings
from app.errors import ConfigurationError
from app.schemas.provider import UpstreamResult

log = logging.getLogger("twelvedata")

_QUOTE_PATH = "/quote"
_TIME_SERIES_PATH = "/time_series"
_LIMITS = httpx.Limits(max_connections=5, max_keepalive_connections=2)


def _retry_after(headers: httpx.Headers) -> float | None:
    value = headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _is_credit_exhaustion(body: dict) -> bool:
    if body.get("code") == 429:
        return True
    message = str(body.get("message") or "")
    return body.get("status") == "error" and "credits" in message.lower()


def classify_response(
    status_code: int, body: Any, retry_after: float | None = None
) -> UpstreamResult:
    """Classify a raw provider response. ``body`` is decoded JSON or None."""
    if status_code == 429:
        return UpstreamResult(
            status="rate_limited",
            reason="API rate limit exceeded",
            retry_after=retry_after,
            http_status=status_code,
        )
    if status_code >= 500:
        return UpstreamResult(
            status="network_error",
            reason=f"Twelve Data API error: {status_code}",
            http_status=status_code,
        )
    if not isinstance(body, dict):
        return UpstreamResult(
            status="malformed",
            reason="Expected a JSON object from Twelve Data",
            http_status=status_code,
        )
    if _is_credit_exhaustion(body):
        return UpstreamResult(
            status="rate_limited",
            reason=str(body.get("message") or "API credits exhausted"),
            retry_after=retry_after,
            http_status=status_code,
            provider_code=body.get("code") if isinstance(body.get("code"), int) else None,
        )
    if status_code >= 400 or body.get("status") == "error":
        code = body.get("code")
        return UpstreamResult(
            status="rejected",
            reason=str(body.get("message") or f"Twelve Data API error: {status_code}"),
            http_status=status_code,
            provider_code=code if isinstance(code, int) else None,
        )
    return UpstreamResult(status="ok", payload=body, http_status=status_code)


def _to_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> int:
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def normalize_quote(symbol: str, raw: Any) -> dict:
    """Turn one provider quote object into our flat quote dict."""
    if not isinstance(raw, dict) or raw.get("code") or raw.get("status") == "error":
        return {"symbol": symbol, "error": "No data available"}
    price = _to_float(raw.get("close"))
    if price is None:
        return {"symbol": symbol, "error": "No data available"}
    return {
        "symbol": symbol,
        "name": raw.get("name") or symbol,
        "price": price,
        "change": _to_float(raw.get("change")) or 0.0,
        "percent_change": _to_float(raw.get("percent_change")) or 0.0,
        "volume": _to_int(raw.get("volume")),
        "open": _to_float(raw.get("open")),
        "high": _to_float(raw.get("high")),
        "low": _to_float(raw.get("low")),
        "previous_close": _to_float(raw.get("previous_close")),
        "quoted_at": raw.get("datetime"),
    }


def normalize_series(values: list) -> list[dict]:
    """Provider values arrive newest first; return oldest first, skipping bad rows."""
    points: list[dict] = []
    for item in reversed(values):
        if not isinstance(item, dict):
            continue
        close = _to_float(item.get("close"))
        stamp = item.get("datetime")
        if close is None or not stamp:
            continue
        try:
            timestamp = datetime.datetime.fromisoformat(str(stamp))
        except ValueError:
            continue
        points.append(
            {
                "timestamp": timestamp.isoformat(),
                "open": _to_float(item.get("open")) or close,
                "high": _to_float(item.get("high")) or close,
                "low": _to_float(item.get("low")) or close,
                "close": close,
                "volume": _to_int(item.get("volume")),
            }
        )
    return points


class TwelveDataClient:
    def __init__(
        self, settings: UpstreamSettings, *, client: httpx.AsyncClient | None = None
    ) -> None:
        self._settings = settings
        self._client = client

    def _http(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": self._settings.user_agent},
                timeout=httpx.Timeout(self._settings.request_timeout_seconds),
                limits=_LIMITS,
                follow_redirects=True,
            )
        return self._client

    async def _get(self, path: str, params: dict[str, str]) -> UpstreamResult:
        api_key = self._settings.api_key
        if not api_key:
            raise ConfigurationError("TWELVE_DATA_API_KEY is not configured")

        url = f"{self._settings.base_url.rstrip('/')}{path}"
        timeout = self._settings.request_timeout_seconds
        try:
            response = await asyncio.wait_for(
                self._http().get(url, params={**params, "apikey": api_key}),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            log.warning(f"Twelve Data request timed out after {timeout:.0f}s ({path})")
            return UpstreamResult(status="timeout", reason="Request timeout")
        except httpx.HTTPError as exc:
            log.warning(f"Twelve Data request failed ({path}): {exc}")
            return UpstreamResult(status="network_error", reason=f"Network error: {exc}")

        try:
            body = response.json()
        except ValueError:
            body = None
        result = classify_response(response.status_code, body, _retry_after(response.headers))
        if result.status == "rate_limited":
            log.error(f"Twelve Data signalled rate limiting on {path}: {result.reason}")
        elif not result.ok:
            log.warning(f"Twelve Data {result.status} on {path}: {result.reason}")
        return result

    async def fetch_quotes(self, symbols: Sequence[str]) -> UpstreamResult:
        """One batch quote call for every symbol in ``symbols``."""
        symbols = list(symbols)
        result = await self._get(_QUOTE_PATH, {"symbol": ",".join(symbols)})
        if not result.ok:
            return result

        body = result.payload
        # A single-symbol request returns the quote object itself.
        if len(symbols) == 1 and "symbol" in body:
            body = {symbols[0]: body}
        quotes = {symbol: normalize_quote(symbol, body.get(symbol)) for symbol in symbols}
        return UpstreamResult(status="ok", payload={"quotes": quotes}, http_status=result.http_status)

    async def fetch_time_series(
        self, symbol: str, interval: str = "1min", outputsize: int = 390
    ) -> UpstreamResult:
        result = await self._get(
            _TIME_SERIES_PATH,
            {"symbol": symbol, "interval": interval, "outputsize": str(outputsize)},
        )
        if not result.ok:
            return result

        values = result.payload.get("values", [])
        if not isinstance(values, list):
            return UpstreamResult(
                status="malformed",
                reason="Time series 'values' is not a list",
                http_status=result.http_status,
            )
        return UpstreamResult(
            status="ok",
            payload={"symbol": symbol, "interval": interval, "values": normalize_series(values)},
            http_status=result.http_status,
        )

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
