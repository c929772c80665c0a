from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel

from app.errors import (
    BadRequestError,
    MalformedResponseError,
    MarketDataError,
    NotFoundError,
    RateLimitedError,
    ServiceUnavailableError,
    UpstreamTimeoutError,
)

UpstreamStatus = Literal["ok", "rate_limited", "malformed", "timeout", "network_error", "rejected"]


class UpstreamResult(BaseModel):
    status: UpstreamStatus
    payload: Any = None
    reason: str | None = None
    retry_after: float | None = None
    http_status: int | None = None
    provider_code: int | None = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_error(self) -> MarketDataError:
        reason = self.reason or self.status
        if self.status == "rate_limited":
            return RateLimitedError(reason, retry_after=self.retry_after)
        if self.status == "timeout":
            return UpstreamTimeoutError(reason)
        if self.status == "malformed":
            return MalformedResponseError(reason)
        if self.status == "rejected":
            code = self.provider_code or self.http_status
            if code == 404 or "not found" in reason.lower():
                return NotFoundError(reason)
            return BadRequestError(reason)
        return ServiceUnavailableError(reason)

    def unwrap(self) -> Any:
        if self.ok:
            return self.payload
        raise self.to_error()


class CachedRecord(BaseModel):
    cache_key: str
    fetched_at: float
    payload: Any = None
    synthetic: bool = False
