from __future__ import annotations

import math


class MarketDataError(Exception):
    """Base class for failures surfaced to market data consumers."""

    kind = "ServiceUnavailable"
    status_code = 503

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after

    @property
    def retry_after_ms(self) -> int | None:
        if self.retry_after is None:
            return None
        return int(math.ceil(max(self.retry_after, 0.0) * 1000))

    def to_payload(self) -> dict:
        payload: dict = {"kind": self.kind, "message": self.message}
        if self.retry_after_ms is not None:
            payload["retry_after_ms"] = self.retry_after_ms
        return payload


class RateLimitedError(MarketDataError):
    kind = "RateLimited"
    status_code = 429


class RequestThrottledError(RateLimitedError):
    """The per-key minimum interval has not elapsed; nothing was sent upstream."""


class ServiceUnavailableError(MarketDataError):
    kind = "ServiceUnavailable"
    status_code = 503


class UpstreamTimeoutError(ServiceUnavailableError):
    """The upstream call exceeded its time bound."""


class MalformedResponseError(ServiceUnavailableError):
    """The upstream answered with a payload we cannot interpret."""


class NotFoundError(MarketDataError):
    kind = "NotFound"
    status_code = 404


class BadRequestError(MarketDataError):
    kind = "BadRequest"
    status_code = 400


class ConfigurationError(RuntimeError):
    """Raised when required startup configuration is missing."""


def blocked_message(remaining: float) -> str:
    return (
        "All API requests blocked due to rate limit. "
        f"Wait {int(math.ceil(remaining))} seconds"
    )
