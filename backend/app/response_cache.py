"""
app/response_cache.py
Keyed response cache in front of the request queue.

  • Fresh entries (age < freshness window) are served with no network activity
  • Concurrent callers for one key share a single in-flight attempt
  • Blocked breaker or too-recent attempt → stale payload, else RateLimitedError
  • Failed refreshes never overwrite the last good payload
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping

from app.cache import DurableCache
from app.errors import (
    RateLimitedError,
    RequestThrottledError,
    ServiceUnavailableError,
    blocked_message,
)
from app.jobs.breaker import CircuitBreaker
from app.jobs.queue import RequestQueue
from app.schemas.provider import CachedRecord

log = logging.getLogger("response_cache")

Fetcher = Callable[[], Awaitable[Any]]

# Errors after which a stale payload is an acceptable answer.
_RECOVERABLE = (RateLimitedError, ServiceUnavailableError)


def make_cache_key(endpoint: str, params: Mapping[str, Any] | None = None) -> str:
    parts = []
    for name in sorted(params or {}):
        value = params[name]
        if isinstance(value, (list, tuple)):
            value = ",".join(str(item) for item in value)
        parts.append(f"{name}={value}")
    return f"{endpoint}?{'&'.join(parts)}"


@dataclass
class CacheEntry:
    payload: Any = None
    fetched_at: float = 0.0
    last_attempt_at: float = 0.0
    in_flight: asyncio.Future | None = None
    waiters: int = 0

    @property
    def has_payload(self) -> bool:
        return self.fetched_at > 0

    def age(self, now: float) -> float:
        return now - self.fetched_at


class ResponseCache:
    def __init__(
        self,
        queue: RequestQueue,
        breaker: CircuitBreaker,
        *,
        freshness_window_seconds: float,
        min_request_interval_seconds: float,
        store: DurableCache | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._queue = queue
        self._breaker = breaker
        self._window = freshness_window_seconds
        self._min_interval = min_request_interval_seconds
        self._store = store
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._stats = {"hits": 0, "misses": 0, "coalesced": 0, "stale_served": 0}

    def _is_fresh(self, entry: CacheEntry, now: float) -> bool:
        return entry.has_payload and entry.age(now) < self._window

    def peek(self, key: str) -> CacheEntry | None:
        return self._entries.get(key)

    async def get(self, key: str, fetcher: Fetcher, label: str | None = None) -> Any:
        entry = self._entries.setdefault(key, CacheEntry())
        now = self._clock()

        if self._is_fresh(entry, now):
            log.debug(f"Using cached data for {key}")
            self._stats["hits"] += 1
            return entry.payload

        if entry.in_flight is not None:
            log.debug(f"Request already in flight for {key}")
            self._stats["coalesced"] += 1
            return await self._join(key, entry)

        if self._breaker.is_blocked():
            remaining = self._breaker.remaining()
            error = RateLimitedError(blocked_message(remaining), retry_after=remaining)
            return await self._stale_or_raise(key, entry, error)

        since_attempt = now - entry.last_attempt_at
        if since_attempt < self._min_interval:
            wait = self._min_interval - since_attempt
            log.info(f"Rate limited: must wait {wait:.0f}s before next request to {key}")
            error = RequestThrottledError(f"Rate limited: wait {wait:.0f} seconds", retry_after=wait)
            return await self._stale_or_raise(key, entry, error)

        self._stats["misses"] += 1
        entry.last_attempt_at = now
        task = asyncio.get_running_loop().create_task(self._load(key, fetcher, label or key))
        task.add_done_callback(lambda done: self._settle(key, entry, done))
        entry.in_flight = task
        return await self._join(key, entry)

    async def _join(self, key: str, entry: CacheEntry) -> Any:
        in_flight = entry.in_flight
        entry.waiters += 1
        try:
            payload, _ = await asyncio.shield(in_flight)
        except _RECOVERABLE as exc:
            if entry.has_payload:
                log.warning(f"Returning stale data for {key} after failed refresh: {exc}")
                self._stats["stale_served"] += 1
                return entry.payload
            raise
        finally:
            entry.waiters -= 1
        return payload

    async def _load(self, key: str, fetcher: Fetcher, label: str) -> tuple[Any, float]:
        if self._store is not None:
            record = await self._store.get_record(key)
            if record is not None and self._clock() - record.fetched_at < self._window:
                log.info(f"Using durable cache record for {key}")
                return record.payload, record.fetched_at

        log.info(f"Queueing API request to {key}")
        payload = await self._queue.enqueue(fetcher, label)
        fetched_at = self._clock()
        if self._store is not None:
            await self._store.set_record(
                CachedRecord(cache_key=key, fetched_at=fetched_at, payload=payload)
            )
        return payload, fetched_at

    def _settle(self, key: str, entry: CacheEntry, task: asyncio.Future) -> None:
        entry.in_flight = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.debug(f"Refresh failed for {key}: {exc}")
            return
        entry.payload, entry.fetched_at = task.result()
        log.debug(f"Successfully cached data for {key}")

    async def _stale_or_raise(self, key: str, entry: CacheEntry, error: RateLimitedError) -> Any:
        if entry.has_payload:
            log.warning(f"Returning stale data for {key}: {error}")
            self._stats["stale_served"] += 1
            return entry.payload

        if self._store is not None:
            record = await self._store.get_record(key)
            if record is not None:
                if entry.in_flight is None and not entry.has_payload:
                    entry.payload, entry.fetched_at = record.payload, record.fetched_at
                log.warning(f"Returning durable record for {key}: {error}")
                self._stats["stale_served"] += 1
                return record.payload

        raise error

    def clear(self) -> None:
        self._entries.clear()

    def reset_attempts(self) -> None:
        """Forget attempt times so the next request per key may go upstream at once."""
        for entry in self._entries.values():
            entry.last_attempt_at = 0.0

    def stats(self) -> dict:
        now = self._clock()
        return {
            **self._stats,
            "size": len(self._entries),
            "entries": [
                {
                    "key": key,
                    "age_s": round(entry.age(now), 1) if entry.has_payload else None,
                    "has_data": entry.has_payload,
                    "in_flight": entry.in_flight is not None,
                    "waiters": entry.waiters,
                }
                for key, entry in self._entries.items()
            ],
        }
