"""
app/services/snapshot_manager.py
Owner of the current market snapshot.

State machine:
  idle/ready → fetching        fetch_snapshot() with nothing pending
  fetching   → ready           snapshot replaced, subscribers notified
  fetching   → blocked         upstream rate limit or open breaker; no fetches until reset()
  fetching   → idle (+error)   any other failure, per-key throttling included; callers may retry

Concurrent fetch_snapshot() calls share one in-flight task.
"""

from __future__ import annotations

import asyncio
import datetime
import enum
import logging
from typing import Callable

from app.errors import MarketDataError, RateLimitedError, RequestThrottledError
from app.schemas.market import MarketSnapshot, SnapshotState
from app.services.market_data import MarketDataService

log = logging.getLogger("snapshot")

Subscriber = Callable[[SnapshotState], None]


class SnapshotStatus(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    BLOCKED = "blocked"


def _now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


class SnapshotManager:
    def __init__(
        self,
        service: MarketDataService,
        *,
        stale_after_seconds: float = 600.0,
        now: Callable[[], datetime.datetime] = _now,
    ) -> None:
        self._service = service
        self._stale_after = stale_after_seconds
        self._now = now
        self._status = SnapshotStatus.IDLE
        self._snapshot: MarketSnapshot | None = None
        self._error: str | None = None
        self._last_update: datetime.datetime | None = None
        self._credits_exhausted = False
        self._retry_after: float | None = None
        self._subscribers: list[Subscriber] = []
        self._pending: asyncio.Task | None = None

    @property
    def status(self) -> SnapshotStatus:
        return self._status

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        state = self.get_state()
        for callback in list(self._subscribers):
            try:
                callback(state)
            except Exception:
                log.exception("Snapshot subscriber failed")

    def _age(self) -> float | None:
        if self._last_update is None:
            return None
        return (self._now() - self._last_update).total_seconds()

    def get_state(self) -> SnapshotState:
        age = self._age()
        return SnapshotState(
            status=self._status.value,
            snapshot=self._snapshot,
            loading=self._status is SnapshotStatus.FETCHING,
            error=self._error,
            last_update=self._last_update,
            credits_exhausted=self._credits_exhausted,
            retry_after_seconds=self._retry_after,
            is_stale=age is not None and age > self._stale_after,
        )

    async def fetch_snapshot(self) -> SnapshotState:
        if self._pending is not None:
            log.debug("Deduplicating request - using existing pending request")
            return await asyncio.shield(self._pending)

        if self._credits_exhausted:
            log.info("Skipping snapshot request - API credits exhausted")
            return self.get_state()

        self._pending = asyncio.get_running_loop().create_task(self._perform_fetch())
        self._pending.add_done_callback(self._clear_pending)
        return await asyncio.shield(self._pending)

    def _clear_pending(self, task: asyncio.Task) -> None:
        if self._pending is task:
            self._pending = None

    async def _perform_fetch(self) -> SnapshotState:
        self._status = SnapshotStatus.FETCHING
        self._notify()

        try:
            snapshot = await self._service.get_market_snapshot()
        except RequestThrottledError as exc:
            # per-key attempt spacing, not an upstream signal
            log.info(f"Snapshot refresh throttled: {exc}")
            self._status = SnapshotStatus.IDLE
            self._error = exc.message
            self._retry_after = exc.retry_after
        except RateLimitedError as exc:
            log.warning(f"Snapshot blocked: {exc}")
            self._status = SnapshotStatus.BLOCKED
            self._credits_exhausted = True
            self._error = exc.message
            self._retry_after = exc.retry_after
        except MarketDataError as exc:
            log.error(f"Error fetching market snapshot: {exc}")
            self._status = SnapshotStatus.IDLE
            self._error = exc.message
        except Exception as exc:
            log.exception("Unexpected error fetching market snapshot")
            self._status = SnapshotStatus.IDLE
            self._error = str(exc) or type(exc).__name__
        else:
            self._snapshot = snapshot
            self._last_update = snapshot.last_updated
            self._status = SnapshotStatus.READY
            self._error = None
            self._retry_after = None
            log.info(f"Loaded market snapshot with {len(snapshot.symbols)} symbols")

        self._notify()
        return self.get_state()

    async def refresh_if_stale(self, max_age_seconds: float) -> SnapshotState:
        """Fetch only when there is no snapshot or it is older than ``max_age_seconds``."""
        age = self._age()
        if age is not None and age <= max_age_seconds:
            return self.get_state()
        if self._credits_exhausted:
            return self.get_state()
        return await self.fetch_snapshot()

    def reset(self) -> None:
        """Clear the credits-exhausted latch so fetches may resume."""
        if not self._credits_exhausted and self._status is not SnapshotStatus.BLOCKED:
            return
        log.info("Snapshot manager reset - requests allowed again")
        self._credits_exhausted = False
        self._retry_after = None
        self._error = None
        self._status = SnapshotStatus.READY if self._snapshot is not None else SnapshotStatus.IDLE
        self._notify()
