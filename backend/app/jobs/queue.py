"""
Single-lane request queue for the upstream quote API.

  • ONE worker task drains the queue → at most one upstream call in flight
  • Strict FIFO, no priorities
  • Fixed spacing sleep after every call, including the last one
  • An operation raising RateLimitedError trips the breaker once and
    every queued item is rejected (DRAINING → SUSPENDED)
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque

from app.errors import (
    RateLimitedError,
    ServiceUnavailableError,
    UpstreamTimeoutError,
    blocked_message,
)
from app.jobs.breaker import CircuitBreaker

log = logging.getLogger("queue")

Operation = Callable[[], Awaitable[Any]]


class QueueState(str, enum.Enum):
    IDLE = "idle"
    DRAINING = "draining"
    SUSPENDED = "suspended"


@dataclass
class QueueItem:
    operation: Operation
    label: str
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


def _reject(future: asyncio.Future, exc: BaseException) -> None:
    if not future.done():
        future.set_exception(exc)


class RequestQueue:
    def __init__(
        self,
        breaker: CircuitBreaker,
        *,
        spacing_seconds: float,
        item_timeout_seconds: float,
        cooldown_seconds: float,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._breaker = breaker
        self._spacing = spacing_seconds
        self._item_timeout = item_timeout_seconds
        self._cooldown = cooldown_seconds
        self._sleep = sleep
        self._items: Deque[QueueItem] = deque()
        self._worker: asyncio.Task | None = None
        self._state = QueueState.IDLE
        self._active = 0

    @property
    def state(self) -> QueueState:
        if self._state is QueueState.SUSPENDED and not self._breaker.is_blocked():
            return QueueState.IDLE
        return self._state

    def __len__(self) -> int:
        return len(self._items)

    def enqueue(self, operation: Operation, label: str = "") -> asyncio.Future:
        """Append ``operation`` to the queue and return a future for its outcome."""
        future = asyncio.get_running_loop().create_future()
        if self._breaker.is_blocked():
            remaining = self._breaker.remaining()
            future.set_exception(RateLimitedError(blocked_message(remaining), retry_after=remaining))
            return future

        self._items.append(QueueItem(operation=operation, label=label, future=future))
        log.debug(f"Queued {label!r} ({len(self._items)} pending)")
        self._ensure_worker()
        return future

    def _ensure_worker(self) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        self._state = QueueState.DRAINING
        try:
            while self._items:
                if self._breaker.is_blocked():
                    self._suspend()
                    return
                item = self._items.popleft()
                if item.future.done():
                    # caller gave up before its turn
                    continue
                if await self._run(item):
                    self._suspend()
                    return
                await self._sleep(self._spacing)
        finally:
            if self._state is QueueState.DRAINING:
                self._state = QueueState.IDLE
            self._worker = None

    async def _run(self, item: QueueItem) -> bool:
        """Execute one item. Returns True when the upstream signalled rate limiting."""
        log.info(f"Executing queued request: {item.label}")
        self._active += 1
        try:
            result = await asyncio.wait_for(item.operation(), timeout=self._item_timeout)
        except RateLimitedError as exc:
            cooldown = max(self._cooldown, exc.retry_after or 0.0)
            self._breaker.trip(cooldown)
            _reject(item.future, RateLimitedError(exc.message, retry_after=self._breaker.remaining()))
            return True
        except asyncio.CancelledError:
            _reject(item.future, ServiceUnavailableError("Request queue closed"))
            raise
        except asyncio.TimeoutError:
            _reject(
                item.future,
                UpstreamTimeoutError(f"{item.label} timed out after {self._item_timeout:.0f}s"),
            )
        except Exception as exc:
            log.warning(f"Queued request {item.label!r} failed: {exc}")
            _reject(item.future, exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._active -= 1
        return False

    def _suspend(self) -> None:
        self._state = QueueState.SUSPENDED
        remaining = self._breaker.remaining()
        discarded = 0
        while self._items:
            item = self._items.popleft()
            _reject(item.future, RateLimitedError(blocked_message(remaining), retry_after=remaining))
            discarded += 1
        if discarded:
            log.warning(f"Queue suspended: discarded {discarded} pending request(s)")

    async def close(self) -> None:
        worker = self._worker
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
        while self._items:
            _reject(self._items.popleft().future, ServiceUnavailableError("Request queue closed"))
        self._state = QueueState.IDLE

    def status(self) -> dict:
        return {
            "state": self.state.value,
            "queue_length": len(self._items),
            "processing": self._worker is not None and not self._worker.done(),
            "in_flight": self._active,
            "blocked": self._breaker.is_blocked(),
        }
