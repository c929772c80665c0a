"""Composition root: builds and owns every coordination object."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

import httpx
from fastapi import Request

from app.cache import DurableCache
from app.config.settings import Settings
from app.jobs.breaker import CircuitBreaker
from app.jobs.queue import RequestQueue
from app.providers.twelvedata import TwelveDataClient
from app.response_cache import ResponseCache
from app.services.market_data import MarketDataService
from app.services.snapshot_manager import SnapshotManager

log = logging.getLogger("container")


@dataclass
class Container:
    settings: Settings
    breaker: CircuitBreaker
    queue: RequestQueue
    cache: ResponseCache
    client: TwelveDataClient
    service: MarketDataService
    snapshots: SnapshotManager
    store: DurableCache | None = None
    _background: set[asyncio.Task] = field(default_factory=set)
    _store_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def spawn(self, factory: Callable[[], Coroutine[Any, Any, Any]]) -> asyncio.Task | None:
        """Run ``factory()`` as a tracked background task; no-op outside an event loop."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(factory())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def start(self) -> None:
        if self.store is None:
            return
        blocked_until = await self.store.get_block_until()
        if blocked_until is not None:
            self.breaker.restore(blocked_until)

    async def _write_block(self, blocked_until: float | None) -> None:
        # lock keeps trip and reset writes in the order they happened
        async with self._store_lock:
            if blocked_until is None:
                await self.store.clear_block()
            else:
                await self.store.set_block_until(blocked_until, time.time())

    def _persist_trip(self, blocked_until: float) -> None:
        if self.store is None:
            return
        if self.spawn(lambda: self._write_block(blocked_until)) is None:
            log.warning("No running event loop - breaker deadline not persisted")

    def _persist_reset(self) -> None:
        if self.store is None:
            return
        if self.spawn(lambda: self._write_block(None)) is None:
            log.warning("No running event loop - persisted breaker deadline not cleared")

    async def close(self) -> None:
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.queue.close()
        await self.client.aclose()
        if self.store is not None:
            await self.store.close()


def build_container(
    settings: Settings,
    *,
    http_client: httpx.AsyncClient | None = None,
    store: DurableCache | None = None,
    clock: Callable[[], float] = time.time,
) -> Container:
    coordination = settings.coordination
    if store is None and settings.redis_url:
        store = DurableCache(settings.redis_url, coordination.freshness_window_seconds)

    breaker = CircuitBreaker(clock=clock)
    queue = RequestQueue(
        breaker,
        spacing_seconds=coordination.request_spacing_seconds,
        item_timeout_seconds=coordination.queue_item_timeout_seconds,
        cooldown_seconds=coordination.breaker_cooldown_seconds,
    )
    cache = ResponseCache(
        queue,
        breaker,
        freshness_window_seconds=coordination.freshness_window_seconds,
        min_request_interval_seconds=coordination.min_request_interval_seconds,
        store=store,
        clock=clock,
    )
    client = TwelveDataClient(settings.upstream, client=http_client)
    service = MarketDataService(settings, client, cache)
    snapshots = SnapshotManager(service, stale_after_seconds=settings.snapshot_stale_after_seconds)

    container = Container(
        settings=settings,
        breaker=breaker,
        queue=queue,
        cache=cache,
        client=client,
        service=service,
        snapshots=snapshots,
        store=store,
    )
    breaker.add_listener(container._persist_trip)
    breaker.add_reset_listener(container._persist_reset)
    return container


def get_container(request: Request) -> Container:
    """FastAPI dependency returning the application's container."""
    return request.app.state.container
