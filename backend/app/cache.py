from __future__ import annotations

import json
import logging
import math

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.schemas.provider import CachedRecord

log = logging.getLogger("durable_cache")

_RECORD_PREFIX = "marketdesk:cache:"
_BREAKER_KEY = "marketdesk:breaker"


def _get_client(redis_url: str) -> Redis:
    return Redis.from_url(redis_url)


class DurableCache:
    """Optional Redis mirror of the response cache and the breaker deadline."""

    def __init__(self, redis_url: str, ttl_seconds: float) -> None:
        self._client = _get_client(redis_url)
        self._ttl = max(int(math.ceil(ttl_seconds)), 1)

    async def get_record(self, cache_key: str) -> CachedRecord | None:
        try:
            raw = await self._client.get(_RECORD_PREFIX + cache_key)
        except RedisError as exc:
            log.warning(f"Redis get failed for {cache_key}: {exc}")
            return None

        if not raw:
            return None

        try:
            payload = json.loads(raw)
            return CachedRecord(**payload)
        except (json.JSONDecodeError, TypeError, ValueError):
            return None

    async def set_record(self, record: CachedRecord) -> None:
        try:
            await self._client.setex(
                _RECORD_PREFIX + record.cache_key, self._ttl, record.model_dump_json()
            )
        except RedisError as exc:
            log.warning(f"Redis set failed for {record.cache_key}: {exc}")

    async def set_block_until(self, blocked_until: float, now: float) -> None:
        ttl = int(math.ceil(blocked_until - now))
        if ttl <= 0:
            return
        try:
            await self._client.setex(_BREAKER_KEY, ttl, json.dumps({"blocked_until": blocked_until}))
        except RedisError as exc:
            log.warning(f"Redis set failed for breaker status: {exc}")

    async def get_block_until(self) -> float | None:
        try:
            raw = await self._client.get(_BREAKER_KEY)
        except RedisError as exc:
            log.warning(f"Redis get failed for breaker status: {exc}")
            return None

        if not raw:
            return None

        try:
            status = json.loads(raw)
            return float(status["blocked_until"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            return None

    async def clear_block(self) -> None:
        try:
            await self._client.delete(_BREAKER_KEY)
        except RedisError as exc:
            log.warning(f"Redis delete failed for breaker status: {exc}")

    async def close(self) -> None:
        await self._client.aclose()
