"""Redis-backed shared counter store.

Multi-step updates run in ``MULTI``/``EXEC`` pipelines so concurrent
processes never observe a half-applied change.
"""

from __future__ import annotations

from typing import Any

import redis.asyncio as redis

from chatguard.logging import get_logger

log = get_logger("chatguard.storage.redis_store")

DEFAULT_PREFIX = "chatguard:"


class RedisCounterStore:
    """:class:`~chatguard.storage.base.CounterStore` over ``redis.asyncio``."""

    def __init__(self, client: redis.Redis, *, prefix: str = DEFAULT_PREFIX) -> None:
        """Initialize with an existing client.

        Args:
            client: A ``redis.asyncio.Redis`` created with
                ``decode_responses=True``.
            prefix: Namespace prepended to every key.
        """
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> RedisCounterStore:
        """Create a store with its own connection pool."""
        client = redis.from_url(url, decode_responses=True, socket_timeout=5.0)
        log.info("redis_client_created", url=url.split("@")[-1])
        return cls(client, **kwargs)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except redis.RedisError as e:
            log.error("redis_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        await self._client.aclose()
        log.info("redis_client_closed")

    # ------------------------------------------------------------------
    # Counters
    # ------------------------------------------------------------------

    async def increment_with_ttl(self, key: str, ttl_seconds: int) -> tuple[int, int]:
        k = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.incr(k)
            pipe.expire(k, ttl_seconds, nx=True)
            pipe.ttl(k)
            count, _, remaining = await pipe.execute()
        return int(count), int(remaining)

    async def record_in_window(
        self, key: str, member: str, timestamp: float, window_seconds: float, ttl_seconds: int
    ) -> int:
        k = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            # Exclusive bound: an entry exactly window_seconds old still counts
            pipe.zremrangebyscore(k, "-inf", f"({timestamp - window_seconds}")
            pipe.zadd(k, {member: timestamp})
            pipe.expire(k, ttl_seconds)
            pipe.zcard(k)
            results = await pipe.execute()
        return int(results[-1])

    # ------------------------------------------------------------------
    # Flags and values
    # ------------------------------------------------------------------

    async def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self._client.set(self._key(key), value, nx=True, ex=ttl_seconds))

    async def get(self, key: str) -> str | None:
        return await self._client.get(self._key(key))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._client.set(self._key(key), value, ex=ttl_seconds)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*(self._key(k) for k in keys)))

    async def ttl(self, key: str) -> int:
        return int(await self._client.ttl(self._key(key)))

    # ------------------------------------------------------------------
    # Lists
    # ------------------------------------------------------------------

    async def push_capped(
        self, key: str, value: str, max_length: int, ttl_seconds: int
    ) -> None:
        k = self._key(key)
        async with self._client.pipeline(transaction=True) as pipe:
            pipe.lpush(k, value)
            pipe.ltrim(k, 0, max_length - 1)
            pipe.expire(k, ttl_seconds)
            await pipe.execute()

    async def list_range(self, key: str, start: int = 0, end: int = -1) -> list[str]:
        return list(await self._client.lrange(self._key(key), start, end))
