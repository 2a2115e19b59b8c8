"""
Redis-backed key/value and list store.

This is the single place where store failures are turned into defaults:
every public method goes through ``_attempt`` and returns a safe value
(None, 0, [] or False) when Redis is not configured, unreachable or
erroring. Callers choose what that default means for them and never
need their own try/except around store calls.
"""

import json
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

log = logging.getLogger(__name__)


class RedisStore:
    def __init__(self, client=None, prefix: str = "linkpulse:"):
        self._client = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: Optional[str], prefix: str = "linkpulse:") -> "RedisStore":
        """Build a store; a missing URL gives a disabled store whose ops are no-ops"""
        if not url:
            log.warning("⚠️ REDIS_URL not set: analytics queue and cache are disabled")
            return cls(None, prefix)
        client = aioredis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        return cls(client, prefix)

    @property
    def available(self) -> bool:
        return self._client is not None

    def key(self, name: str) -> str:
        return self.prefix + name

    async def _attempt(self, op: str, call: Callable[[], Awaitable[Any]], default):
        if self._client is None:
            return default
        try:
            return await call()
        except (RedisError, OSError) as e:
            log.warning(f"⚠️ Redis {op} failed: {e}")
            return default

    # --- LISTS ---

    async def append(self, list_key: str, *values: str) -> int:
        """Append to the tail of a list; returns the new length (0 on failure)"""
        if not values:
            return 0
        return await self._attempt("rpush", lambda: self._client.rpush(self.key(list_key), *values), 0)

    async def peek(self, list_key: str, start: int, stop: int) -> List[str]:
        """Read [start, stop] (inclusive) without removing anything"""
        return await self._attempt("lrange", lambda: self._client.lrange(self.key(list_key), start, stop), [])

    async def trim(self, list_key: str, start: int, stop: int) -> bool:
        async def _trim():
            await self._client.ltrim(self.key(list_key), start, stop)
            return True
        return await self._attempt("ltrim", _trim, False)

    async def length(self, list_key: str) -> int:
        return await self._attempt("llen", lambda: self._client.llen(self.key(list_key)), 0)

    # --- KEYS ---

    async def get(self, key: str) -> Optional[str]:
        return await self._attempt("get", lambda: self._client.get(self.key(key)), None)

    async def set(self, key: str, value, ttl: Optional[int] = None) -> bool:
        data = value if isinstance(value, str) else json.dumps(value)

        async def _set():
            await self._client.set(self.key(key), data, ex=ttl if ttl and ttl > 0 else None)
            return True
        return await self._attempt("set", _set, False)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._attempt("del", lambda: self._client.delete(*[self.key(k) for k in keys]), 0)

    async def delete_pattern(self, pattern: str, page_size: int = 100) -> int:
        """Delete every key matching a glob pattern, SCANning in pages"""
        async def _delete_pattern():
            deleted = 0
            batch = []
            async for k in self._client.scan_iter(match=self.key(pattern), count=page_size):
                batch.append(k)
                if len(batch) >= page_size:
                    deleted += await self._client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._client.delete(*batch)
            return deleted
        return await self._attempt("scan/del", _delete_pattern, 0)

    async def get_json(self, key: str):
        raw = await self.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            # stale or invalid entry, treat as a miss
            return None

    # --- LEASES ---

    async def acquire_lock(self, name: str, ttl: int):
        """Take a non-blocking lease; returns the lock handle or None"""
        async def _acquire():
            lock = self._client.lock(self.key(name), timeout=ttl, blocking=False)
            if await lock.acquire():
                return lock
            return None
        return await self._attempt("lock", _acquire, None)

    async def release_lock(self, lock) -> bool:
        if lock is None:
            return False

        async def _release():
            await lock.release()
            return True
        return await self._attempt("unlock", _release, False)

    async def ping(self) -> Optional[float]:
        """Round-trip latency in ms, or None when unavailable"""
        async def _ping():
            start = time.perf_counter()
            await self._client.ping()
            return round((time.perf_counter() - start) * 1000, 2)
        return await self._attempt("ping", _ping, None)

    async def close(self):
        if self._client is not None:
            await self._attempt("close", self._client.aclose, None)
