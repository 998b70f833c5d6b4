"""TTL cache for replay results and fallback analyses.

Replay data is derived from immutable historical chain state, so entries
never need coherency beyond their TTL.  The cache is an explicit service
object handed to the components that use it; there is no module-level
singleton.

Usage:
    from replay_engine.core.cache import ReplayCache, replay_cache_key

    cache = ReplayCache()                     # in-process LRU
    cache = ReplayCache(backend="redis")      # shared Redis store

    key = replay_cache_key("tx", tx_hash, "mainnet", ["trace", "stateDiff"])
    await cache.set(key, result, ttl=600)
    await cache.get(key)
    await cache.invalidate(key)
    await cache.invalidate_prefix("replay_tx_")
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any, Callable

import redis.asyncio as aioredis

from replay_engine.core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def replay_cache_key(kind: str, target: str, network: str, tracers: Iterable[str]) -> str:
    """Deterministic key for a replay; tracer order does not matter."""
    tracer_part = "_".join(sorted(str(getattr(t, "value", t)) for t in tracers))
    return f"replay_{kind}_{target.lower()}_{network}_{tracer_part}"


@dataclass
class _Entry:
    value: Any
    expires_at: float


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0
    sets: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


class ReplayCache:
    """Async key/value cache with per-entry TTL and LRU eviction."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        backend: str | None = None,
        redis_client: Any | None = None,
        prefix: str = "replay",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or get_settings()
        self._backend = backend or self.settings.cache_backend
        self._default_ttl = self.settings.cache_default_ttl
        self._max_entries = self.settings.cache_max_entries
        self._prefix = prefix
        self._clock = clock
        self._lock = asyncio.Lock()
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._redis = redis_client
        self._redis_enabled = self._backend == "redis"
        self._stats = CacheStats()

    @property
    def backend(self) -> str:
        return self._backend

    # ── Redis plumbing ───────────────────────────────────────────────────────

    async def _get_redis(self) -> Any | None:
        if not self._redis_enabled:
            return None
        if self._redis is None:
            try:
                self._redis = aioredis.from_url(
                    self.settings.redis_url,
                    decode_responses=True,
                    socket_connect_timeout=2,
                )
                await self._redis.ping()
            except Exception as exc:
                logger.warning("Redis cache unavailable: %s; running without cache", exc)
                self._redis_enabled = False
                self._redis = None
        return self._redis

    def _redis_key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    # ── Core operations ──────────────────────────────────────────────────────

    async def get(self, key: str) -> Any | None:
        """Return the cached value, or ``None`` on miss or expiry."""
        if self._backend == "redis":
            return await self._redis_get(key)

        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats.misses += 1
                return None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                self._stats.expirations += 1
                self._stats.misses += 1
                return None
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return entry.value

    async def set(
        self,
        key: str,
        value: Any,
        ttl: int | None = None,
    ) -> None:
        """Store *value* under *key* for *ttl* seconds (default from settings)."""
        ttl = self._default_ttl if ttl is None else ttl
        if self._backend == "redis":
            await self._redis_set(key, value, ttl)
            return

        async with self._lock:
            self._entries[key] = _Entry(
                value=value,
                expires_at=self._clock() + ttl,
            )
            self._entries.move_to_end(key)
            self._stats.sets += 1
            while len(self._entries) > self._max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._stats.evictions += 1
                logger.debug("Evicted cache entry %s", evicted)

    async def invalidate(self, key: str) -> bool:
        """Delete a single key. Returns whether it existed."""
        if self._backend == "redis":
            client = await self._get_redis()
            if not client:
                return False
            try:
                return bool(await client.delete(self._redis_key(key)))
            except Exception as exc:
                logger.debug("Cache DELETE error for %s: %s", key, exc)
                return False

        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def invalidate_prefix(self, prefix: str) -> int:
        """Delete every key starting with *prefix*. Returns count deleted."""
        if self._backend == "redis":
            client = await self._get_redis()
            if not client:
                return 0
            count = 0
            try:
                async for redis_key in client.scan_iter(match=self._redis_key(prefix) + "*", count=100):
                    await client.delete(redis_key)
                    count += 1
            except Exception as exc:
                logger.debug("Cache INVALIDATE prefix error for %s: %s", prefix, exc)
            return count

        async with self._lock:
            doomed = [k for k in self._entries if k.startswith(prefix)]
            for k in doomed:
                del self._entries[k]
            return len(doomed)

    async def clear(self) -> None:
        if self._backend == "redis":
            await self.invalidate_prefix("")
            return
        async with self._lock:
            self._entries.clear()

    async def close(self) -> None:
        """Close the Redis connection, if any."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    # ── Redis backend ────────────────────────────────────────────────────────

    async def _redis_get(self, key: str) -> Any | None:
        client = await self._get_redis()
        if not client:
            self._stats.misses += 1
            return None
        try:
            raw = await client.get(self._redis_key(key))
        except Exception as exc:
            logger.debug("Cache GET error for %s: %s", key, exc)
            raw = None
        if raw is None:
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return json.loads(raw)

    async def _redis_set(self, key: str, value: Any, ttl: int) -> None:
        client = await self._get_redis()
        if not client:
            return
        try:
            await client.set(self._redis_key(key), json.dumps(value, default=str), ex=ttl)
            self._stats.sets += 1
        except Exception as exc:
            logger.debug("Cache SET error for %s: %s", key, exc)

    # ── Stats ────────────────────────────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        """Return cache statistics."""
        async with self._lock:
            size = len(self._entries)
        return {
            "backend": self._backend,
            "enabled": self._backend == "memory" or self._redis_enabled,
            "size": size,
            "max_entries": self._max_entries,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "sets": self._stats.sets,
            "evictions": self._stats.evictions,
            "expirations": self._stats.expirations,
            "hit_rate": round(self._stats.hit_rate, 4),
        }
