"""Tiered timeline cache with Redis backend and in-memory fallback.

Two logical stores per user:
  - hot:  recently-active users, short TTL (default 5 min)
  - warm: cooler users, longer TTL (default 15 min)

A user lives in at most one tier. Writes are put-if-newer: an artifact with
an older fetchedAt than the stored one is refused, so a slow fetch can never
overwrite a fresher one. On Redis this is a single Lua script; the memory
store does it without yielding to the event loop.

Graceful degradation: if Redis is unavailable at startup, uses
cachetools.TTLCache in-memory. Store errors at runtime read as a miss and
drop writes.
"""

import json
import logging
import time
from typing import Any

from cachetools import TTLCache

from prefetch_engine.schemas import TIERS, CachedTimeline, CacheStatus
from prefetch_engine.services.metrics import MetricsSink

logger = logging.getLogger(__name__)

# KEYS[1] = target tier key, KEYS[2] = other tier key
# ARGV[1] = fetchedAt (ms), ARGV[2] = JSON document, ARGV[3] = TTL (ms)
PUT_IF_NEWER_LUA = """
local function fetched_at(key)
  local raw = redis.call('GET', key)
  if not raw then return -1 end
  local ok, doc = pcall(cjson.decode, raw)
  if not ok or type(doc) ~= 'table' then return -1 end
  return tonumber(doc['fetchedAt']) or -1
end
local incoming = tonumber(ARGV[1])
if fetched_at(KEYS[1]) > incoming or fetched_at(KEYS[2]) > incoming then
  return 0
end
redis.call('SET', KEYS[1], ARGV[2], 'PX', ARGV[3])
redis.call('DEL', KEYS[2])
return 1
"""


def _key(tier: str, user_id: str) -> str:
    # Hash tag keeps both tiers of one user in the same cluster slot.
    return f"tl:{tier}:{{{user_id}}}"


def _other(tier: str) -> str:
    return "warm" if tier == "hot" else "hot"


# ═══════════════ STORES ═══════════════

class MemoryTimelineStore:
    """Process-local store: one TTLCache per tier."""

    backend = "memory"

    def __init__(self, ttls_ms: dict[str, int], max_entries: int = 10_000, clock=time.time):
        self._tiers: dict[str, TTLCache] = {
            tier: TTLCache(maxsize=max_entries, ttl=ttls_ms[tier] / 1000, timer=clock)
            for tier in TIERS
        }

    async def connect(self) -> bool:
        return True

    async def close(self):
        for cache in self._tiers.values():
            cache.clear()

    async def ping(self) -> bool:
        return True

    async def get(self, user_id: str) -> dict | None:
        for tier in TIERS:
            doc = self._tiers[tier].get(user_id)
            if doc is not None:
                return doc
        return None

    async def put_if_newer(self, user_id: str, doc: dict, tier: str, ttl_ms: int) -> bool:
        current = await self.get(user_id)
        if current is not None and current["fetchedAt"] > doc["fetchedAt"]:
            return False
        self._tiers[_other(tier)].pop(user_id, None)
        self._tiers[tier][user_id] = doc
        return True

    async def delete(self, user_id: str) -> bool:
        removed = False
        for tier in TIERS:
            removed = self._tiers[tier].pop(user_id, None) is not None or removed
        return removed


class RedisTimelineStore:
    """Shared store on Redis; safe for several engine processes."""

    backend = "redis"

    def __init__(self, url: str = "", op_timeout: float = 2.0, client=None):
        self.url = url
        self.op_timeout = op_timeout
        self._redis = client
        self._put_script = None

    async def connect(self) -> bool:
        """Connect to Redis. Returns True on success."""
        import redis.asyncio as aioredis

        if self._redis is None:
            self._redis = aioredis.from_url(
                self.url,
                decode_responses=True,
                socket_connect_timeout=3,
                socket_timeout=self.op_timeout,
            )
        self._put_script = self._redis.register_script(PUT_IF_NEWER_LUA)
        try:
            await self._redis.ping()
            return True
        except Exception as e:
            logger.warning("Redis connection failed: %s", str(e)[:100])
            return False

    async def close(self):
        """Close Redis connection."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        if not self._redis:
            return False
        try:
            return bool(await self._redis.ping())
        except Exception as e:
            logger.debug("Redis PING error: %s", str(e)[:100])
            return False

    async def get(self, user_id: str) -> dict | None:
        self._require()
        raw_hot, raw_warm = await self._redis.mget(_key("hot", user_id), _key("warm", user_id))
        for raw in (raw_hot, raw_warm):
            if raw:
                return json.loads(raw)
        return None

    async def put_if_newer(self, user_id: str, doc: dict, tier: str, ttl_ms: int) -> bool:
        self._require()
        written = await self._put_script(
            keys=[_key(tier, user_id), _key(_other(tier), user_id)],
            args=[doc["fetchedAt"], json.dumps(doc, ensure_ascii=False), ttl_ms],
        )
        return bool(written)

    async def delete(self, user_id: str) -> bool:
        self._require()
        removed = await self._redis.delete(_key("hot", user_id), _key("warm", user_id))
        return removed > 0

    def _require(self):
        if self._redis is None:
            raise ConnectionError("Redis store is closed")


# ═══════════════ TIERED CACHE ═══════════════

class TieredCache:
    """Hot/warm timeline cache. Store failures never propagate to callers."""

    def __init__(
        self,
        metrics: MetricsSink,
        ttls_ms: dict[str, int],
        *,
        store=None,
        redis_url: str = "",
        memory_fallback: bool = True,
        memory_max_entries: int = 10_000,
        max_bytes: int = 1_048_576,
        clock=time.time,
    ):
        self._metrics = metrics
        self._ttls_ms = dict(ttls_ms)
        self._store = store
        self._redis_url = redis_url
        self._memory_fallback = memory_fallback
        self._memory_max_entries = memory_max_entries
        self._max_bytes = max_bytes
        self._clock = clock
        self.fallback_active = False

    @property
    def backend(self) -> str:
        return self._store.backend if self._store else "none"

    async def connect(self) -> bool:
        """Connect the backend. Returns True when the preferred backend is up."""
        if self._store is not None:
            return await self._store.connect()

        store = RedisTimelineStore(self._redis_url)
        if await store.connect():
            self._store = store
            return True

        if self._memory_fallback:
            logger.warning("Tiered cache using in-memory fallback")
            await store.close()
            self._store = MemoryTimelineStore(self._ttls_ms, self._memory_max_entries, self._clock)
            self.fallback_active = True
        else:
            logger.warning("Tiered cache backend unreachable | reads miss, writes dropped")
            self._store = store
        return False

    async def close(self):
        if self._store:
            await self._store.close()

    async def ping(self) -> bool:
        return bool(self._store) and await self._store.ping()

    async def get(self, user_id: str) -> CachedTimeline | None:
        """Hot first, then warm. Expired or unreadable entries are misses."""
        doc = await self._safe_get(user_id)
        hit = None
        if doc is not None and self._remaining_ms(doc) > 0:
            hit = CachedTimeline(
                user_id=user_id,
                artifact=doc.get("artifact"),
                tier=doc["tier"],
                fetched_at=doc["fetchedAt"],
            )
        self._metrics.record_cache_lookup(hit.tier if hit else None)
        return hit

    async def put(
        self,
        user_id: str,
        artifact: Any,
        tier: str,
        fetched_at: int | None = None,
    ) -> bool:
        """Write to `tier`, removing the other tier. Returns False if not stored."""
        if tier not in self._ttls_ms:
            raise ValueError(f"unknown tier: {tier}")
        fetched_at = fetched_at if fetched_at is not None else self._now_ms()
        doc = {"artifact": artifact, "fetchedAt": fetched_at, "tier": tier}

        size = len(json.dumps(artifact, ensure_ascii=False, default=str).encode())
        if size > self._max_bytes:
            logger.warning("Cache SET dropped | user=%s | bytes=%d > %d", user_id, size, self._max_bytes)
            self._metrics.increment("cache.dropped")
            return False

        ttl_ms = self._remaining_ms(doc)
        if ttl_ms <= 0:
            self._metrics.increment("cache.dropped")
            return False

        try:
            written = await self._store.put_if_newer(user_id, doc, tier, ttl_ms)
        except Exception as e:
            self._store_error("SET", user_id, e)
            return False

        if written:
            self._metrics.record_tier_write(tier)
            logger.info("Cache SET (%s) | user=%s | tier=%s | ttl=%dms", self.backend, user_id, tier, ttl_ms)
        else:
            logger.info("Cache SET skipped (newer entry stored) | user=%s", user_id)
        return written

    async def delete(self, user_id: str) -> bool:
        try:
            removed = await self._store.delete(user_id)
        except Exception as e:
            self._store_error("DEL", user_id, e)
            return False
        if removed:
            logger.info("Cache invalidated | user=%s", user_id)
        return removed

    async def exists(self, user_id: str) -> bool:
        return (await self.status(user_id)).exists

    async def ttl(self, user_id: str) -> int | None:
        """Remaining TTL in ms, or None when absent."""
        return (await self.status(user_id)).ttl

    async def status(self, user_id: str) -> CacheStatus:
        doc = await self._safe_get(user_id)
        if doc is None:
            return CacheStatus(exists=False)
        remaining = self._remaining_ms(doc)
        if remaining <= 0:
            return CacheStatus(exists=False)
        return CacheStatus(exists=True, tier=doc["tier"], ttl=remaining)

    # ─── internals ───

    async def _safe_get(self, user_id: str) -> dict | None:
        try:
            return await self._store.get(user_id)
        except Exception as e:
            self._store_error("GET", user_id, e)
            return None

    def _remaining_ms(self, doc: dict) -> int:
        ttl = self._ttls_ms.get(doc.get("tier"), 0)
        return int(doc["fetchedAt"] + ttl - self._now_ms())

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _store_error(self, op: str, user_id: str, error: Exception):
        self._metrics.increment("cache.errors")
        logger.debug("Cache %s error | user=%s | %s", op, user_id, str(error)[:100])
