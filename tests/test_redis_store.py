"""Tests for the Redis-backed tier store (fakeredis with Lua support)."""

import asyncio

import fakeredis
import pytest
from conftest import TTLS_MS

from prefetch_engine.services.cache import RedisTimelineStore, TieredCache, _key


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    await client.flushall()
    yield client


@pytest.fixture
async def redis_cache(redis_client, metrics, clock):
    tiered = TieredCache(metrics, TTLS_MS, store=RedisTimelineStore(client=redis_client), clock=clock)
    assert await tiered.connect() is True
    yield tiered
    await tiered.close()


def _now_ms(clock) -> int:
    return int(clock() * 1000)


class TestRedisPutIfNewer:
    @pytest.mark.asyncio
    async def test_older_write_refused(self, redis_cache, redis_client, clock):
        now = _now_ms(clock)
        assert await redis_cache.put("u1", {"v": 2}, "warm", fetched_at=now) is True
        assert await redis_cache.put("u1", {"v": 1}, "hot", fetched_at=now - 1000) is False

        hit = await redis_cache.get("u1")
        assert hit.artifact == {"v": 2}
        assert hit.tier == "warm"
        assert await redis_client.exists(_key("hot", "u1")) == 0

    @pytest.mark.asyncio
    async def test_same_fetch_time_replaces(self, redis_cache, clock):
        now = _now_ms(clock)
        await redis_cache.put("u1", {"v": 1}, "warm", fetched_at=now)
        assert await redis_cache.put("u1", {"v": 2}, "warm", fetched_at=now) is True
        assert (await redis_cache.get("u1")).artifact == {"v": 2}

    @pytest.mark.asyncio
    async def test_newer_write_moves_tier(self, redis_cache, redis_client, clock):
        now = _now_ms(clock)
        await redis_cache.put("u1", {"v": 1}, "hot", fetched_at=now - 1000)
        assert await redis_cache.put("u1", {"v": 2}, "warm", fetched_at=now) is True

        assert await redis_client.exists(_key("hot", "u1")) == 0
        assert await redis_client.exists(_key("warm", "u1")) == 1
        status = await redis_cache.status("u1")
        assert status.tier == "warm"

    @pytest.mark.asyncio
    async def test_key_expiry_counts_from_fetch_time(self, redis_cache, redis_client, clock):
        await redis_cache.put("u1", {"v": 1}, "hot", fetched_at=_now_ms(clock) - 200_000)
        pttl = await redis_client.pttl(_key("hot", "u1"))
        assert 95_000 <= pttl <= 100_000

    @pytest.mark.asyncio
    async def test_unreadable_entry_is_overwritten(self, redis_cache, redis_client):
        await redis_client.set(_key("hot", "u1"), "not json")
        assert await redis_cache.put("u1", {"v": 1}, "warm") is True
        assert await redis_client.exists(_key("hot", "u1")) == 0
        assert (await redis_cache.get("u1")).artifact == {"v": 1}


class TestRedisDelete:
    @pytest.mark.asyncio
    async def test_delete_clears_both_tiers(self, redis_cache, redis_client):
        await redis_cache.put("u1", {"v": 1}, "hot")
        await redis_client.set(_key("warm", "u1"), "leftover")

        assert await redis_cache.delete("u1") is True
        assert await redis_client.exists(_key("hot", "u1"), _key("warm", "u1")) == 0
        assert await redis_cache.get("u1") is None

    @pytest.mark.asyncio
    async def test_delete_absent_user(self, redis_cache):
        assert await redis_cache.delete("ghost") is False

    @pytest.mark.asyncio
    async def test_concurrent_put_and_delete(self, redis_cache, redis_client, clock):
        now = _now_ms(clock)
        for i in range(20):
            user = f"u{i}"
            await asyncio.gather(
                redis_cache.put(user, {"v": i}, "hot", fetched_at=now),
                redis_cache.delete(user),
            )
            hit = await redis_cache.get(user)
            assert hit is None or (hit.artifact == {"v": i} and hit.tier == "hot")
            assert await redis_client.exists(_key("hot", user), _key("warm", user)) <= 1
