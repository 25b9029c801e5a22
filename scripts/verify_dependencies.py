#!/usr/bin/env python3
"""Live dependency check — run against a real deployment's settings.

Usage:
  1. Fill in SERVICE_KEY, CA_URL, TIMELINE_SERVICE_URL, REDIS_URL and
     DATABASE_URL in .env
  2. Run: python scripts/verify_dependencies.py [sample-user-id]

Steps:
  Step 1: Verify .env configuration
  Step 2: Connect the tiered cache (Redis)
  Step 3: Create / reach the queue database
  Step 4: Issue a service token from the Certificate Authority
  Step 5: Fetch one timeline from origin with that token
"""

import asyncio
import sys
import time

from prefetch_engine.config import settings
from prefetch_engine.database import close_db, create_engine, create_session_factory, init_db
from prefetch_engine.errors import AuthUnavailable, OriginError
from prefetch_engine.integrations.timeline_origin import TimelineOriginClient
from prefetch_engine.queue import JobQueue
from prefetch_engine.services.cache import TieredCache
from prefetch_engine.services.metrics import MetricsSink
from prefetch_engine.services.prefetcher import READ_PERMISSIONS, TARGET_SERVICE
from prefetch_engine.services.token_client import TokenClient


def step_header(n: int, title: str) -> None:
    print(f"\n{'='*60}")
    print(f"  Step {n}: {title}")
    print(f"{'='*60}\n")


def ok(msg: str) -> None:
    print(f"  ✅ {msg}")


def fail(msg: str) -> None:
    print(f"  ❌ {msg}")


def info(msg: str) -> None:
    print(f"  ℹ️  {msg}")


async def step1_verify_env():
    step_header(1, "Verify .env Configuration")
    if settings.service_key:
        ok(f"SERVICE_KEY: set ({settings.service_key[:4]}...)")
    else:
        fail("SERVICE_KEY: NOT SET, the CA will refuse token requests")
        return False

    ok(f"Service id: {settings.service_id}")
    ok(f"CA: {settings.ca_url}")
    ok(f"Origin: {settings.timeline_service_url}")
    info(f"Hot/warm TTL: {settings.cache_hot_ttl_ms}ms / {settings.cache_warm_ttl_ms}ms")
    return True


async def step2_cache():
    step_header(2, "Connect Tiered Cache")
    cache = TieredCache(MetricsSink(), settings.tier_ttls_ms, redis_url=settings.redis_url, memory_fallback=False)
    try:
        if not await cache.connect():
            fail(f"Redis unreachable at {settings.redis_url}")
            return False
        ok(f"Backend: {cache.backend}")
        status = await cache.status("verify-dependencies")
        ok(f"Status probe: exists={status.exists}")
        return True
    finally:
        await cache.close()


async def step3_queue():
    step_header(3, "Queue Database")
    engine = create_engine(settings.database_url)
    try:
        if not await init_db(engine):
            fail("Database unreachable, check DATABASE_URL")
            return False
        stats = await JobQueue(create_session_factory(engine)).stats()
        ok(f"waiting={stats.waiting} active={stats.active} delayed={stats.delayed} failed={stats.failed}")
        return not stats.unavailable
    finally:
        await close_db(engine)


async def step4_token(client: TokenClient):
    step_header(4, "Issue Service Token")
    start = time.monotonic()
    try:
        token = await client.get_service_token(TARGET_SERVICE, READ_PERMISSIONS)
    except AuthUnavailable as e:
        fail(e.message)
        return None
    ok(f"Token issued ({token[:8]}...) in {int((time.monotonic() - start) * 1000)}ms")
    return token


async def step5_origin(token: str, user_id: str):
    step_header(5, "Fetch Timeline From Origin")
    origin = TimelineOriginClient(
        settings.timeline_service_url,
        timeout_ms=settings.prefetch_timeout_ms,
        max_entries=settings.max_timeline_size,
    )
    info(f"User: {user_id}")
    try:
        body = await origin.fetch_timeline(user_id, token)
    except OriginError as e:
        fail(f"{type(e).__name__}: {e}")
        return False
    entries = body.get("entries", []) if isinstance(body, dict) else []
    ok(f"Got timeline with {len(entries)} entries")
    return True


async def main():
    print("\n📰 Timeline Prefetch | Live Dependency Verification")
    print("=" * 60)
    user_id = sys.argv[1] if len(sys.argv) > 1 else "verify-user"

    results = {}
    results[1] = await step1_verify_env()
    results[2] = await step2_cache()
    results[3] = await step3_queue()

    client = TokenClient(
        settings.ca_url,
        settings.service_id,
        settings.service_key,
        token_path=settings.ca_token_path,
        timeout_ms=settings.ca_timeout_ms,
    )
    token = await step4_token(client)
    results[4] = token is not None
    if token is None:
        print("\n⚠️  Skipping origin fetch (no service token)")
        results[5] = False
    else:
        results[5] = await step5_origin(token, user_id)
    await client.close()

    # Summary
    print(f"\n{'='*60}")
    print("  SUMMARY")
    print(f"{'='*60}")
    for step_n, passed in sorted(results.items()):
        status = "✅ PASS" if passed else "❌ FAIL"
        print(f"  Step {step_n}: {status}")

    total_passed = sum(1 for v in results.values() if v)
    print(f"\n  {total_passed}/{len(results)} steps passed")
    print(f"{'='*60}\n")

    sys.exit(0 if all(results.values()) else 1)


if __name__ == "__main__":
    asyncio.run(main())
