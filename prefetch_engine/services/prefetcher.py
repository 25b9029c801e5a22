"""Prefetcher — one origin fetch for one user, written into the tiered cache.

Flow: service token (CA) → origin GET → tier choice → put-if-newer.
Shared by the queue worker (one attempt per job run, the queue retries) and
the immediate route (a few quick attempts inline).
"""

import asyncio
import logging
import time

from prefetch_engine.errors import (
    AuthUnavailable,
    InternalError,
    OriginError,
    OriginPermanentError,
    OriginTransientError,
    OriginUnauthorized,
    UpstreamUnavailable,
)
from prefetch_engine.services.cache import TieredCache
from prefetch_engine.services.metrics import MetricsSink

logger = logging.getLogger(__name__)

TARGET_SERVICE = "timeline"
READ_PERMISSIONS = ("read",)


class Prefetcher:
    """Fetches a timeline from origin and stores it in the right tier."""

    def __init__(
        self,
        token_client,
        origin,
        cache: TieredCache,
        metrics: MetricsSink,
        activity,
        timeout_ms: int = 10_000,
        immediate_attempts: int = 3,
        immediate_backoff_ms: int = 200,
        clock=time.time,
    ):
        self.token_client = token_client
        self.origin = origin
        self.cache = cache
        self.metrics = metrics
        self.activity = activity
        self.timeout = timeout_ms / 1000
        self.immediate_attempts = max(immediate_attempts, 1)
        self.immediate_backoff = immediate_backoff_ms / 1000
        self._clock = clock

    def choose_tier(self, user_id: str, priority: str) -> str:
        """Hot for recently-active users and high-priority work, warm otherwise."""
        if priority == "high" or self.activity.contains(user_id):
            return "hot"
        return "warm"

    async def fetch_once(self, user_id: str, priority: str) -> dict:
        """Single attempt. Raises OriginError subclasses or AuthUnavailable."""
        fetched_at = self._now_ms()
        start = time.monotonic()
        try:
            token = await self.token_client.get_service_token(TARGET_SERVICE, READ_PERMISSIONS)
            try:
                artifact = await asyncio.wait_for(
                    self.origin.fetch_timeline(user_id, token),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                raise OriginTransientError(f"origin deadline of {self.timeout:.1f}s exceeded")
            except OriginUnauthorized:
                self.token_client.invalidate(TARGET_SERVICE, READ_PERMISSIONS)
                raise
        except (OriginError, AuthUnavailable):
            self.metrics.increment("prefetch.failed")
            raise

        elapsed_ms = int((time.monotonic() - start) * 1000)
        self.metrics.record_latency(elapsed_ms)

        tier = self.choose_tier(user_id, priority)
        stored = await self.cache.put(user_id, artifact, tier, fetched_at)
        self.metrics.increment("prefetch.succeeded")
        logger.info("Prefetch OK | user=%s | tier=%s | stored=%s | %dms", user_id, tier, stored, elapsed_ms)
        return {
            "userId": user_id,
            "tier": tier,
            "fetchedAt": fetched_at,
            "durationMs": elapsed_ms,
            "stored": stored,
        }

    async def fetch_now(self, user_id: str, priority: str = "high") -> dict:
        """Synchronous prefetch with a few inline retries for transient failures."""
        last_error: Exception | None = None
        for attempt in range(1, self.immediate_attempts + 1):
            try:
                result = await self.fetch_once(user_id, priority)
                result["attempts"] = attempt
                return result
            except OriginPermanentError as e:
                logger.warning("Immediate prefetch refused | user=%s | %s", user_id, str(e)[:200])
                raise InternalError(f"Origin refused timeline for {user_id}: {e}", code="PREFETCH_FAILED")
            except (OriginError, AuthUnavailable) as e:
                last_error = e
                logger.warning(
                    "Immediate prefetch error | user=%s | attempt=%d/%d | %s",
                    user_id, attempt, self.immediate_attempts, str(e)[:200],
                )
                if attempt < self.immediate_attempts:
                    await asyncio.sleep(self.immediate_backoff * (2 ** (attempt - 1)))

        raise UpstreamUnavailable(
            f"Prefetch for {user_id} failed after {self.immediate_attempts} attempts: {str(last_error)[:100]}",
            code="PREFETCH_FAILED",
        )

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
