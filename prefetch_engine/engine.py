"""PrefetchEngine — composition root.

Builds every component from Settings and wires them together explicitly.
Any component can be replaced by passing it in, which is how tests run the
engine against fakes.

Startup order: cache backend, token cache, queue + worker handler, scheduler.
Shutdown runs the reverse.
"""

import asyncio
import logging
import time

import psutil

from prefetch_engine.api.rate_limit import RateLimiter
from prefetch_engine.config import Settings
from prefetch_engine.database import close_db, create_engine, create_session_factory, init_db
from prefetch_engine.integrations.timeline_origin import TimelineOriginClient
from prefetch_engine.queue import JobQueue
from prefetch_engine.services.auth import TokenVerifier
from prefetch_engine.services.cache import TieredCache
from prefetch_engine.services.metrics import MetricsSink
from prefetch_engine.services.prefetcher import Prefetcher
from prefetch_engine.services.token_client import TokenClient
from prefetch_engine.strategies import ActivityStrategy, StrategyScheduler, TriggerStrategy
from prefetch_engine.worker import PrefetchWorker

logger = logging.getLogger(__name__)

QUEUE_INIT_RETRY_SECONDS = 5


class PrefetchEngine:
    """Owns the cache, queue, worker pool, scheduler and their clients."""

    def __init__(
        self,
        settings: Settings,
        *,
        token_client=None,
        origin=None,
        verifier=None,
        cache_store=None,
        db_engine=None,
        clock=time.time,
    ):
        self.settings = settings
        self._clock = clock
        self.started_at = clock()

        self.metrics = MetricsSink(
            clock=clock,
            retention_days=settings.metrics_retention_days,
            completed_outcomes=settings.queue_retention_completed,
            failed_outcomes=settings.queue_retention_failed,
        )
        self.token_client = token_client or TokenClient(
            settings.ca_url,
            settings.service_id,
            settings.service_key,
            token_path=settings.ca_token_path,
            expiry_seconds=settings.token_expiry_seconds,
            safety_margin_seconds=settings.token_safety_margin_seconds,
            timeout_ms=settings.ca_timeout_ms,
            max_retries=settings.ca_max_retries,
            clock=clock,
        )
        self.origin = origin or TimelineOriginClient(
            settings.timeline_service_url,
            timeout_ms=settings.prefetch_timeout_ms,
            max_entries=settings.max_timeline_size,
        )
        self.verifier = verifier or TokenVerifier(
            settings.ca_url,
            settings.ca_validate_path,
            service_id=settings.service_id,
            service_key=settings.service_key,
            timeout_ms=settings.ca_timeout_ms,
            cache_ttl_seconds=settings.auth_cache_ttl_seconds,
        )
        self.cache = TieredCache(
            self.metrics,
            settings.tier_ttls_ms,
            store=cache_store,
            redis_url=settings.redis_url,
            memory_fallback=settings.cache_memory_fallback,
            memory_max_entries=settings.cache_memory_max_entries,
            max_bytes=settings.max_timeline_bytes,
            clock=clock,
        )

        self.db_engine = db_engine or create_engine(settings.database_url)
        self.queue = JobQueue(
            create_session_factory(self.db_engine),
            retry_attempts=settings.queue_retry_attempts,
            backoff_base_ms=settings.queue_backoff_base_ms,
            retention_completed=settings.queue_retention_completed,
            retention_failed=settings.queue_retention_failed,
            stall_interval_ms=settings.queue_stall_interval_ms,
            poll_interval_ms=settings.queue_poll_interval_ms,
            op_timeout_ms=settings.queue_op_timeout_ms,
            clock=clock,
        )

        self.activity = ActivityStrategy()
        self.triggers = TriggerStrategy()
        self.prefetcher = Prefetcher(
            self.token_client,
            self.origin,
            self.cache,
            self.metrics,
            self.activity,
            timeout_ms=settings.prefetch_timeout_ms,
            immediate_attempts=settings.immediate_max_attempts,
            immediate_backoff_ms=settings.immediate_backoff_ms,
            clock=clock,
        )
        self.worker = PrefetchWorker(
            self.queue, self.prefetcher, self.metrics,
            concurrency=settings.worker_concurrency, clock=clock,
        )
        self.scheduler = StrategyScheduler(
            self.queue,
            self.metrics,
            [self.activity, self.triggers],
            interval_ms=settings.activity_check_interval_ms,
            batch_size=settings.worker_batch_size,
        )
        self.rate_limiters = {
            "global": RateLimiter(settings.rate_limit_global),
            "enqueue": RateLimiter(settings.rate_limit_enqueue),
            "read": RateLimiter(settings.rate_limit_read),
        }

        self.queue_ready = False
        self._queue_init_task: asyncio.Task | None = None

    # ═══════════════ LIFECYCLE ═══════════════

    async def start(self, *, worker: bool | None = None, scheduler: bool | None = None):
        worker = self.settings.worker_enabled if worker is None else worker
        scheduler = self.settings.scheduler_enabled if scheduler is None else scheduler

        cache_ok = await self.cache.connect()
        logger.info("Cache: %s", self.cache.backend if cache_ok else f"degraded ({self.cache.backend})")

        self.queue_ready = await init_db(self.db_engine)
        if not self.queue_ready:
            self._queue_init_task = asyncio.create_task(self._retry_queue_init())

        if worker:
            self.worker.start()
        if scheduler:
            self.scheduler.start()
        logger.info("Prefetch engine started | worker=%s | scheduler=%s", worker, scheduler)

    async def stop(self):
        logger.info("Prefetch engine stopping")
        await self.scheduler.stop()
        if self._queue_init_task:
            self._queue_init_task.cancel()
            await asyncio.gather(self._queue_init_task, return_exceptions=True)
        await self.queue.close(self.settings.shutdown_timeout_ms)
        await self.token_client.close()
        await self.verifier.close()
        await self.cache.close()
        await close_db(self.db_engine)
        logger.info("Prefetch engine stopped")

    async def _retry_queue_init(self):
        while not self.queue_ready:
            await asyncio.sleep(QUEUE_INIT_RETRY_SECONDS)
            self.queue_ready = await init_db(self.db_engine)

    # ═══════════════ OPERATIONS ═══════════════

    def track_activity(self, user_id: str):
        self.activity.track_activity(user_id)

    async def schedule(
        self,
        user_id: str,
        priority: str = "medium",
        delay_ms: int = 0,
        job_id: str | None = None,
    ) -> str:
        """Enqueue one prefetch job and return its id."""
        job_id, created = await self.queue.add_job(
            {"userId": user_id, "priority": priority},
            priority=priority,
            delay_ms=delay_ms,
            job_id=job_id,
        )
        if created:
            self.metrics.increment("prefetch.scheduled")
        logger.info(
            "Prefetch scheduled | user=%s | priority=%s | delay=%d | job=%s | new=%s",
            user_id, priority, delay_ms, job_id, created,
        )
        return job_id

    def trigger(self, user_id: str, priority: str = "medium"):
        """Ask for a refresh on the next scheduler tick. Repeats before the tick collapse."""
        self.triggers.trigger(user_id, priority)
        logger.info("Prefetch triggered | user=%s | priority=%s | pending=%d", user_id, priority, len(self.triggers))

    def uptime_seconds(self) -> float:
        return round(self._clock() - self.started_at, 1)

    async def health(self) -> dict:
        """Composite status: unhealthy without a cache, degraded without a dependency."""
        cache_ok, origin_ok, ca_ok, stats = await asyncio.gather(
            self.cache.ping(),
            self.origin.ping(),
            self.token_client.ping(),
            self.queue.stats(),
        )
        queue_ok = not stats.unavailable

        if not cache_ok:
            status = "unhealthy"
        elif not (queue_ok and origin_ok and ca_ok) or self.cache.fallback_active:
            status = "degraded"
        else:
            status = "healthy"

        memory = psutil.Process().memory_info()
        return {
            "status": status,
            "service": self.settings.service_id,
            "uptimeSeconds": self.uptime_seconds(),
            "checks": {
                "cache": {"ok": cache_ok, "backend": self.cache.backend, "fallback": self.cache.fallback_active},
                "queue": {"ok": queue_ok, "paused": stats.paused, "inFlight": self.queue.in_flight},
                "origin": {"ok": origin_ok},
                "certificateAuthority": {"ok": ca_ok},
            },
            "worker": {"running": self.worker.running, "concurrency": self.worker.concurrency},
            "scheduler": {"running": self.scheduler.running, "trackedUsers": len(self.activity)},
            "memory": {"rssBytes": memory.rss, "vmsBytes": memory.vms},
        }
