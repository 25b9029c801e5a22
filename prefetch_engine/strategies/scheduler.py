"""Strategy scheduler — periodic tick that turns strategy picks into jobs."""

import asyncio
import logging

from prefetch_engine.errors import EngineError
from prefetch_engine.queue import JobQueue
from prefetch_engine.services.metrics import MetricsSink
from prefetch_engine.strategies.base import Strategy

logger = logging.getLogger(__name__)


class StrategyScheduler:
    """Runs every strategy each interval and bulk-enqueues the picks."""

    def __init__(
        self,
        queue: JobQueue,
        metrics: MetricsSink,
        strategies: list[Strategy],
        interval_ms: int = 60_000,
        batch_size: int = 50,
    ):
        self.queue = queue
        self.metrics = metrics
        self.strategies = list(strategies)
        self.interval = interval_ms / 1000
        self.batch_size = max(batch_size, 1)
        self._task: asyncio.Task | None = None

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name="strategy-scheduler")
            logger.info(
                "Scheduler started | interval=%.1fs | strategies=%s",
                self.interval, ",".join(s.name for s in self.strategies),
            )

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self._task is not None

    async def tick(self) -> int:
        """Drain every strategy once. Returns the number of jobs enqueued."""
        enqueued = 0
        for strategy in self.strategies:
            picks = strategy.schedule()
            if not picks:
                continue
            for start in range(0, len(picks), self.batch_size):
                batch = picks[start:start + self.batch_size]
                jobs = [
                    {"data": {"userId": user_id, "priority": priority}, "priority": priority}
                    for user_id, priority in batch
                ]
                try:
                    ids = await self.queue.add_bulk(jobs)
                except EngineError as e:
                    self.metrics.increment("scheduler.enqueue_errors", len(batch))
                    logger.warning(
                        "Scheduler enqueue failed | strategy=%s | users=%d | %s",
                        strategy.name, len(batch), str(e)[:200],
                    )
                    continue
                enqueued += len(ids)
                self.metrics.increment("prefetch.scheduled", len(ids))
            logger.info("Scheduler tick | strategy=%s | picks=%d", strategy.name, len(picks))
        return enqueued

    async def _loop(self):
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.tick()
            except Exception as e:
                logger.error("Scheduler tick error | %s", str(e)[:200])
