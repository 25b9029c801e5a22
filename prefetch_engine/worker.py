"""Queue handler wrapped around the Prefetcher.

Each job run is one attempt; retry and backoff belong to the queue.
Origin 4xx responses other than 401 are not worth retrying and fail the job
immediately.
"""

import logging
import time

from prefetch_engine.errors import AuthUnavailable, OriginError, OriginPermanentError, PermanentJobError
from prefetch_engine.queue import JobQueue
from prefetch_engine.schemas import JobOutcome, JobView
from prefetch_engine.services.metrics import MetricsSink
from prefetch_engine.services.prefetcher import Prefetcher

logger = logging.getLogger(__name__)


class PrefetchWorker:
    """Consumes prefetch jobs with bounded concurrency."""

    def __init__(
        self,
        queue: JobQueue,
        prefetcher: Prefetcher,
        metrics: MetricsSink,
        concurrency: int = 100,
        clock=time.time,
    ):
        self.queue = queue
        self.prefetcher = prefetcher
        self.metrics = metrics
        self.concurrency = concurrency
        self._clock = clock
        self.running = False

    def start(self):
        if self.running:
            return
        self.queue.on("stalled", self.on_stalled)
        self.queue.process(self.concurrency, self.handle)
        self.running = True
        logger.info("Prefetch worker started | concurrency=%d", self.concurrency)

    async def handle(self, job: JobView) -> dict:
        """Run one attempt for `job`. Raising hands the job back to the queue."""
        user_id = job.data.userId
        started_at = self._now_ms()
        self.metrics.increment("prefetch.started")

        try:
            result = await self.prefetcher.fetch_once(user_id, job.priority)
        except OriginPermanentError as e:
            self._record(job, started_at, "failed", error=e)
            raise PermanentJobError(str(e)) from e
        except (OriginError, AuthUnavailable) as e:
            self._record(job, started_at, "failed", error=e)
            raise

        self._record(job, started_at, "ok", tier=result["tier"])
        return result

    def on_stalled(self, job: JobView):
        self.metrics.increment("prefetch.stalled")
        now = self._now_ms()
        self.metrics.record_outcome(JobOutcome(
            jobId=job.id,
            userId=job.data.userId,
            startedAt=job.started_at or now,
            finishedAt=now,
            durationMs=now - (job.started_at or now),
            outcome="stalled",
            attempts=job.attempts,
            errorSummary="heartbeat expired",
        ))

    def _record(self, job: JobView, started_at: int, outcome: str, tier: str | None = None, error=None):
        finished_at = self._now_ms()
        self.metrics.record_outcome(JobOutcome(
            jobId=job.id,
            userId=job.data.userId,
            startedAt=started_at,
            finishedAt=finished_at,
            durationMs=max(finished_at - started_at, 0),
            tier=tier,
            outcome=outcome,
            attempts=job.attempts,
            errorSummary=f"{type(error).__name__}: {str(error)[:200]}" if error else None,
        ))

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)
