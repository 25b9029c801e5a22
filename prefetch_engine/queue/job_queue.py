"""Durable prioritized job queue backed by SQLAlchemy.

Every transition (enqueue, claim, complete, fail, stall, retry) is committed
before it is acknowledged, so queue state survives a restart. Claims are
compare-and-set updates guarded by a per-claim lock token, which lets several
processes consume one table and keeps a late completion from a stalled
worker from overwriting the job's newer state.

Job lifecycle:
  waiting → active → completed | failed
  delayed → waiting            (when next_run_at passes)
  active  → delayed            (handler raised, attempts left, backoff)
  active  → waiting            (stalled: heartbeat older than the watchdog)
  failed  → waiting            (manual retry, attempts reset)
"""

import asyncio
import inspect
import logging
import time
import uuid
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from prefetch_engine.errors import NotFound, PermanentJobError, UpstreamUnavailable, ValidationError
from prefetch_engine.models import PrefetchJob
from prefetch_engine.schemas import (
    PRIORITY_RANK,
    FailedJob,
    JobData,
    JobView,
    QueueStats,
)

logger = logging.getLogger(__name__)

Handler = Callable[[JobView], Awaitable[Any]]

STATES = ("waiting", "active", "completed", "failed", "delayed")
EVENTS = ("completed", "failed", "stalled", "error")
BACKEND_ERRORS = (SQLAlchemyError, OSError, asyncio.TimeoutError)
_NO_SYNC = {"synchronize_session": False}


class JobQueue:
    """Prefetch job queue with retry, backoff, stall detection and retention."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        retry_attempts: int = 3,
        backoff_base_ms: int = 2000,
        retention_completed: int = 100,
        retention_failed: int = 50,
        stall_interval_ms: int = 30_000,
        poll_interval_ms: int = 500,
        op_timeout_ms: int = 5000,
        clock=time.time,
    ):
        self.retry_attempts = max(retry_attempts, 1)
        self.backoff_base_ms = backoff_base_ms
        self.retention_completed = retention_completed
        self.retention_failed = retention_failed
        self.stall_interval_ms = stall_interval_ms
        self.poll_interval = poll_interval_ms / 1000
        self.op_timeout = op_timeout_ms / 1000
        self._sessions = session_factory
        self._clock = clock

        self._listeners: dict[str, list[Callable]] = {e: [] for e in EVENTS}
        self._handler: Handler | None = None
        self.concurrency = 0
        self._slots = asyncio.Semaphore(1)
        self._dispatcher: asyncio.Task | None = None
        self._stall_task: asyncio.Task | None = None
        self._active: dict[str, tuple[JobView, asyncio.Task]] = {}
        self._wakeup = asyncio.Condition()
        self._running = asyncio.Event()
        self._running.set()
        self._closing = False

    # ═══════════════ EVENTS ═══════════════

    def on(self, event: str, listener: Callable) -> None:
        """Register a listener for completed / failed / stalled / error."""
        if event not in self._listeners:
            raise ValueError(f"unknown queue event: {event}")
        self._listeners[event].append(listener)

    async def _emit(self, event: str, *args) -> None:
        for listener in self._listeners[event]:
            try:
                result = listener(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning("Queue listener error | event=%s | %s", event, str(e)[:200])

    # ═══════════════ PRODUCER ═══════════════

    async def add(
        self,
        data: dict,
        priority: str = "medium",
        delay_ms: int = 0,
        job_id: str | None = None,
    ) -> str:
        """Enqueue one job. An existing job_id collapses into the stored job."""
        job_id, _ = await self.add_job(data, priority, delay_ms, job_id)
        return job_id

    async def add_job(
        self,
        data: dict,
        priority: str = "medium",
        delay_ms: int = 0,
        job_id: str | None = None,
    ) -> tuple[str, bool]:
        """Like add(), also saying whether a new job was stored."""
        ids, created = await self._insert([
            {"data": data, "priority": priority, "delay": delay_ms, "jobId": job_id},
        ])
        return ids[0], bool(created)

    async def add_bulk(self, jobs: list[dict]) -> list[str]:
        """Enqueue many jobs in one transaction. Returns ids in input order."""
        ids, _ = await self._insert(jobs)
        return ids

    async def _insert(self, jobs: list[dict]) -> tuple[list[str], set[str]]:
        rows = [self._new_row(spec) for spec in jobs]
        if not rows:
            return [], set()

        async def op() -> tuple[list[str], set[str]]:
            async with self._sessions() as session:
                wanted = [r.job_id for r in rows]
                existing = set(
                    await session.scalars(
                        select(PrefetchJob.job_id).where(PrefetchJob.job_id.in_(wanted))
                    )
                )
                seen: set[str] = set()
                for row in rows:
                    if row.job_id in existing or row.job_id in seen:
                        logger.debug("Queue add collapsed | job=%s", row.job_id)
                        continue
                    seen.add(row.job_id)
                    session.add(row)
                try:
                    await session.commit()
                except IntegrityError:
                    # A concurrent producer inserted one of the ids; fall back to one-by-one.
                    await session.rollback()
                    seen = await self._insert_individually(session, [r for r in rows if r.job_id in seen])
                return wanted, seen

        ids, created = await self._backend("add", op)
        logger.info("Queue add | jobs=%d | new=%d", len(ids), len(created))
        await self._notify(len(created))
        return ids, created

    async def _insert_individually(self, session: AsyncSession, rows: list[PrefetchJob]) -> set[str]:
        created: set[str] = set()
        for row in rows:
            session.add(self._clone_row(row))
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
            else:
                created.add(row.job_id)
        return created

    def _new_row(self, spec: dict) -> PrefetchJob:
        data = JobData(**spec["data"])
        priority = spec.get("priority") or data.priority
        if priority not in PRIORITY_RANK:
            raise ValidationError(f"unknown priority: {priority}")
        delay = int(spec.get("delay") or 0)
        if delay < 0:
            raise ValidationError("delay must be >= 0")
        now = self._now_ms()
        return PrefetchJob(
            job_id=spec.get("jobId") or uuid.uuid4().hex,
            payload={"userId": data.userId, "priority": priority},
            priority=priority,
            priority_rank=PRIORITY_RANK[priority],
            state="delayed" if delay > 0 else "waiting",
            attempts=0,
            max_attempts=self.retry_attempts,
            next_run_at=now + delay,
            created_at=now,
        )

    @staticmethod
    def _clone_row(row: PrefetchJob) -> PrefetchJob:
        return PrefetchJob(
            job_id=row.job_id, payload=row.payload,
            priority=row.priority, priority_rank=row.priority_rank, state=row.state,
            attempts=0, max_attempts=row.max_attempts, next_run_at=row.next_run_at,
            created_at=row.created_at,
        )

    # ═══════════════ CONSUMER ═══════════════

    def process(self, concurrency: int, handler: Handler) -> None:
        """Register the job handler and start the dispatcher.

        One dispatcher claims jobs while fewer than `concurrency` handlers are
        running. Each claimed job runs in its own task.
        """
        if self._handler is not None:
            raise RuntimeError("queue handler already registered")
        self._handler = handler
        self._closing = False
        self.concurrency = max(concurrency, 1)
        self._slots = asyncio.Semaphore(self.concurrency)
        self._dispatcher = asyncio.create_task(self._dispatch_loop(), name="prefetch-dispatch")
        self._stall_task = asyncio.create_task(self._stall_loop(), name="prefetch-stall-check")
        logger.info("Queue processing | concurrency=%d", self.concurrency)

    async def pause(self) -> None:
        """Stop claiming new jobs in this process; in-flight jobs finish."""
        self._running.clear()
        logger.info("Queue paused")

    async def resume(self) -> None:
        self._running.set()
        await self._notify(1)
        logger.info("Queue resumed")

    @property
    def is_paused(self) -> bool:
        return not self._running.is_set()

    @property
    def in_flight(self) -> int:
        return len(self._active)

    async def close(self, timeout_ms: int = 10_000) -> None:
        """Stop dispatching, wait for in-flight handlers, then cancel and release."""
        self._closing = True
        self._running.set()
        await self._notify(1)

        if self._stall_task:
            self._stall_task.cancel()
        if self._dispatcher:
            await asyncio.gather(self._dispatcher, return_exceptions=True)

        runs = dict(self._active)
        if runs:
            _, pending = await asyncio.wait([task for _, task in runs.values()], timeout=timeout_ms / 1000)
            abandoned = [job for job, task in runs.values() if task in pending]
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for job in abandoned:
                await self._release(job)
        if self._stall_task:
            await asyncio.gather(self._stall_task, return_exceptions=True)

        self._dispatcher = None
        self._stall_task = None
        self._handler = None
        logger.info("Queue closed")

    async def _dispatch_loop(self) -> None:
        promote_due = 0.0
        while not self._closing:
            await self._running.wait()
            if self._closing:
                break
            if self._slots.locked():
                # Every slot is busy; a finishing run wakes us.
                await self._sleep()
                continue
            try:
                if time.monotonic() >= promote_due:
                    await self._with_timeout(self._promote_delayed())
                    promote_due = time.monotonic() + self.poll_interval
                job = await self._with_timeout(self._claim_next())
            except BACKEND_ERRORS as e:
                logger.warning("Queue claim error | %s", str(e)[:200])
                await self._emit("error", e)
                await self._sleep()
                continue
            if job is None:
                await self._sleep()
                continue
            await self._slots.acquire()
            task = asyncio.create_task(self._run_job(job), name=f"prefetch-job-{job.id}")
            self._active[job.lock_token] = (job, task)

    async def _run_job(self, job: JobView) -> None:
        heartbeat = asyncio.create_task(self._heartbeat_loop(job))
        try:
            result = await self._handler(job)
        except Exception as e:
            await self._guarded(self._fail(job, e))
        else:
            await self._guarded(self._complete(job, result))
        finally:
            heartbeat.cancel()
            self._active.pop(job.lock_token, None)
            self._slots.release()
            await self._notify(1)

    async def _sleep(self) -> None:
        async with self._wakeup:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

    async def _notify(self, n: int) -> None:
        if n <= 0:
            return
        async with self._wakeup:
            self._wakeup.notify(n)

    # ═══════════════ TRANSITIONS ═══════════════

    async def _promote_delayed(self) -> int:
        """Move delayed jobs whose time has come to waiting."""
        async with self._sessions() as session:
            promoted = await session.execute(
                update(PrefetchJob)
                .where(PrefetchJob.state == "delayed", PrefetchJob.next_run_at <= self._now_ms())
                .values(state="waiting"),
                execution_options=_NO_SYNC,
            )
            await session.commit()
        return promoted.rowcount

    async def _claim_next(self) -> JobView | None:
        """Move the best eligible waiting job to active. None if nothing is ready."""
        now = self._now_ms()
        candidate = (
            select(PrefetchJob.seq)
            .where(PrefetchJob.state == "waiting", PrefetchJob.next_run_at <= now)
            .order_by(PrefetchJob.priority_rank, PrefetchJob.seq)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        async with self._sessions() as session:
            claimed = await session.execute(
                update(PrefetchJob)
                .where(PrefetchJob.seq == candidate, PrefetchJob.state == "waiting")
                .values(
                    state="active",
                    attempts=PrefetchJob.attempts + 1,
                    lock_token=str(uuid.uuid4()),
                    started_at=now,
                    heartbeat_at=now,
                )
                .returning(PrefetchJob),
                execution_options=_NO_SYNC,
            )
            row = claimed.scalars().first()
            await session.commit()
        # None also covers losing the race to another consumer; the next poll retries.
        return _view(row) if row else None

    async def _complete(self, job: JobView, result: Any) -> None:
        now = self._now_ms()
        stored = result if isinstance(result, dict) else ({"value": result} if result is not None else None)
        async with self._sessions() as session:
            done = await session.execute(
                update(PrefetchJob)
                .where(
                    PrefetchJob.job_id == job.id,
                    PrefetchJob.state == "active",
                    PrefetchJob.lock_token == job.lock_token,
                )
                .values(
                    state="completed", finished_at=now, result=stored,
                    lock_token=None, last_error=None,
                ),
                execution_options=_NO_SYNC,
            )
            if done.rowcount != 1:
                await session.rollback()
                logger.warning("Queue complete ignored (lock lost) | job=%s", job.id)
                return
            await self._prune(session, "completed", self.retention_completed)
            await session.commit()

        finished = job.model_copy(update={"state": "completed", "finished_at": now, "result": stored})
        logger.debug("Queue job completed | job=%s | attempts=%d", job.id, job.attempts)
        await self._emit("completed", finished, result)

    async def _fail(self, job: JobView, error: Exception) -> None:
        now = self._now_ms()
        reason = f"{type(error).__name__}: {str(error)[:500]}"
        terminal = isinstance(error, PermanentJobError) or job.attempts >= self.retry_attempts
        if terminal:
            values = {"state": "failed", "finished_at": now}
        else:
            backoff = self.backoff_base_ms * (2 ** (job.attempts - 1))
            values = {"state": "delayed", "next_run_at": now + backoff}

        async with self._sessions() as session:
            moved = await session.execute(
                update(PrefetchJob)
                .where(
                    PrefetchJob.job_id == job.id,
                    PrefetchJob.state == "active",
                    PrefetchJob.lock_token == job.lock_token,
                )
                .values(last_error=reason, lock_token=None, **values),
                execution_options=_NO_SYNC,
            )
            if moved.rowcount != 1:
                await session.rollback()
                logger.warning("Queue fail ignored (lock lost) | job=%s", job.id)
                return
            if terminal:
                await self._prune(session, "failed", self.retention_failed)
            await session.commit()

        logger.warning(
            "Queue job %s | job=%s | attempt=%d/%d | %s",
            "failed" if terminal else "retrying", job.id, job.attempts,
            self.retry_attempts, reason[:200],
        )
        failed = job.model_copy(update={"last_error": reason, **values})
        await self._emit("failed", failed, error)

    async def _release(self, job: JobView) -> None:
        """Put a job abandoned at shutdown back to waiting."""
        try:
            async with self._sessions() as session:
                await session.execute(
                    update(PrefetchJob)
                    .where(PrefetchJob.job_id == job.id, PrefetchJob.lock_token == job.lock_token)
                    .values(state="waiting", lock_token=None, next_run_at=self._now_ms()),
                    execution_options=_NO_SYNC,
                )
                await session.commit()
            logger.info("Queue job released at shutdown | job=%s", job.id)
        except BACKEND_ERRORS as e:
            logger.warning("Queue release failed | job=%s | %s", job.id, str(e)[:200])

    async def _heartbeat_loop(self, job: JobView) -> None:
        interval = max(self.stall_interval_ms / 3000, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                async with self._sessions() as session:
                    await session.execute(
                        update(PrefetchJob)
                        .where(PrefetchJob.job_id == job.id, PrefetchJob.lock_token == job.lock_token)
                        .values(heartbeat_at=self._now_ms()),
                        execution_options=_NO_SYNC,
                    )
                    await session.commit()
            except BACKEND_ERRORS as e:
                logger.debug("Queue heartbeat error | job=%s | %s", job.id, str(e)[:100])

    async def _stall_loop(self) -> None:
        interval = max(self.stall_interval_ms / 2000, 0.05)
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_stalled()
            except BACKEND_ERRORS as e:
                logger.warning("Queue stall check error | %s", str(e)[:200])
                await self._emit("error", e)

    async def check_stalled(self) -> list[JobView]:
        """Return active jobs with an expired heartbeat to waiting (or failed)."""
        now = self._now_ms()
        cutoff = now - self.stall_interval_ms
        stalled: list[JobView] = []
        hung: list[asyncio.Task] = []
        async with self._sessions() as session:
            rows = (await session.scalars(
                select(PrefetchJob).where(
                    PrefetchJob.state == "active",
                    PrefetchJob.heartbeat_at < cutoff,
                )
            )).all()
            for row in rows:
                exhausted = row.attempts >= row.max_attempts
                values = (
                    {"state": "failed", "finished_at": now,
                     "last_error": "job stalled more than allowable limit"}
                    if exhausted
                    else {"state": "waiting", "next_run_at": now}
                )
                moved = await session.execute(
                    update(PrefetchJob)
                    .where(PrefetchJob.seq == row.seq, PrefetchJob.lock_token == row.lock_token)
                    .values(lock_token=None, **values),
                    execution_options=_NO_SYNC,
                )
                if moved.rowcount == 1:
                    stalled.append(_view(row, lock_token=None, **values))
                    run = self._active.get(row.lock_token)
                    if run is not None:
                        hung.append(run[1])
            if any(j.state == "failed" for j in stalled):
                await self._prune(session, "failed", self.retention_failed)
            await session.commit()

        # These runs no longer own their job.
        for task in hung:
            task.cancel()
        if hung:
            logger.warning("Queue cancelled %d stalled local run(s)", len(hung))

        for job in stalled:
            logger.warning("Queue job stalled | job=%s | attempts=%d | now=%s", job.id, job.attempts, job.state)
            await self._emit("stalled", job)
        if stalled:
            await self._notify(len(stalled))
        return stalled

    async def _prune(self, session: AsyncSession, state: str, keep: int) -> None:
        """Keep only the newest `keep` finished records in `state`."""
        overflow = (
            select(PrefetchJob.seq)
            .where(PrefetchJob.state == state)
            .order_by(PrefetchJob.finished_at.desc(), PrefetchJob.seq.desc())
            .offset(keep)
        )
        await session.execute(
            delete(PrefetchJob).where(PrefetchJob.seq.in_(overflow)),
            execution_options=_NO_SYNC,
        )

    # ═══════════════ INTROSPECTION ═══════════════

    async def stats(self) -> QueueStats:
        """Counts per state. Backend failure yields a flagged partial snapshot."""
        async def op() -> dict[str, int]:
            async with self._sessions() as session:
                rows = await session.execute(
                    select(PrefetchJob.state, func.count()).group_by(PrefetchJob.state)
                )
                return {state: count for state, count in rows.all()}

        try:
            counts = await self._backend("stats", op)
        except UpstreamUnavailable:
            return QueueStats(paused=self.is_paused, unavailable=list(STATES))
        return QueueStats(paused=self.is_paused, **{s: counts.get(s, 0) for s in STATES})

    async def failed(self, limit: int = 10) -> list[FailedJob]:
        async def op() -> list[PrefetchJob]:
            async with self._sessions() as session:
                return (await session.scalars(
                    select(PrefetchJob)
                    .where(PrefetchJob.state == "failed")
                    .order_by(PrefetchJob.finished_at.desc(), PrefetchJob.seq.desc())
                    .limit(limit)
                )).all()

        rows = await self._backend("failed", op)
        return [
            FailedJob(
                jobId=row.job_id,
                userId=row.payload.get("userId", ""),
                priority=row.priority,
                failedReason=row.last_error,
                attempts=row.attempts,
                timestamp=row.finished_at,
            )
            for row in rows
        ]

    async def get_job(self, job_id: str) -> JobView | None:
        async def op() -> PrefetchJob | None:
            async with self._sessions() as session:
                return await session.scalar(select(PrefetchJob).where(PrefetchJob.job_id == job_id))

        row = await self._backend("get", op)
        return _view(row) if row else None

    async def retry(self, job_id: str) -> JobView:
        """Move a failed job back to waiting with its attempt counter reset."""
        now = self._now_ms()

        async def op() -> PrefetchJob | None:
            async with self._sessions() as session:
                moved = await session.execute(
                    update(PrefetchJob)
                    .where(PrefetchJob.job_id == job_id, PrefetchJob.state == "failed")
                    .values(
                        state="waiting", attempts=0, next_run_at=now,
                        last_error=None, finished_at=None, result=None,
                    ),
                    execution_options=_NO_SYNC,
                )
                await session.commit()
                if moved.rowcount != 1:
                    return None
                return await session.scalar(select(PrefetchJob).where(PrefetchJob.job_id == job_id))

        row = await self._backend("retry", op)
        if row is None:
            raise NotFound(f"No failed job with id {job_id}")
        logger.info("Queue retry | job=%s", job_id)
        await self._notify(1)
        return _view(row)

    async def clean(self, grace_ms: int, state: str = "completed") -> int:
        """Delete jobs in `state` older than `grace_ms`. Returns the count removed."""
        if state not in STATES or state == "active":
            raise ValidationError(f"cannot clean state: {state}")
        cutoff = self._now_ms() - grace_ms

        async def op() -> int:
            async with self._sessions() as session:
                stamp = func.coalesce(PrefetchJob.finished_at, PrefetchJob.created_at)
                removed = await session.execute(
                    delete(PrefetchJob).where(PrefetchJob.state == state, stamp < cutoff),
                    execution_options=_NO_SYNC,
                )
                await session.commit()
                return removed.rowcount

        removed = await self._backend("clean", op)
        logger.info("Queue clean | state=%s | removed=%d", state, removed)
        return removed

    # ═══════════════ HELPERS ═══════════════

    async def _backend(self, op_name: str, op: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await self._with_timeout(op())
        except BACKEND_ERRORS as e:
            logger.warning("Queue backend error | op=%s | %s", op_name, str(e)[:200])
            await self._emit("error", e)
            raise UpstreamUnavailable("Queue backend unavailable", code="QUEUE_UNAVAILABLE")

    async def _with_timeout(self, coro):
        return await asyncio.wait_for(coro, timeout=self.op_timeout)

    async def _guarded(self, coro) -> None:
        try:
            await self._with_timeout(coro)
        except BACKEND_ERRORS as e:
            # The job stays active; the stall check returns it to waiting.
            logger.warning("Queue transition error | %s", str(e)[:200])
            await self._emit("error", e)

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)


def _view(row: PrefetchJob, **overrides) -> JobView:
    fields = {
        "id": row.job_id,
        "data": JobData(**row.payload),
        "priority": row.priority,
        "state": row.state,
        "attempts": row.attempts,
        "created_at": row.created_at,
        "next_run_at": row.next_run_at,
        "started_at": row.started_at,
        "finished_at": row.finished_at,
        "last_error": row.last_error,
        "result": row.result,
        "lock_token": row.lock_token,
    }
    fields.update(overrides)
    return JobView(**fields)
