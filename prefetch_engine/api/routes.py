"""Control API routes: scheduling, cache reads, queue admin, metrics."""

import logging
from datetime import date, datetime, timezone

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from prefetch_engine.api.deps import check_user_id, get_engine, rate_limit, require_permissions
from prefetch_engine.errors import InternalError, NotFound, UpstreamUnavailable, ValidationError
from prefetch_engine.schemas import ImmediateRequest, ScheduleRequest, TriggerRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")

READ = [Depends(rate_limit("read")), Depends(require_permissions("read"))]
WRITE = [Depends(rate_limit("enqueue")), Depends(require_permissions("write"))]
DELETE = [Depends(rate_limit("enqueue")), Depends(require_permissions("delete"))]


def ok(data=None, status_code: int = 200, message: str | None = None) -> JSONResponse:
    content = {"success": True}
    if data is not None:
        content["data"] = data
    if message:
        content["message"] = message
    return JSONResponse(status_code=status_code, content=content)


# ═══════════════ PREFETCH ═══════════════

@router.post("/prefetch/schedule/{user_id}", dependencies=WRITE)
async def schedule_prefetch(user_id: str, body: ScheduleRequest | None = None, engine=Depends(get_engine)):
    """Enqueue a prefetch job. Returns as soon as the job is durable."""
    check_user_id(user_id)
    body = body or ScheduleRequest()
    job_id = await engine.schedule(user_id, body.priority, body.delay, body.jobId)
    return ok(
        {"jobId": job_id, "userId": user_id, "priority": body.priority, "delay": body.delay},
        status_code=202,
        message="Prefetch scheduled",
    )


@router.post("/prefetch/immediate/{user_id}", dependencies=WRITE)
async def immediate_prefetch(user_id: str, body: ImmediateRequest | None = None, engine=Depends(get_engine)):
    """Fetch and cache inline, bypassing the queue."""
    check_user_id(user_id)
    body = body or ImmediateRequest()
    try:
        result = await engine.prefetcher.fetch_now(user_id, body.priority)
    except (UpstreamUnavailable, InternalError) as e:
        logger.warning("Immediate prefetch failed | user=%s | %s", user_id, e.message[:200])
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "PREFETCH_FAILED", "kind": e.kind, "message": e.message},
        )
    result.pop("stored", None)
    return ok(result, message="Prefetch completed")


@router.post("/prefetch/trigger/{user_id}", dependencies=WRITE)
async def trigger_prefetch(user_id: str, body: TriggerRequest | None = None, engine=Depends(get_engine)):
    """Queue a refresh for the next scheduler tick."""
    check_user_id(user_id)
    body = body or TriggerRequest()
    engine.trigger(user_id, body.priority)
    return ok({"userId": user_id, "priority": body.priority}, status_code=202, message="Prefetch triggered")


# ═══════════════ CACHE ═══════════════

@router.get("/cache/status/{user_id}", dependencies=READ)
async def cache_status(user_id: str, engine=Depends(get_engine)):
    check_user_id(user_id)
    status = await engine.cache.status(user_id)
    return ok(status.model_dump(exclude_none=True))


@router.get("/cache/{user_id}", dependencies=READ)
async def get_cached_timeline(user_id: str, engine=Depends(get_engine)):
    check_user_id(user_id)
    engine.track_activity(user_id)
    cached = await engine.cache.get(user_id)
    if cached is None:
        raise NotFound(f"No cached timeline for {user_id}")
    return ok({
        "userId": user_id,
        "timeline": cached.artifact,
        "cached": True,
        "tier": cached.tier,
        "fetchedAt": cached.fetched_at,
    })


@router.delete("/cache/{user_id}/timeline", dependencies=DELETE)
async def invalidate_timeline(user_id: str, engine=Depends(get_engine)):
    check_user_id(user_id)
    engine.track_activity(user_id)
    await engine.cache.delete(user_id)
    return ok({"userId": user_id}, message="Timeline cache invalidated")


# ═══════════════ QUEUE ═══════════════

@router.get("/prefetch/queue/stats", dependencies=READ)
async def queue_stats(engine=Depends(get_engine)):
    stats = await engine.queue.stats()
    return ok(stats.model_dump())


@router.get("/prefetch/queue/failed", dependencies=READ)
async def failed_jobs(limit: int = Query(10, ge=1, le=100), engine=Depends(get_engine)):
    jobs = await engine.queue.failed(limit)
    return ok({"jobs": [j.model_dump() for j in jobs], "count": len(jobs)})


@router.post("/prefetch/queue/retry/{job_id}", dependencies=WRITE)
async def retry_job(job_id: str, engine=Depends(get_engine)):
    job = await engine.queue.retry(job_id)
    return ok({"jobId": job.id}, message="Job re-queued")


# ═══════════════ METRICS ═══════════════

@router.get("/prefetch/metrics", dependencies=READ)
async def metrics_summary(engine=Depends(get_engine)):
    data = engine.metrics.summary()
    data["timestamp"] = datetime.now(timezone.utc).isoformat()
    return ok(data)


@router.get("/prefetch/metrics/{day}", dependencies=READ)
async def metrics_for_day(day: str, engine=Depends(get_engine)):
    try:
        parsed = date.fromisoformat(day)
    except ValueError:
        raise ValidationError("date must be YYYY-MM-DD")
    return ok(engine.metrics.day_summary(parsed))
