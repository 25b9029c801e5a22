"""Health, readiness and liveness probes. No auth."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from prefetch_engine.api.deps import get_engine

health_router = APIRouter(prefix="/health")


@health_router.get("")
async def health(engine=Depends(get_engine)):
    report = await engine.health()
    status_code = 503 if report["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=report)


@health_router.get("/ready")
async def ready(engine=Depends(get_engine)):
    if await engine.cache.ping():
        return {"status": "ready"}
    return JSONResponse(status_code=503, content={"status": "not_ready", "reason": "cache unreachable"})


@health_router.get("/live")
async def live(engine=Depends(get_engine)):
    return {"status": "alive", "uptimeSeconds": engine.uptime_seconds()}
