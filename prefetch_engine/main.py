"""Timeline Prefetch Engine — FastAPI application entry point.

`app` serves the control API and, unless disabled, runs the worker pool and
scheduler in-process. `run_worker()` starts a headless consumer that only
drains the shared queue.
"""

import asyncio
import logging
import signal
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from prefetch_engine.api import health_router, register_exception_handlers, router
from prefetch_engine.api.rate_limit import client_ip
from prefetch_engine.config import Settings, settings
from prefetch_engine.engine import PrefetchEngine
from prefetch_engine.errors import RateLimited

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)
logger = logging.getLogger("prefetch_engine")


# ═══════════════ APP ═══════════════

def create_app(engine: PrefetchEngine | None = None, app_settings: Settings | None = None) -> FastAPI:
    """Build the FastAPI app around an engine (a fresh one from settings by default)."""
    if engine is None:
        engine = PrefetchEngine(app_settings or settings)
    app_settings = engine.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Timeline prefetch starting | port=%d", app_settings.port)
        await engine.start()
        yield
        await engine.stop()
        logger.info("Timeline prefetch shutting down")

    app = FastAPI(
        title="Timeline Prefetch API",
        description="Background prefetching of user timelines into a tiered cache",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def global_rate_limit(request: Request, call_next):
        if request.url.path.startswith("/api/") and engine.rate_limiters["global"].is_limited(client_ip(request)):
            return JSONResponse(status_code=429, content=RateLimited("Too many requests, retry in a minute").to_dict())
        return await call_next(request)

    register_exception_handlers(app)
    app.include_router(router)
    app.include_router(health_router)
    return app


app = create_app()


# ═══════════════ ENTRY POINTS ═══════════════

def run():
    """Console script: serve the API with uvicorn."""
    uvicorn.run(
        "prefetch_engine.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


async def _serve_worker(engine: PrefetchEngine):
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop.set)

    await engine.start(worker=True, scheduler=False)
    logger.info("Headless worker running | concurrency=%d", engine.settings.worker_concurrency)
    await stop.wait()
    logger.info("Headless worker received shutdown signal")
    await engine.stop()


def run_worker():
    """Console script: consume the shared queue without serving HTTP."""
    asyncio.run(_serve_worker(PrefetchEngine(settings)))
