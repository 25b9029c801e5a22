"""HTTP control surface."""

from prefetch_engine.api.handlers import register_exception_handlers
from prefetch_engine.api.health import health_router
from prefetch_engine.api.routes import router

__all__ = ["health_router", "register_exception_handlers", "router"]
