"""SQLAlchemy ORM models."""

from prefetch_engine.models.base import Base
from prefetch_engine.models.prefetch_job import PrefetchJob

__all__ = ["Base", "PrefetchJob"]
