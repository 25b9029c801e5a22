"""Durable prefetch job queue."""

from prefetch_engine.queue.job_queue import JobQueue

__all__ = ["JobQueue"]
