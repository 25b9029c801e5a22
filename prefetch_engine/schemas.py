"""Pydantic models shared by the cache, queue, worker and API.

Split into: request bodies, cache values, queue records and metrics records.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

Priority = Literal["high", "medium", "low"]
Tier = Literal["hot", "warm"]
Outcome = Literal["ok", "failed", "stalled"]
JobState = Literal["waiting", "delayed", "active", "completed", "failed"]

PRIORITY_RANK: dict[str, int] = {"high": 1, "medium": 5, "low": 10}
PRIORITIES = tuple(PRIORITY_RANK)
TIERS: tuple[str, ...] = ("hot", "warm")

USER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")
JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,191}$")


def is_valid_user_id(user_id: str) -> bool:
    return bool(USER_ID_PATTERN.match(user_id or ""))


# ═══════════════ API REQUESTS ═══════════════

class ScheduleRequest(BaseModel):
    """Body of POST /api/prefetch/schedule/{userId}."""
    priority: Priority = "medium"
    delay: int = Field(default=0, ge=0, le=86_400_000)
    jobId: str | None = None

    @field_validator("jobId")
    @classmethod
    def _check_job_id(cls, value: str | None) -> str | None:
        if value is not None and not JOB_ID_PATTERN.match(value):
            raise ValueError("jobId must be an opaque identifier")
        return value


class ImmediateRequest(BaseModel):
    """Body of POST /api/prefetch/immediate/{userId}."""
    priority: Priority = "high"


class TriggerRequest(BaseModel):
    """Body of POST /api/prefetch/trigger/{userId}."""
    priority: Priority = "medium"


# ═══════════════ CACHE ═══════════════

class CachedTimeline(BaseModel):
    """A cache hit: the opaque artifact plus the tier it was found in."""
    user_id: str
    artifact: Any = None
    tier: Tier
    fetched_at: int  # epoch ms


class CacheStatus(BaseModel):
    exists: bool
    tier: Tier | None = None
    ttl: int | None = None  # remaining ms


# ═══════════════ QUEUE ═══════════════

class JobData(BaseModel):
    """Payload persisted with every prefetch job."""
    userId: str
    priority: Priority = "medium"


class JobView(BaseModel):
    """Read-only view of a queued job handed to handlers and listeners."""
    id: str
    data: JobData
    priority: Priority
    state: JobState
    attempts: int = 0
    created_at: int
    next_run_at: int
    started_at: int | None = None
    finished_at: int | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None
    lock_token: str | None = None


class FailedJob(BaseModel):
    jobId: str
    userId: str
    priority: Priority
    failedReason: str | None = None
    attempts: int
    timestamp: int | None = None


class QueueStats(BaseModel):
    waiting: int | None = None
    active: int | None = None
    completed: int | None = None
    failed: int | None = None
    delayed: int | None = None
    paused: bool = False
    unavailable: list[str] = Field(default_factory=list)


# ═══════════════ METRICS ═══════════════

class JobOutcome(BaseModel):
    """Immutable record of one finished handler run."""
    model_config = {"frozen": True}

    jobId: str
    userId: str
    startedAt: int
    finishedAt: int
    durationMs: int
    tier: Tier | None = None
    outcome: Outcome
    attempts: int
    errorSummary: str | None = None
