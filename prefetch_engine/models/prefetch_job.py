"""PrefetchJob model — durable record of one queued prefetch."""

from sqlalchemy import JSON, BigInteger, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from prefetch_engine.models.base import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class PrefetchJob(Base):
    """One job in the prefetch queue. Timestamps are epoch milliseconds."""

    __tablename__ = "prefetch_jobs"
    __table_args__ = (
        Index("ix_prefetch_jobs_dispatch", "state", "priority_rank", "seq"),
        Index("ix_prefetch_jobs_finished", "state", "finished_at"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(192), unique=True, nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)
    priority: Mapped[str] = mapped_column(String(10), nullable=False)
    priority_rank: Mapped[int] = mapped_column(Integer, nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, insert_default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    next_run_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    lock_token: Mapped[str | None] = mapped_column(String(36), nullable=True)
    heartbeat_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    started_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    finished_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
