"""Tests for database models and schema."""

import pytest
from sqlalchemy import inspect

from prefetch_engine.database import create_engine, init_db
from prefetch_engine.models import PrefetchJob


class TestPrefetchJobModel:
    def test_create_instance(self):
        record = PrefetchJob(
            job_id="job-1",
            payload={"userId": "u1", "priority": "high"},
            priority="high",
            priority_rank=1,
            state="waiting",
            max_attempts=3,
            next_run_at=0,
            created_at=0,
        )
        assert record.job_id == "job-1"
        assert record.payload["userId"] == "u1"
        assert record.priority_rank == 1
        assert record.finished_at is None

    def test_table_name(self):
        assert PrefetchJob.__tablename__ == "prefetch_jobs"

    def test_columns(self):
        assert set(PrefetchJob.__table__.columns.keys()) == {
            "seq", "job_id", "payload", "priority", "priority_rank", "state", "attempts",
            "max_attempts", "next_run_at", "last_error", "result", "lock_token",
            "heartbeat_at", "started_at", "created_at", "finished_at",
        }


class TestSchemaCreation:
    @pytest.mark.asyncio
    async def test_init_db_creates_tables(self, tmp_path):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'schema.db'}")
        try:
            assert await init_db(engine) is True
            async with engine.connect() as conn:
                tables = await conn.run_sync(lambda sync: inspect(sync).get_table_names())
                indexes = await conn.run_sync(
                    lambda sync: {i["name"] for i in inspect(sync).get_indexes("prefetch_jobs")}
                )
            assert "prefetch_jobs" in tables
            assert "ix_prefetch_jobs_dispatch" in indexes
        finally:
            await engine.dispose()

    @pytest.mark.asyncio
    async def test_init_db_unreachable(self, tmp_path):
        engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'nested.db'}")
        try:
            assert await init_db(engine) is False
        finally:
            await engine.dispose()
