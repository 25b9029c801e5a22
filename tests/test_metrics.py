"""Tests for the metrics sink."""

from datetime import date

import pytest

from prefetch_engine.schemas import JobOutcome
from prefetch_engine.services.metrics import MetricsSink


def _outcome(job_id: str, outcome: str = "ok") -> JobOutcome:
    return JobOutcome(
        jobId=job_id,
        userId="u1",
        startedAt=1,
        finishedAt=2,
        durationMs=1,
        tier="hot" if outcome == "ok" else None,
        outcome=outcome,
        attempts=1,
    )


class TestCounters:
    def test_increment_and_count(self, metrics):
        metrics.increment("prefetch.scheduled")
        metrics.increment("prefetch.scheduled", 4)
        assert metrics.count("prefetch.scheduled") == 5
        assert metrics.count("prefetch.failed") == 0

    def test_counters_bucket_per_day(self, metrics, clock):
        metrics.increment("prefetch.succeeded")
        yesterday = metrics.available_days()[0]
        clock.advance(86_400)
        metrics.increment("prefetch.succeeded", 2)

        assert metrics.count("prefetch.succeeded") == 2
        assert metrics.day_summary(date.fromisoformat(yesterday))["prefetch"]["succeeded"] == 1
        assert len(metrics.available_days()) == 2

    def test_retention_prunes_old_days(self, clock):
        sink = MetricsSink(clock=clock, retention_days=7)
        for _ in range(10):
            sink.increment("prefetch.scheduled")
            clock.advance(86_400)
        assert len(sink.available_days()) == 7

    def test_unknown_day_is_zeroed(self, metrics):
        summary = metrics.day_summary(date(2001, 1, 1))
        assert summary["date"] == "2001-01-01"
        assert summary["prefetch"]["scheduled"] == 0
        assert summary["cache"]["hot"]["hitRate"] == 0.0


class TestCacheRates:
    def test_hit_rates(self, metrics):
        metrics.record_cache_lookup("hot")
        metrics.record_cache_lookup("warm")
        metrics.record_cache_lookup(None)
        metrics.record_cache_lookup("hot")

        cache = metrics.summary()["cache"]
        assert cache["hot"] == {"hits": 2, "misses": 2, "hitRate": 50.0}
        assert cache["warm"]["hits"] == 1
        assert cache["warm"]["misses"] == 1

    def test_fill_rate(self, metrics):
        metrics.record_tier_write("hot")
        metrics.record_tier_write("hot")
        metrics.record_tier_write("hot")
        metrics.record_tier_write("warm")

        cache = metrics.summary()["cache"]
        assert cache["fillRate"] == {"hot": 75.0, "warm": 25.0}
        assert cache["writes"] == {"hot": 3, "warm": 1}


class TestLatency:
    def test_percentiles(self, metrics):
        for ms in range(1, 101):
            metrics.record_latency(ms)
        assert metrics.percentile(50) == 51
        assert metrics.percentile(99) == 100
        latency = metrics.summary()["latency"]
        assert latency["count"] == 100
        assert latency["avg"] == pytest.approx(50.5)
        assert latency["window"] == 100

    def test_histogram_buckets(self, metrics):
        metrics.record_latency(10)
        metrics.record_latency(700)
        metrics.record_latency(20_000)
        histogram = metrics.summary()["latency"]["histogram"]
        assert histogram["le_50"] == 1
        assert histogram["le_1000"] == 1
        assert histogram["gt_10000"] == 1

    def test_empty_latency(self, metrics):
        assert metrics.percentile(95) is None
        assert metrics.summary()["latency"]["p95"] is None


class TestOutcomes:
    def test_recent_outcomes_bounded(self, clock):
        sink = MetricsSink(clock=clock, completed_outcomes=2, failed_outcomes=1)
        for i in range(3):
            sink.record_outcome(_outcome(f"ok-{i}"))
        sink.record_outcome(_outcome("bad-1", "failed"))
        sink.record_outcome(_outcome("bad-2", "stalled"))

        recent = sink.recent_outcomes()
        assert [o["jobId"] for o in recent["completed"]] == ["ok-1", "ok-2"]
        assert [o["jobId"] for o in recent["failed"]] == ["bad-2"]

    def test_outcome_is_immutable(self):
        outcome = _outcome("j1")
        with pytest.raises(Exception):
            outcome.attempts = 5
