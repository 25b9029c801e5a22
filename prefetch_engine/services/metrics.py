"""Metrics sink — in-process counters and rolling statistics.

Counters are bucketed by UTC day so the API can report today and an
addressable prior day. Latency keeps a fixed-bucket histogram per day plus a
sliding window for percentiles. Nothing survives a restart.
"""

import logging
import statistics
import time
from collections import Counter, deque
from datetime import date, datetime, timezone

from prefetch_engine.schemas import TIERS, JobOutcome

logger = logging.getLogger(__name__)

COUNTERS = (
    "hot.hits",
    "hot.misses",
    "warm.hits",
    "warm.misses",
    "prefetch.scheduled",
    "prefetch.started",
    "prefetch.succeeded",
    "prefetch.failed",
    "prefetch.stalled",
)

LATENCY_BUCKETS_MS = (50, 100, 250, 500, 1000, 2500, 5000, 10000)


class _DayBucket:
    def __init__(self):
        self.counters: Counter[str] = Counter()
        self.histogram = [0] * (len(LATENCY_BUCKETS_MS) + 1)
        self.latency_total_ms = 0.0


class MetricsSink:
    """Counters, latency histogram and tier fill rate, bucketed per day."""

    def __init__(
        self,
        clock=time.time,
        window_size: int = 1000,
        retention_days: int = 7,
        completed_outcomes: int = 100,
        failed_outcomes: int = 50,
    ):
        self._clock = clock
        self._retention_days = max(retention_days, 1)
        self._days: dict[str, _DayBucket] = {}
        self._latencies: deque[float] = deque(maxlen=window_size)
        self._completed: deque[JobOutcome] = deque(maxlen=completed_outcomes)
        self._failed: deque[JobOutcome] = deque(maxlen=failed_outcomes)
        self.started_at = clock()

    # ─── recording ───

    def increment(self, name: str, amount: int = 1) -> None:
        self._today().counters[name] += amount

    def record_cache_lookup(self, tier: str | None) -> None:
        """Count a tiered lookup: hot is checked first, warm second."""
        if tier == "hot":
            self.increment("hot.hits")
            return
        self.increment("hot.misses")
        if tier == "warm":
            self.increment("warm.hits")
        else:
            self.increment("warm.misses")

    def record_tier_write(self, tier: str) -> None:
        self.increment(f"cache.writes.{tier}")

    def record_latency(self, latency_ms: float) -> None:
        bucket = self._today()
        self._latencies.append(latency_ms)
        bucket.latency_total_ms += latency_ms
        for i, bound in enumerate(LATENCY_BUCKETS_MS):
            if latency_ms <= bound:
                bucket.histogram[i] += 1
                break
        else:
            bucket.histogram[-1] += 1

    def record_outcome(self, outcome: JobOutcome) -> None:
        if outcome.outcome == "ok":
            self._completed.append(outcome)
        else:
            self._failed.append(outcome)

    # ─── reading ───

    def count(self, name: str, day: date | None = None) -> int:
        key = (day or self._now_date()).isoformat()
        bucket = self._days.get(key)
        return bucket.counters[name] if bucket else 0

    def percentile(self, pct: float) -> float | None:
        if not self._latencies:
            return None
        values = sorted(self._latencies)
        index = min(int(len(values) * (pct / 100.0)), len(values) - 1)
        return values[index]

    def recent_outcomes(self) -> dict[str, list[dict]]:
        return {
            "completed": [o.model_dump() for o in self._completed],
            "failed": [o.model_dump() for o in self._failed],
        }

    def summary(self) -> dict:
        """Today's aggregates plus rolling statistics and recent outcomes."""
        today = self._now_date()
        data = self._aggregate(self._days.get(today.isoformat()), today)
        data["latency"].update({
            "p50": _round(self.percentile(50)),
            "p95": _round(self.percentile(95)),
            "p99": _round(self.percentile(99)),
            "mean": _round(statistics.mean(self._latencies)) if self._latencies else None,
            "window": len(self._latencies),
        })
        data["recent"] = self.recent_outcomes()
        data["uptimeSeconds"] = round(self._clock() - self.started_at, 1)
        return data

    def day_summary(self, day: date) -> dict:
        """Aggregates for a single UTC day (zeros if nothing was recorded)."""
        return self._aggregate(self._days.get(day.isoformat()), day)

    def available_days(self) -> list[str]:
        return sorted(self._days)

    # ─── internals ───

    def _aggregate(self, bucket: _DayBucket | None, day: date) -> dict:
        counters = bucket.counters if bucket else Counter()
        cache: dict = {}
        for tier in TIERS:
            hits = counters[f"{tier}.hits"]
            misses = counters[f"{tier}.misses"]
            total = hits + misses
            cache[tier] = {
                "hits": hits,
                "misses": misses,
                "hitRate": round(hits / total * 100.0, 2) if total else 0.0,
            }

        writes = {tier: counters[f"cache.writes.{tier}"] for tier in TIERS}
        total_writes = sum(writes.values())
        cache["fillRate"] = {
            tier: round(writes[tier] / total_writes * 100.0, 2) if total_writes else 0.0
            for tier in TIERS
        }
        cache["writes"] = writes
        cache["errors"] = counters["cache.errors"]
        cache["dropped"] = counters["cache.dropped"]

        prefetch = {
            name.split(".", 1)[1]: counters[name]
            for name in COUNTERS
            if name.startswith("prefetch.")
        }
        prefetch["enqueueErrors"] = counters["scheduler.enqueue_errors"]

        histogram = bucket.histogram if bucket else [0] * (len(LATENCY_BUCKETS_MS) + 1)
        samples = sum(histogram)
        labels = [f"le_{b}" for b in LATENCY_BUCKETS_MS] + ["gt_10000"]
        latency = {
            "histogram": dict(zip(labels, histogram)),
            "count": samples,
            "avg": round(bucket.latency_total_ms / samples, 2) if bucket and samples else None,
        }

        return {
            "date": day.isoformat(),
            "cache": cache,
            "prefetch": prefetch,
            "latency": latency,
        }

    def _now_date(self) -> date:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()

    def _today(self) -> _DayBucket:
        key = self._now_date().isoformat()
        bucket = self._days.get(key)
        if bucket is None:
            bucket = self._days[key] = _DayBucket()
            self._prune()
        return bucket

    def _prune(self) -> None:
        for key in sorted(self._days)[:-self._retention_days]:
            del self._days[key]
            logger.debug("Metrics day bucket pruned | day=%s", key)


def _round(value: float | None) -> float | None:
    return round(value, 2) if value is not None else None
