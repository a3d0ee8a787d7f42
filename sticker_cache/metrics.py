from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any

from sticker_cache.models import STATUS_FAILED, STATUS_READY, to_iso, utcnow
from sticker_cache.settings import MetricsSettings

PERIOD_WINDOWS: dict[str, timedelta] = {
    "hour": timedelta(hours=1),
    "day": timedelta(days=1),
    "week": timedelta(days=7),
}
RECENT_COMPLETIONS_FOR_AVG = 10


def percentile(sorted_values: list[int], p: float) -> int:
    """Nearest-rank percentile: index ceil(n*p/100) - 1, clamped to the array."""
    n = len(sorted_values)
    if n == 0:
        return 0
    idx = math.ceil(n * p / 100) - 1
    return sorted_values[min(n - 1, max(0, idx))]


def _ratio(numerator: int, denominator: int) -> float:
    return round(numerator / denominator, 4) if denominator > 0 else 0.0


class MetricsAggregator:
    """Read-only rollups over latency samples, jobs and canonical documents."""

    def __init__(self, *, store: Any, settings: MetricsSettings | None = None) -> None:
        self._store = store
        self._settings = settings or MetricsSettings()

    def estimated_savings(self) -> dict[str, Any]:
        docs = self._store.documents.list_referenced()
        total_references = sum(doc.reference_count for doc in docs)
        distinct = len(docs)
        saved = max(0, total_references - distinct)
        return {
            "total_references": total_references,
            "distinct_documents": distinct,
            "saved_generations": saved,
            "estimated_savings": round(saved * self._settings.cost_per_generation, 4),
        }

    def snapshot(self, period: str = "day", now: datetime | None = None) -> dict[str, Any]:
        if period not in PERIOD_WINDOWS:
            raise ValueError(f"period must be one of: {', '.join(PERIOD_WINDOWS)}")
        end = now or utcnow()
        start = end - PERIOD_WINDOWS[period]

        samples = self._store.latency.list_between(start=start, end=end)
        hits = sum(1 for s in samples if s.cache_hit)
        misses = len(samples) - hits
        latencies = sorted(int(s.latency_ms) for s in samples)

        jobs = self._store.jobs.list_created_between(start=start, end=end)
        ready = sum(1 for job in jobs if job.status == STATUS_READY)
        failed = sum(1 for job in jobs if job.status == STATUS_FAILED)
        avg_attempts = sum(job.attempts for job in jobs) / len(jobs) if jobs else 0.0

        savings = self.estimated_savings()
        return {
            "period": period,
            "start_time": to_iso(start),
            "end_time": to_iso(end),
            "cache_hits": hits,
            "cache_misses": misses,
            "cache_hit_rate": _ratio(hits, hits + misses),
            "total_generations": len(jobs),
            "successful_generations": ready,
            "failed_generations": failed,
            "success_rate": _ratio(ready, ready + failed),
            "avg_latency_ms": round(sum(latencies) / len(latencies)) if latencies else 0,
            "p50_latency_ms": percentile(latencies, 50),
            "p95_latency_ms": percentile(latencies, 95),
            "p99_latency_ms": percentile(latencies, 99),
            "avg_attempts": round(avg_attempts, 2),
            "shared_cache_entries": self._store.jobs.count_ready(),
            "estimated_savings": savings["estimated_savings"],
        }

    def worker_health(self, now: datetime | None = None) -> dict[str, Any]:
        current = now or utcnow()
        stuck_before = current - timedelta(minutes=self._settings.zombie_threshold_minutes)
        pending = self._store.jobs.count_runnable_pending(now=current)
        stuck = self._store.jobs.count_stuck(locked_before=stuck_before)
        recent = self._store.jobs.list_recent_completions(limit=RECENT_COMPLETIONS_FOR_AVG)

        last_completed_at = recent[0].completed_at if recent else None
        durations = [job.generation_time_ms or 0 for job in recent]
        avg_duration = round(sum(durations) / len(durations)) if durations else 0

        window_start = current - timedelta(minutes=self._settings.health_window_minutes)
        recently_active = last_completed_at is not None and last_completed_at > window_start
        healthy = (recently_active or pending == 0) and stuck == 0
        return {
            "is_healthy": healthy,
            "last_completed_at": to_iso(last_completed_at),
            "pending_jobs": pending,
            "stuck_jobs": stuck,
            "avg_job_duration_ms": avg_duration,
        }

    def cache_efficiency(self, top: int = 5) -> dict[str, Any]:
        docs = self._store.documents.list_referenced()
        savings = self.estimated_savings()
        avg_refs = savings["total_references"] / len(docs) if docs else 0.0
        top_docs = [
            {
                "fingerprint": doc.fingerprint,
                "reference_count": doc.reference_count,
                "ready_entries": self._store.jobs.count_ready(fingerprint=doc.fingerprint),
            }
            for doc in docs[: max(0, int(top))]
        ]
        return {
            "total_canonical_docs": self._store.documents.count(),
            "total_ready_entries": self._store.jobs.count_ready(),
            "avg_references_per_doc": round(avg_refs, 2),
            "estimated_savings": savings["estimated_savings"],
            "top_shared_docs": top_docs,
        }
