from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0
from sticker_cache.metrics import MetricsAggregator, percentile
from sticker_cache.models import LatencySample
from sticker_cache.registry import CanonicalDocumentRegistry, fingerprint_bytes
from sticker_cache.settings import MetricsSettings

FA = fingerprint_bytes(b"popular textbook chapter")
FB = fingerprint_bytes(b"niche seminar handout")


def test_percentile_nearest_rank():
    values = [10, 20, 30, 40, 50]
    assert percentile(values, 50) == 30
    assert percentile(values, 95) == 50
    assert percentile(values, 99) == 50
    assert percentile(values, 0) == 10
    assert percentile([], 95) == 0
    assert percentile([7], 50) == 7


def test_estimated_savings_counts_shared_references(any_store):
    registry = CanonicalDocumentRegistry(any_store.documents)
    for index in range(5):
        registry.resolve(FA, ref_id=f"file_a_{index}", now=T0)
    registry.resolve(FB, ref_id="file_b_0", now=T0)

    savings = MetricsAggregator(store=any_store, settings=MetricsSettings(cost_per_generation=0.01)).estimated_savings()
    assert savings == {
        "total_references": 6,
        "distinct_documents": 2,
        "saved_generations": 4,
        "estimated_savings": 0.04,
    }


def _job(store, *, page: int, outcome: str, now):
    store.jobs.enqueue(
        fingerprint=FA,
        unit_key=f"page-{page}:en:text_only",
        prompt_version="2026-01-11.1",
        unit_content="",
        now=now,
    )
    (job,) = store.jobs.claim_batch(limit=1, now=now, owner="run")
    if outcome == "ready":
        return store.jobs.complete(
            job_id=job.id, owner="run", content={"stickers": []}, generation_time_ms=100 * page, now=now
        )
    if outcome == "failed":
        return store.jobs.fail(job_id=job.id, owner="run", error="404", now=now)
    return job


def test_snapshot_rolls_up_latency_and_outcomes(any_store):
    any_store.documents.insert_if_absent(fingerprint=FA, now=T0 - timedelta(hours=2))
    for latency, hit in ((10, True), (20, True), (30, False), (40, True), (50, False)):
        any_store.latency.append(
            sample=LatencySample(latency_ms=latency, cache_hit=hit, sampled_at=T0 - timedelta(minutes=latency))
        )
    any_store.latency.append(sample=LatencySample(latency_ms=9_999, cache_hit=False, sampled_at=T0 - timedelta(days=2)))
    _job(any_store, page=1, outcome="ready", now=T0 - timedelta(hours=1))
    _job(any_store, page=2, outcome="ready", now=T0 - timedelta(hours=1))
    _job(any_store, page=3, outcome="failed", now=T0 - timedelta(hours=1))

    snapshot = MetricsAggregator(store=any_store).snapshot("day", now=T0)
    assert snapshot["cache_hits"] == 3
    assert snapshot["cache_misses"] == 2
    assert snapshot["cache_hit_rate"] == 0.6
    assert snapshot["p50_latency_ms"] == 30
    assert snapshot["p95_latency_ms"] == 50
    assert snapshot["p99_latency_ms"] == 50
    assert snapshot["avg_latency_ms"] == 30
    assert snapshot["total_generations"] == 3
    assert snapshot["successful_generations"] == 2
    assert snapshot["failed_generations"] == 1
    assert snapshot["success_rate"] == 0.6667
    assert snapshot["avg_attempts"] == 0.33
    assert snapshot["shared_cache_entries"] == 2


def test_snapshot_on_empty_store_is_all_zero(memory_store):
    snapshot = MetricsAggregator(store=memory_store).snapshot("hour", now=T0)
    assert snapshot["cache_hit_rate"] == 0.0
    assert snapshot["success_rate"] == 0.0
    assert snapshot["p99_latency_ms"] == 0
    assert snapshot["estimated_savings"] == 0


def test_snapshot_rejects_unknown_period(memory_store):
    with pytest.raises(ValueError):
        MetricsAggregator(store=memory_store).snapshot("month", now=T0)


def test_worker_health_idle_queue_is_healthy(memory_store):
    health = MetricsAggregator(store=memory_store).worker_health(now=T0)
    assert health == {
        "is_healthy": True,
        "last_completed_at": None,
        "pending_jobs": 0,
        "stuck_jobs": 0,
        "avg_job_duration_ms": 0,
    }


def test_worker_health_backlog_without_recent_completion_is_unhealthy(memory_store):
    memory_store.documents.insert_if_absent(fingerprint=FA, now=T0)
    _job(memory_store, page=1, outcome="ready", now=T0 - timedelta(hours=1))
    _job(memory_store, page=2, outcome="pending", now=T0 - timedelta(hours=1))
    memory_store.jobs.reclaim_stuck(locked_before=T0, now=T0 - timedelta(minutes=1))

    health = MetricsAggregator(store=memory_store).worker_health(now=T0)
    assert health["pending_jobs"] == 1
    assert health["stuck_jobs"] == 0
    assert health["is_healthy"] is False


def test_worker_health_recent_completion_with_backlog_is_healthy(memory_store):
    memory_store.documents.insert_if_absent(fingerprint=FA, now=T0)
    _job(memory_store, page=1, outcome="ready", now=T0 - timedelta(minutes=2))
    _job(memory_store, page=2, outcome="ready", now=T0 - timedelta(minutes=3))
    memory_store.jobs.enqueue(
        fingerprint=FA, unit_key="page-9:en:text_only", prompt_version="2026-01-11.1", unit_content="", now=T0
    )

    health = MetricsAggregator(store=memory_store).worker_health(now=T0)
    assert health["is_healthy"] is True
    assert health["pending_jobs"] == 1
    assert health["avg_job_duration_ms"] == 150
    assert health["last_completed_at"] == (T0 - timedelta(minutes=2)).isoformat(timespec="microseconds")


def test_worker_health_stuck_job_is_unhealthy(memory_store):
    memory_store.documents.insert_if_absent(fingerprint=FA, now=T0)
    _job(memory_store, page=1, outcome="ready", now=T0 - timedelta(minutes=1))
    _job(memory_store, page=2, outcome="claimed", now=T0 - timedelta(minutes=20))

    health = MetricsAggregator(store=memory_store, settings=MetricsSettings(zombie_threshold_minutes=15)).worker_health(
        now=T0
    )
    assert health["stuck_jobs"] == 1
    assert health["is_healthy"] is False


def test_cache_efficiency_lists_most_shared_documents(any_store):
    registry = CanonicalDocumentRegistry(any_store.documents)
    for index in range(3):
        registry.resolve(FA, ref_id=f"file_a_{index}", now=T0)
    registry.resolve(FB, ref_id="file_b_0", now=T0)
    _job(any_store, page=1, outcome="ready", now=T0)

    report = MetricsAggregator(store=any_store).cache_efficiency(top=1)
    assert report["total_canonical_docs"] == 2
    assert report["total_ready_entries"] == 1
    assert report["avg_references_per_doc"] == 2.0
    assert report["estimated_savings"] == 0.02
    assert report["top_shared_docs"] == [{"fingerprint": FA, "reference_count": 3, "ready_entries": 1}]
