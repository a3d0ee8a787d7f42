from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0
from sticker_cache.models import FailureLog, LatencySample
from sticker_cache.registry import CanonicalDocumentRegistry, fingerprint_bytes
from sticker_cache.retention import RetentionSweeper
from sticker_cache.settings import RetentionSettings

F1 = fingerprint_bytes(b"retention fixture document")
DAY = timedelta(days=1)


def _job_completed_at(store, *, page: int, completed_at, status: str = "ready"):
    store.jobs.enqueue(
        fingerprint=F1,
        unit_key=f"page-{page}:en:text_only",
        prompt_version="2026-01-11.1",
        unit_content="",
        now=T0 - 20 * DAY + timedelta(milliseconds=page),
    )
    (job,) = store.jobs.claim_batch(limit=1, now=T0 - 19 * DAY, owner=f"run_{page}")
    if status == "ready":
        store.jobs.complete(job_id=job.id, owner=job.lock_owner, content={"stickers": []}, generation_time_ms=10, now=completed_at)
    else:
        store.jobs.fail(job_id=job.id, owner=job.lock_owner, error="404", now=completed_at)
    return job


def _failure(store, *, occurred_at, suffix: str):
    store.failures.append(
        entry=FailureLog(
            id=f"failure_{suffix}",
            job_id="job_x",
            fingerprint=F1,
            unit_key="page-1:en:text_only",
            attempt=1,
            error_class="transient",
            error_message="timeout",
            occurred_at=occurred_at,
        )
    )


@pytest.fixture
def seeded(any_store):
    registry = CanonicalDocumentRegistry(any_store.documents)
    registry.resolve(F1, ref_id="file_a", now=T0 - 20 * DAY)
    registry.resolve(F1, ref_id="file_b", now=T0 - 20 * DAY)
    old = _job_completed_at(any_store, page=1, completed_at=T0 - 8 * DAY)
    recent = _job_completed_at(any_store, page=2, completed_at=T0 - 6 * DAY)
    old_failed = _job_completed_at(any_store, page=3, completed_at=T0 - 9 * DAY, status="failed")
    pending, _ = any_store.jobs.enqueue(
        fingerprint=F1,
        unit_key="page-4:en:text_only",
        prompt_version="2026-01-11.1",
        unit_content="",
        now=T0 - 30 * DAY,
    )
    _failure(any_store, occurred_at=T0 - 31 * DAY, suffix="old")
    _failure(any_store, occurred_at=T0 - 29 * DAY, suffix="recent")
    any_store.latency.append(sample=LatencySample(latency_ms=5, cache_hit=True, sampled_at=T0 - 15 * DAY))
    any_store.latency.append(sample=LatencySample(latency_ms=7, cache_hit=False, sampled_at=T0 - 13 * DAY))
    return {"store": any_store, "old": old, "recent": recent, "old_failed": old_failed, "pending": pending}


def test_sweep_deletes_only_aged_terminal_jobs(seeded):
    store = seeded["store"]
    result = RetentionSweeper(store=store).sweep(now=T0)

    assert result.deleted_jobs == 2
    assert store.jobs.get(job_id=seeded["old"].id) is None
    assert store.jobs.get(job_id=seeded["old_failed"].id) is None
    assert store.jobs.get(job_id=seeded["recent"].id).status == "ready"
    assert store.jobs.get(job_id=seeded["pending"].id).status == "pending"


def test_sweep_prunes_failure_logs_and_latency_samples(seeded):
    store = seeded["store"]
    result = RetentionSweeper(store=store).sweep(now=T0)
    assert result.deleted_failure_logs == 1
    assert result.deleted_latency_samples == 1
    assert [entry.id for entry in store.failures.list_for_job(job_id="job_x")] == ["failure_recent"]
    (sample,) = store.latency.list_between(start=T0 - 60 * DAY, end=T0)
    assert sample.latency_ms == 7


def test_sweep_never_touches_canonical_documents(seeded):
    store = seeded["store"]
    RetentionSweeper(store=store).sweep(now=T0)
    doc = store.documents.get(fingerprint=F1)
    assert doc is not None
    assert doc.reference_count == 2


def test_sweep_is_idempotent(seeded):
    sweeper = RetentionSweeper(store=seeded["store"])
    sweeper.sweep(now=T0)
    again = sweeper.sweep(now=T0)
    assert again.as_dict() == {"deleted_jobs": 0, "deleted_failure_logs": 0, "deleted_latency_samples": 0}


def test_sweep_overrides_and_settings(seeded):
    store = seeded["store"]
    sweeper = RetentionSweeper(store=store, settings=RetentionSettings(job_max_age_days=30))
    assert sweeper.sweep(now=T0).deleted_jobs == 0
    assert sweeper.sweep(job_max_age_days=5, now=T0).deleted_jobs == 3


@pytest.mark.parametrize("field", ["job_max_age_days", "failure_log_max_age_days", "latency_sample_max_age_days"])
def test_sweep_rejects_non_positive_age(memory_store, field):
    with pytest.raises(ValueError, match=field):
        RetentionSweeper(store=memory_store).sweep(now=T0, **{field: 0})


def test_retention_settings_from_env():
    settings = RetentionSettings.from_env(
        {"RETENTION_JOB_MAX_AGE_DAYS": "3", "RETENTION_FAILURE_LOG_MAX_AGE_DAYS": "bogus"}
    )
    assert settings.job_max_age_days == 3
    assert settings.failure_log_max_age_days == 30
    assert settings.latency_sample_max_age_days == 14
