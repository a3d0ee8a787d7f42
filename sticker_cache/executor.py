from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sticker_cache.errors import StoreUnavailableError
from sticker_cache.jobs import ERROR_PERMANENT, RetryPolicy, classify_error
from sticker_cache.models import FailureLog, GenerationJob, LatencySample, utcnow
from sticker_cache.prompts import build_sticker_messages, parse_sticker_response

logger = logging.getLogger(__name__)

OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_RETRYING = "retrying"
OUTCOME_FAILED = "failed"
OUTCOME_LOST_LOCK = "lost_lock"


@dataclass
class ExecutionOutcome:
    job_id: str
    outcome: str
    job: GenerationJob | None = None
    error: str | None = None
    error_class: str | None = None
    stickers_created: int = 0
    generation_time_ms: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "outcome": self.outcome,
            "error": self.error,
            "error_class": self.error_class,
            "stickers_created": self.stickers_created,
            "generation_time_ms": self.generation_time_ms,
        }


class GenerationExecutor:
    """Run one claimed job: one completion call, then exactly one guarded write.

    Failures never raise; they are recorded as a failure log entry and turned
    into a backoff retry or a terminal failure. Store errors do propagate so the
    worker run can report them.
    """

    def __init__(self, *, store: Any, completion: Any, retry_policy: RetryPolicy | None = None) -> None:
        self._store = store
        self._completion = completion
        self._retry_policy = retry_policy or RetryPolicy()

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def _generate(self, job: GenerationJob) -> dict[str, Any]:
        messages = build_sticker_messages(unit_key=job.unit_key, unit_content=job.unit_content)
        result = self._completion.complete(messages)
        return parse_sticker_response(result.text)

    def execute(self, job: GenerationJob, *, now: datetime | None = None) -> ExecutionOutcome:
        owner = job.lock_owner or ""
        started = time.monotonic()
        try:
            content = self._generate(job)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            return self._record_failure(job, owner=owner, error=message, now=now or utcnow())

        generation_time_ms = max(0, int((time.monotonic() - started) * 1000))
        finished_at = now or utcnow()
        updated = self._store.jobs.complete(
            job_id=job.id,
            owner=owner,
            content=content,
            generation_time_ms=generation_time_ms,
            now=finished_at,
        )
        if updated is None:
            logger.warning("generation_lost_lock job_id=%s owner=%s", job.id, owner)
            return ExecutionOutcome(job_id=job.id, outcome=OUTCOME_LOST_LOCK, generation_time_ms=generation_time_ms)

        try:
            self._store.latency.append(
                sample=LatencySample(
                    latency_ms=generation_time_ms,
                    cache_hit=False,
                    sampled_at=finished_at,
                    fingerprint=job.fingerprint,
                    unit_key=job.unit_key,
                )
            )
        except StoreUnavailableError as exc:
            logger.warning("latency_sample_record_failed job_id=%s error=%s", job.id, exc)

        return ExecutionOutcome(
            job_id=job.id,
            outcome=OUTCOME_SUCCEEDED,
            job=updated,
            stickers_created=len(content.get("stickers", [])),
            generation_time_ms=generation_time_ms,
        )

    def _record_failure(self, job: GenerationJob, *, owner: str, error: str, now: datetime) -> ExecutionOutcome:
        error_class = classify_error(error)
        attempt = job.attempts + 1
        self._store.failures.append(
            entry=FailureLog(
                id=str(uuid.uuid4()),
                job_id=job.id,
                fingerprint=job.fingerprint,
                unit_key=job.unit_key,
                attempt=attempt,
                error_class=error_class,
                error_message=error[:2000],
                occurred_at=now,
            )
        )

        if self._retry_policy.should_retry(attempts=attempt, error_class=error_class):
            run_after = self._retry_policy.next_run_after(job_id=job.id, attempts=attempt, now=now)
            updated = self._store.jobs.schedule_retry(
                job_id=job.id,
                owner=owner,
                run_after=run_after,
                error=error,
                now=now,
            )
            outcome = OUTCOME_RETRYING
        else:
            updated = self._store.jobs.fail(job_id=job.id, owner=owner, error=error, now=now)
            outcome = OUTCOME_FAILED

        if updated is None:
            logger.warning("generation_lost_lock job_id=%s owner=%s", job.id, owner)
            return ExecutionOutcome(job_id=job.id, outcome=OUTCOME_LOST_LOCK, error=error, error_class=error_class)

        logger.warning(
            "generation_failed job_id=%s attempt=%s error_class=%s outcome=%s permanent=%s",
            job.id,
            attempt,
            error_class,
            outcome,
            error_class == ERROR_PERMANENT,
        )
        return ExecutionOutcome(
            job_id=job.id,
            outcome=outcome,
            job=updated,
            error=error,
            error_class=error_class,
        )
