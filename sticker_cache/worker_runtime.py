from __future__ import annotations

import logging
import os
import time
import uuid
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sticker_cache.completion import create_completion_service_from_env
from sticker_cache.errors import StoreUnavailableError
from sticker_cache.executor import (
    OUTCOME_FAILED,
    OUTCOME_LOST_LOCK,
    OUTCOME_RETRYING,
    OUTCOME_SUCCEEDED,
    ExecutionOutcome,
    GenerationExecutor,
)
from sticker_cache.jobs import RetryPolicy
from sticker_cache.models import GenerationJob, utcnow
from sticker_cache.settings import WorkerSettings

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    run_id: str = ""
    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_retrying: int = 0
    jobs_failed: int = 0
    jobs_lost_lock: int = 0
    jobs_skipped: int = 0
    zombies_reclaimed: int = 0
    entries_created: int = 0
    duration_ms: int = 0
    errors: list[str] = field(default_factory=list)

    def record(self, outcome: ExecutionOutcome) -> None:
        self.jobs_processed += 1
        if outcome.outcome == OUTCOME_SUCCEEDED:
            self.jobs_succeeded += 1
            self.entries_created += outcome.stickers_created
        elif outcome.outcome == OUTCOME_RETRYING:
            self.jobs_retrying += 1
            self.errors.append(f"{outcome.job_id}: {outcome.error}")
        elif outcome.outcome == OUTCOME_FAILED:
            self.jobs_failed += 1
            self.errors.append(f"{outcome.job_id}: {outcome.error}")
        elif outcome.outcome == OUTCOME_LOST_LOCK:
            self.jobs_lost_lock += 1

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "jobs_processed": self.jobs_processed,
            "jobs_succeeded": self.jobs_succeeded,
            "jobs_retrying": self.jobs_retrying,
            "jobs_failed": self.jobs_failed,
            "jobs_lost_lock": self.jobs_lost_lock,
            "jobs_skipped": self.jobs_skipped,
            "zombies_reclaimed": self.zombies_reclaimed,
            "entries_created": self.entries_created,
            "duration_ms": self.duration_ms,
            "errors": list(self.errors),
        }


class WorkerRuntime:
    """One invocation of the sticker worker: reclaim zombies, claim a batch, execute, summarize.

    Runs are expected to overlap; all coordination goes through the guarded
    writes on job rows, so nothing here is shared between runs.
    """

    def __init__(
        self,
        *,
        store: Any,
        executor: GenerationExecutor,
        batch_size: int = 10,
        lock_timeout_minutes: int = 15,
        runtime_budget_ms: int = 50_000,
        concurrency: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.executor = executor
        self.batch_size = max(1, int(batch_size))
        self.lock_timeout_minutes = max(1, int(lock_timeout_minutes))
        self.runtime_budget_ms = max(1, int(runtime_budget_ms))
        self.concurrency = max(1, int(concurrency))
        self._clock = clock

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    def _execute_within_budget(
        self,
        job: GenerationJob,
        *,
        started: float,
        now: datetime | None,
    ) -> ExecutionOutcome | None:
        if self._elapsed_ms(started) >= self.runtime_budget_ms:
            return None
        return self.executor.execute(job, now=now)

    def run_once(self, *, now: datetime | None = None) -> dict[str, Any]:
        started = self._clock()
        stats = WorkerRunStats(run_id=f"worker-{uuid.uuid4().hex[:12]}")
        current = now or utcnow()

        try:
            stats.zombies_reclaimed = self.store.jobs.reclaim_stuck(
                locked_before=current - timedelta(minutes=self.lock_timeout_minutes),
                now=current,
            )
        except StoreUnavailableError as exc:
            stats.errors.append(f"reclaim_failed: {exc}")
            logger.error("worker_reclaim_failed run_id=%s backend=%s error=%s", stats.run_id, exc.backend, exc)
        if stats.zombies_reclaimed:
            logger.warning("zombie_jobs_reclaimed run_id=%s count=%s", stats.run_id, stats.zombies_reclaimed)

        try:
            claimed = self.store.jobs.claim_batch(limit=self.batch_size, now=current, owner=stats.run_id)
        except StoreUnavailableError as exc:
            stats.errors.append(f"claim_failed: {exc}")
            logger.error("worker_claim_failed run_id=%s backend=%s error=%s", stats.run_id, exc.backend, exc)
            claimed = []

        if self.concurrency > 1 and len(claimed) > 1:
            with ThreadPoolExecutor(max_workers=min(self.concurrency, len(claimed))) as pool:
                futures = [
                    (job, pool.submit(self._execute_within_budget, job, started=started, now=now))
                    for job in claimed
                ]
                results = []
                for job, future in futures:
                    try:
                        results.append((job, future.result()))
                    except StoreUnavailableError as exc:
                        stats.errors.append(f"{job.id}: store_unavailable: {exc}")
        else:
            results = []
            for job in claimed:
                try:
                    results.append((job, self._execute_within_budget(job, started=started, now=now)))
                except StoreUnavailableError as exc:
                    stats.errors.append(f"{job.id}: store_unavailable: {exc}")

        for job, outcome in results:
            if outcome is None:
                stats.jobs_skipped += 1
                continue
            stats.record(outcome)

        stats.duration_ms = self._elapsed_ms(started)
        logger.info(
            "worker_run_completed run_id=%s processed=%s succeeded=%s retrying=%s failed=%s "
            "skipped=%s zombies=%s duration_ms=%s",
            stats.run_id,
            stats.jobs_processed,
            stats.jobs_succeeded,
            stats.jobs_retrying,
            stats.jobs_failed,
            stats.jobs_skipped,
            stats.zombies_reclaimed,
            stats.duration_ms,
        )
        return stats.as_dict()


def create_worker_runtime_from_env(
    *,
    store: Any,
    completion: Any | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkerRuntime:
    env = os.environ if environ is None else environ
    settings = WorkerSettings.from_env(env)
    executor = GenerationExecutor(
        store=store,
        completion=completion if completion is not None else create_completion_service_from_env(env),
        retry_policy=RetryPolicy.from_settings(settings),
    )
    return WorkerRuntime(
        store=store,
        executor=executor,
        batch_size=settings.batch_size,
        lock_timeout_minutes=settings.lock_timeout_minutes,
        runtime_budget_ms=settings.runtime_budget_ms,
        concurrency=settings.concurrency,
    )
