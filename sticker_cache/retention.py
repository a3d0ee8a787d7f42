from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sticker_cache.models import utcnow
from sticker_cache.settings import RetentionSettings

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    deleted_jobs: int = 0
    deleted_failure_logs: int = 0
    deleted_latency_samples: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "deleted_jobs": self.deleted_jobs,
            "deleted_failure_logs": self.deleted_failure_logs,
            "deleted_latency_samples": self.deleted_latency_samples,
        }


class RetentionSweeper:
    """Deletes aged terminal jobs and old audit rows. Never touches documents or live jobs."""

    def __init__(self, *, store: Any, settings: RetentionSettings | None = None) -> None:
        self._store = store
        self._settings = settings or RetentionSettings()

    def sweep(
        self,
        job_max_age_days: int | None = None,
        failure_log_max_age_days: int | None = None,
        now: datetime | None = None,
        latency_sample_max_age_days: int | None = None,
    ) -> SweepResult:
        job_days = self._settings.job_max_age_days if job_max_age_days is None else job_max_age_days
        failure_days = (
            self._settings.failure_log_max_age_days if failure_log_max_age_days is None else failure_log_max_age_days
        )
        latency_days = (
            self._settings.latency_sample_max_age_days
            if latency_sample_max_age_days is None
            else latency_sample_max_age_days
        )
        for name, value in (
            ("job_max_age_days", job_days),
            ("failure_log_max_age_days", failure_days),
            ("latency_sample_max_age_days", latency_days),
        ):
            if int(value) < 1:
                raise ValueError(f"{name} must be >= 1")

        current = now or utcnow()
        result = SweepResult(
            deleted_jobs=self._store.jobs.delete_terminal_completed_before(
                cutoff=current - timedelta(days=int(job_days)),
            ),
            deleted_failure_logs=self._store.failures.delete_before(
                cutoff=current - timedelta(days=int(failure_days)),
            ),
            deleted_latency_samples=self._store.latency.delete_before(
                cutoff=current - timedelta(days=int(latency_days)),
            ),
        )
        logger.info(
            "retention_sweep_completed deleted_jobs=%s deleted_failure_logs=%s deleted_latency_samples=%s",
            result.deleted_jobs,
            result.deleted_failure_logs,
            result.deleted_latency_samples,
        )
        return result
