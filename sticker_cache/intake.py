from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sticker_cache.errors import StoreUnavailableError
from sticker_cache.models import STATUS_FAILED, STATUS_READY, LatencySample, utcnow
from sticker_cache.registry import CanonicalDocumentRegistry, validate_fingerprint
from sticker_cache.settings import prompt_version_from_env

logger = logging.getLogger(__name__)

INTAKE_READY = "ready"
INTAKE_GENERATING = "generating"
INTAKE_FAILED = "failed"
INTAKE_DENIED = "denied"
INTAKE_UNAVAILABLE = "unavailable"


@dataclass
class IntakeResult:
    status: str
    fingerprint: str
    unit_key: str
    job_id: str | None = None
    content: dict[str, Any] | None = None
    error: str | None = None
    created: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "fingerprint": self.fingerprint,
            "unit_key": self.unit_key,
            "job_id": self.job_id,
            "content": self.content,
            "error": self.error,
            "created": self.created,
        }


class GenerationIntake:
    """Front door for page sticker requests.

    A ready entry is served from the shared cache and sampled as a cache hit;
    anything else is turned into at most one durable job per
    (fingerprint, unit_key, prompt_version).
    """

    def __init__(
        self,
        *,
        store: Any,
        prompt_version: str | None = None,
        admission: Callable[[str, str], bool] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._registry = CanonicalDocumentRegistry(store.documents)
        self._prompt_version = prompt_version or prompt_version_from_env()
        self._admission = admission
        self._clock = clock

    @property
    def prompt_version(self) -> str:
        return self._prompt_version

    def request(
        self,
        fingerprint: str,
        unit_key: str,
        unit_content: str,
        *,
        ref_id: str | None = None,
        now: datetime | None = None,
    ) -> IntakeResult:
        validate_fingerprint(fingerprint)
        if not unit_key.strip():
            raise ValueError("unit_key must not be empty")
        started = self._clock()
        current = now or utcnow()
        try:
            return self._request(
                fingerprint=fingerprint,
                unit_key=unit_key,
                unit_content=unit_content,
                ref_id=ref_id,
                started=started,
                now=current,
            )
        except StoreUnavailableError as exc:
            logger.error("intake_store_unavailable fingerprint=%s backend=%s error=%s", fingerprint, exc.backend, exc)
            return IntakeResult(
                status=INTAKE_UNAVAILABLE,
                fingerprint=fingerprint,
                unit_key=unit_key,
                error=str(exc),
            )

    def _request(
        self,
        *,
        fingerprint: str,
        unit_key: str,
        unit_content: str,
        ref_id: str | None,
        started: float,
        now: datetime,
    ) -> IntakeResult:
        if ref_id is not None:
            self._registry.resolve(fingerprint, ref_id=ref_id, now=now)

        existing = self._store.jobs.find_by_unit(
            fingerprint=fingerprint,
            unit_key=unit_key,
            prompt_version=self._prompt_version,
        )
        if existing is not None and existing.status == STATUS_READY:
            self._record_hit(fingerprint=fingerprint, unit_key=unit_key, started=started, now=now)
            return IntakeResult(
                status=INTAKE_READY,
                fingerprint=fingerprint,
                unit_key=unit_key,
                job_id=existing.id,
                content=existing.content,
            )
        if existing is not None and existing.status == STATUS_FAILED:
            return IntakeResult(
                status=INTAKE_FAILED,
                fingerprint=fingerprint,
                unit_key=unit_key,
                job_id=existing.id,
                error=existing.last_error,
            )
        if existing is not None:
            return IntakeResult(status=INTAKE_GENERATING, fingerprint=fingerprint, unit_key=unit_key, job_id=existing.id)

        if self._admission is not None and not self._admission(fingerprint, unit_key):
            logger.info("intake_admission_denied fingerprint=%s unit_key=%s", fingerprint, unit_key)
            return IntakeResult(status=INTAKE_DENIED, fingerprint=fingerprint, unit_key=unit_key)

        if ref_id is None:
            self._registry.resolve(fingerprint, now=now)
        job, created = self._store.jobs.enqueue(
            fingerprint=fingerprint,
            unit_key=unit_key,
            prompt_version=self._prompt_version,
            unit_content=unit_content,
            now=now,
        )
        if job.status == STATUS_READY:
            self._record_hit(fingerprint=fingerprint, unit_key=unit_key, started=started, now=now)
            return IntakeResult(
                status=INTAKE_READY,
                fingerprint=fingerprint,
                unit_key=unit_key,
                job_id=job.id,
                content=job.content,
            )
        if job.status == STATUS_FAILED:
            return IntakeResult(
                status=INTAKE_FAILED,
                fingerprint=fingerprint,
                unit_key=unit_key,
                job_id=job.id,
                error=job.last_error,
            )
        if created:
            logger.info("generation_job_enqueued job_id=%s fingerprint=%s unit_key=%s", job.id, fingerprint, unit_key)
        return IntakeResult(
            status=INTAKE_GENERATING,
            fingerprint=fingerprint,
            unit_key=unit_key,
            job_id=job.id,
            created=created,
        )

    def _record_hit(self, *, fingerprint: str, unit_key: str, started: float, now: datetime) -> None:
        latency_ms = max(0, int((self._clock() - started) * 1000))
        try:
            self._store.latency.append(
                sample=LatencySample(
                    latency_ms=latency_ms,
                    cache_hit=True,
                    sampled_at=now,
                    fingerprint=fingerprint,
                    unit_key=unit_key,
                )
            )
        except StoreUnavailableError as exc:
            logger.warning("latency_sample_record_failed fingerprint=%s error=%s", fingerprint, exc)
