"""Generation job state machine and retry policy.

A job row moves through::

    pending --claim--> in_progress --complete--> ready
                           |  \\--fail (exhausted or permanent)--> failed
                           |  \\--retry (backoff)--> pending
                           \\--reclaim (lock expired)--> pending

``ready`` and ``failed`` are terminal; only the retention sweeper removes them.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta

from sticker_cache.models import (
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_READY,
)
from sticker_cache.settings import WorkerSettings

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    STATUS_PENDING: {STATUS_IN_PROGRESS},
    STATUS_IN_PROGRESS: {STATUS_READY, STATUS_PENDING, STATUS_FAILED},
    STATUS_READY: set(),
    STATUS_FAILED: set(),
}

ERROR_TRANSIENT = "transient"
ERROR_PERMANENT = "permanent"

_PERMANENT_PATTERNS = (
    "content corrupted",
    "unparseable",
    "schema incompatibility",
    "assertion failure",
    "404",
    "not found",
    "invalid pdf",
)


class InvalidTransitionError(ValueError):
    pass


def can_transition(current: str, new: str) -> bool:
    return new in ALLOWED_TRANSITIONS.get(current, set())


def assert_transition(current: str, new: str) -> None:
    if not can_transition(current, new):
        raise InvalidTransitionError(f"job cannot move from {current} to {new}")


def classify_error(message: str) -> str:
    lowered = message.lower()
    for pattern in _PERMANENT_PATTERNS:
        if pattern in lowered:
            return ERROR_PERMANENT
    return ERROR_TRANSIENT


def build_unit_key(*, page: int, locale: str = "en", effective_mode: str = "text_only") -> str:
    if page < 1:
        raise ValueError("page must be >= 1")
    return f"page-{page}:{locale}:{effective_mode}"


def _retry_jitter_ms(*, job_id: str, attempts: int) -> int:
    seed = f"{job_id}:{attempts}".encode("utf-8")
    digest = hashlib.sha256(seed).digest()
    return int.from_bytes(digest[:2], byteorder="big") % 301


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base_ms: int = 30_000
    backoff_max_ms: int = 300_000

    @classmethod
    def from_settings(cls, settings: WorkerSettings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_base_ms=settings.retry_backoff_base_ms,
            backoff_max_ms=settings.retry_backoff_max_ms,
        )

    def backoff_ms(self, *, job_id: str, attempts: int) -> int:
        """base * 2**attempts, capped, plus a stable 0-300ms jitter per (job, attempt)."""
        normalized = max(1, int(attempts))
        base = max(0, int(self.backoff_base_ms))
        ceiling = max(base, int(self.backoff_max_ms))
        return min(ceiling, base * (2**normalized)) + _retry_jitter_ms(job_id=job_id, attempts=normalized)

    def should_retry(self, *, attempts: int, error_class: str) -> bool:
        if error_class == ERROR_PERMANENT:
            return False
        return attempts < self.max_attempts

    def next_run_after(self, *, job_id: str, attempts: int, now: datetime) -> datetime:
        return now + timedelta(milliseconds=self.backoff_ms(job_id=job_id, attempts=attempts))
