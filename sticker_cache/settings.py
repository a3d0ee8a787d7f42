from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

DEFAULT_PROMPT_VERSION = "2026-01-11.1"


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class WorkerSettings:
    batch_size: int = 10
    max_attempts: int = 3
    retry_backoff_base_ms: int = 30_000
    retry_backoff_max_ms: int = 300_000
    lock_timeout_minutes: int = 15
    runtime_budget_ms: int = 50_000
    concurrency: int = 1

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "WorkerSettings":
        env = os.environ if environ is None else environ
        return cls(
            batch_size=_env_int(env, "WORKER_BATCH_SIZE", default=10, minimum=1),
            max_attempts=_env_int(env, "WORKER_MAX_ATTEMPTS", default=3, minimum=1),
            retry_backoff_base_ms=_env_int(env, "WORKER_RETRY_BACKOFF_BASE_MS", default=30_000),
            retry_backoff_max_ms=_env_int(env, "WORKER_RETRY_BACKOFF_MAX_MS", default=300_000),
            lock_timeout_minutes=_env_int(env, "WORKER_LOCK_TIMEOUT_MINUTES", default=15, minimum=1),
            runtime_budget_ms=_env_int(env, "WORKER_RUNTIME_BUDGET_MS", default=50_000, minimum=1),
            concurrency=_env_int(env, "WORKER_CONCURRENCY", default=1, minimum=1),
        )


@dataclass(frozen=True)
class RetentionSettings:
    job_max_age_days: int = 7
    failure_log_max_age_days: int = 30
    latency_sample_max_age_days: int = 14

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "RetentionSettings":
        env = os.environ if environ is None else environ
        return cls(
            job_max_age_days=_env_int(env, "RETENTION_JOB_MAX_AGE_DAYS", default=7, minimum=1),
            failure_log_max_age_days=_env_int(env, "RETENTION_FAILURE_LOG_MAX_AGE_DAYS", default=30, minimum=1),
            latency_sample_max_age_days=_env_int(
                env,
                "RETENTION_LATENCY_SAMPLE_MAX_AGE_DAYS",
                default=14,
                minimum=1,
            ),
        )


@dataclass(frozen=True)
class MetricsSettings:
    cost_per_generation: float = 0.01
    zombie_threshold_minutes: int = 15
    health_window_minutes: int = 10

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "MetricsSettings":
        env = os.environ if environ is None else environ
        return cls(
            cost_per_generation=_env_float(env, "METRICS_COST_PER_GENERATION", default=0.01),
            zombie_threshold_minutes=_env_int(env, "WORKER_LOCK_TIMEOUT_MINUTES", default=15, minimum=1),
        )


@dataclass(frozen=True)
class TriggerAuthSettings:
    worker_secret: str = ""
    cron_secret: str = ""
    admin_secret: str = ""

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "TriggerAuthSettings":
        env = os.environ if environ is None else environ
        return cls(
            worker_secret=str(env.get("WORKER_SECRET", "")).strip(),
            cron_secret=str(env.get("CRON_SECRET", "")).strip(),
            admin_secret=str(env.get("ADMIN_SECRET", "")).strip(),
        )


def prompt_version_from_env(environ: Mapping[str, str] | None = None) -> str:
    env = os.environ if environ is None else environ
    return str(env.get("STICKER_PROMPT_VERSION", "")).strip() or DEFAULT_PROMPT_VERSION
