from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from sticker_cache.errors import DuplicateRecordError, StoreUnavailableError

SCHEMA_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS canonical_documents (
        fingerprint VARCHAR(64) PRIMARY KEY,
        reference_count INTEGER NOT NULL DEFAULT 0 CHECK (reference_count >= 0),
        first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_reference_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        total_pages INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS canonical_document_refs (
        fingerprint VARCHAR(64) NOT NULL REFERENCES canonical_documents(fingerprint),
        ref_type VARCHAR(20) NOT NULL,
        ref_id TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (ref_type, ref_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS generation_jobs (
        id TEXT PRIMARY KEY,
        fingerprint VARCHAR(64) NOT NULL REFERENCES canonical_documents(fingerprint),
        unit_key TEXT NOT NULL,
        prompt_version VARCHAR(20) NOT NULL,
        status VARCHAR(16) NOT NULL CHECK (status IN ('pending', 'in_progress', 'ready', 'failed')),
        attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
        unit_content TEXT NOT NULL DEFAULT '',
        locked_at TIMESTAMPTZ,
        lock_owner TEXT,
        run_after TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        content JSONB,
        generation_time_ms INTEGER,
        completed_at TIMESTAMPTZ,
        last_error TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CONSTRAINT unique_generation_unit UNIQUE (fingerprint, unit_key, prompt_version)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_generation_jobs_pickup
    ON generation_jobs(status, run_after) WHERE status = 'pending'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_generation_jobs_zombie
    ON generation_jobs(status, locked_at) WHERE status = 'in_progress'
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_generation_jobs_retention
    ON generation_jobs(status, completed_at) WHERE status IN ('ready', 'failed')
    """,
    """
    CREATE TABLE IF NOT EXISTS latency_samples (
        id BIGSERIAL PRIMARY KEY,
        fingerprint VARCHAR(64),
        unit_key TEXT,
        latency_ms INTEGER NOT NULL CHECK (latency_ms >= 0),
        cache_hit BOOLEAN NOT NULL DEFAULT FALSE,
        sampled_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_latency_samples_sampled_at ON latency_samples(sampled_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS generation_failures (
        id TEXT PRIMARY KEY,
        job_id TEXT NOT NULL,
        fingerprint VARCHAR(64) NOT NULL,
        unit_key TEXT NOT NULL,
        attempt INTEGER NOT NULL,
        error_class VARCHAR(16) NOT NULL,
        error_message TEXT NOT NULL,
        occurred_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_generation_failures_occurred_at ON generation_failures(occurred_at)",
    """
    CREATE TABLE IF NOT EXISTS sticker_versions (
        sticker_id TEXT PRIMARY KEY,
        current_version SMALLINT NOT NULL CHECK (current_version IN (1, 2)),
        v1_content TEXT NOT NULL,
        v1_created_at TIMESTAMPTZ NOT NULL,
        v2_content TEXT,
        v2_created_at TIMESTAMPTZ
    )
    """,
)


def validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction and map driver errors."""

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(self, *, fn: Callable[[Any], Any]) -> Any:
        psycopg = _import_psycopg()
        try:
            with psycopg.connect(self._dsn) as conn:
                result = fn(conn)
                conn.commit()
                return result
        except psycopg.errors.UniqueViolation as exc:
            raise DuplicateRecordError(str(exc)) from exc
        except psycopg.Error as exc:
            raise StoreUnavailableError(str(exc), backend="postgres") from exc

    def ensure_schema(self) -> None:
        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                for statement in SCHEMA_STATEMENTS:
                    cur.execute(statement)

        self.run_in_tx(fn=_op)
