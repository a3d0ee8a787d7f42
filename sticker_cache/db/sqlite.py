from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sticker_cache.errors import DuplicateRecordError, StoreUnavailableError

_SCHEMA = """
CREATE TABLE IF NOT EXISTS canonical_documents (
    fingerprint TEXT PRIMARY KEY,
    reference_count INTEGER NOT NULL DEFAULT 0 CHECK (reference_count >= 0),
    first_seen_at TEXT NOT NULL,
    last_reference_at TEXT NOT NULL,
    total_pages INTEGER
);
CREATE TABLE IF NOT EXISTS canonical_document_refs (
    fingerprint TEXT NOT NULL REFERENCES canonical_documents(fingerprint),
    ref_type TEXT NOT NULL,
    ref_id TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (ref_type, ref_id)
);
CREATE TABLE IF NOT EXISTS generation_jobs (
    id TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL REFERENCES canonical_documents(fingerprint),
    unit_key TEXT NOT NULL,
    prompt_version TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'in_progress', 'ready', 'failed')),
    attempts INTEGER NOT NULL DEFAULT 0 CHECK (attempts >= 0),
    unit_content TEXT NOT NULL DEFAULT '',
    locked_at TEXT,
    lock_owner TEXT,
    run_after TEXT NOT NULL,
    content TEXT,
    generation_time_ms INTEGER,
    completed_at TEXT,
    last_error TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (fingerprint, unit_key, prompt_version)
);
CREATE INDEX IF NOT EXISTS idx_generation_jobs_pickup ON generation_jobs(status, run_after);
CREATE INDEX IF NOT EXISTS idx_generation_jobs_locked ON generation_jobs(status, locked_at);
CREATE INDEX IF NOT EXISTS idx_generation_jobs_completed ON generation_jobs(status, completed_at);
CREATE TABLE IF NOT EXISTS latency_samples (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    fingerprint TEXT,
    unit_key TEXT,
    latency_ms INTEGER NOT NULL CHECK (latency_ms >= 0),
    cache_hit INTEGER NOT NULL DEFAULT 0,
    sampled_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_latency_samples_sampled_at ON latency_samples(sampled_at);
CREATE TABLE IF NOT EXISTS generation_failures (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    fingerprint TEXT NOT NULL,
    unit_key TEXT NOT NULL,
    attempt INTEGER NOT NULL,
    error_class TEXT NOT NULL,
    error_message TEXT NOT NULL,
    occurred_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_generation_failures_occurred_at ON generation_failures(occurred_at);
CREATE TABLE IF NOT EXISTS sticker_versions (
    sticker_id TEXT PRIMARY KEY,
    current_version INTEGER NOT NULL CHECK (current_version IN (1, 2)),
    v1_content TEXT NOT NULL,
    v1_created_at TEXT NOT NULL,
    v2_content TEXT,
    v2_created_at TEXT
);
"""


class SqliteDatabase:
    """SQLite file shared by the sqlite repositories; one short-lived connection per call."""

    def __init__(self, db_path: str | Path, *, busy_timeout_s: float = 30.0) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._busy_timeout_s = busy_timeout_s
        self._init_db()

    @property
    def path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._busy_timeout_s, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE so concurrent writers serialize on the database lock."""
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(str(exc), backend="sqlite") from exc
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            if "UNIQUE" in str(exc).upper():
                raise DuplicateRecordError(str(exc)) from exc
            raise StoreUnavailableError(str(exc), backend="sqlite") from exc
        except sqlite3.Error as exc:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreUnavailableError(str(exc), backend="sqlite") from exc
        except BaseException:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(str(exc), backend="sqlite") from exc
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StoreUnavailableError(str(exc), backend="sqlite") from exc
        finally:
            conn.close()

    def reset(self) -> None:
        with self.transaction() as conn:
            for table in (
                "generation_failures",
                "latency_samples",
                "generation_jobs",
                "canonical_document_refs",
                "canonical_documents",
                "sticker_versions",
            ):
                conn.execute(f"DELETE FROM {table}")
