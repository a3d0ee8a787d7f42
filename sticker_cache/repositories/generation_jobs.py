from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from typing import Any

from sticker_cache.db.postgres import PostgresTxRunner, validate_identifier
from sticker_cache.db.sqlite import SqliteDatabase
from sticker_cache.jobs import assert_transition
from sticker_cache.models import (
    STATUS_FAILED,
    STATUS_IN_PROGRESS,
    STATUS_PENDING,
    STATUS_READY,
    TERMINAL_STATUSES,
    GenerationJob,
    as_utc,
    to_iso,
)

JOB_COLUMNS: tuple[str, ...] = (
    "id",
    "fingerprint",
    "unit_key",
    "prompt_version",
    "status",
    "attempts",
    "unit_content",
    "locked_at",
    "lock_owner",
    "run_after",
    "content",
    "generation_time_ms",
    "completed_at",
    "last_error",
    "created_at",
    "updated_at",
)
_COLUMN_LIST = ", ".join(JOB_COLUMNS)


def new_job_id() -> str:
    return str(uuid.uuid4())


def _dump_content(content: dict[str, Any]) -> str:
    return json.dumps(content, ensure_ascii=True, sort_keys=True)


def _claim_order(job: GenerationJob) -> tuple[str, str]:
    return (to_iso(job.run_after) or "", to_iso(job.created_at) or "")


class InMemoryGenerationJobsRepository:
    """Process-local job table; a single lock stands in for row-level atomicity."""

    def __init__(
        self,
        jobs: dict[str, GenerationJob],
        *,
        lock: threading.RLock | None = None,
    ) -> None:
        self._jobs = jobs
        self._lock = lock or threading.RLock()

    def _find_unit(self, *, fingerprint: str, unit_key: str, prompt_version: str) -> GenerationJob | None:
        for job in self._jobs.values():
            if job.fingerprint == fingerprint and job.unit_key == unit_key and job.prompt_version == prompt_version:
                return job
        return None

    def _transition(self, job: GenerationJob, new_status: str, **changes: Any) -> GenerationJob:
        assert_transition(job.status, new_status)
        updated = job.copy(status=new_status, **changes)
        self._jobs[job.id] = updated
        return updated.copy()

    def enqueue(
        self,
        *,
        fingerprint: str,
        unit_key: str,
        prompt_version: str,
        unit_content: str,
        now: datetime,
    ) -> tuple[GenerationJob, bool]:
        with self._lock:
            existing = self._find_unit(fingerprint=fingerprint, unit_key=unit_key, prompt_version=prompt_version)
            if existing is not None:
                return existing.copy(), False
            job = GenerationJob(
                id=new_job_id(),
                fingerprint=fingerprint,
                unit_key=unit_key,
                prompt_version=prompt_version,
                status=STATUS_PENDING,
                unit_content=unit_content,
                run_after=now,
                created_at=now,
                updated_at=now,
            )
            self._jobs[job.id] = job
            return job.copy(), True

    def get(self, *, job_id: str) -> GenerationJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.copy() if job is not None else None

    def find_by_unit(self, *, fingerprint: str, unit_key: str, prompt_version: str) -> GenerationJob | None:
        with self._lock:
            job = self._find_unit(fingerprint=fingerprint, unit_key=unit_key, prompt_version=prompt_version)
            return job.copy() if job is not None else None

    def claim_batch(self, *, limit: int, now: datetime, owner: str) -> list[GenerationJob]:
        if limit <= 0:
            return []
        with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if job.status == STATUS_PENDING and job.run_after is not None and job.run_after <= now
            ]
            eligible.sort(key=_claim_order)
            return [
                self._transition(job, STATUS_IN_PROGRESS, locked_at=now, lock_owner=owner, updated_at=now)
                for job in eligible[:limit]
            ]

    def _owned(self, *, job_id: str, owner: str) -> GenerationJob | None:
        job = self._jobs.get(job_id)
        if job is None or not owner or job.status != STATUS_IN_PROGRESS or job.lock_owner != owner:
            return None
        return job

    def complete(
        self,
        *,
        job_id: str,
        owner: str,
        content: dict[str, Any],
        generation_time_ms: int,
        now: datetime,
    ) -> GenerationJob | None:
        with self._lock:
            job = self._owned(job_id=job_id, owner=owner)
            if job is None:
                return None
            return self._transition(
                job,
                STATUS_READY,
                content=json.loads(_dump_content(content)),
                generation_time_ms=int(generation_time_ms),
                completed_at=now,
                locked_at=None,
                lock_owner=None,
                last_error=None,
                updated_at=now,
            )

    def schedule_retry(
        self,
        *,
        job_id: str,
        owner: str,
        run_after: datetime,
        error: str,
        now: datetime,
    ) -> GenerationJob | None:
        with self._lock:
            job = self._owned(job_id=job_id, owner=owner)
            if job is None:
                return None
            return self._transition(
                job,
                STATUS_PENDING,
                attempts=job.attempts + 1,
                run_after=run_after,
                last_error=error,
                locked_at=None,
                lock_owner=None,
                updated_at=now,
            )

    def fail(self, *, job_id: str, owner: str, error: str, now: datetime) -> GenerationJob | None:
        with self._lock:
            job = self._owned(job_id=job_id, owner=owner)
            if job is None:
                return None
            return self._transition(
                job,
                STATUS_FAILED,
                attempts=job.attempts + 1,
                last_error=error,
                completed_at=now,
                locked_at=None,
                lock_owner=None,
                updated_at=now,
            )

    def reclaim_stuck(self, *, locked_before: datetime, now: datetime) -> int:
        with self._lock:
            stuck = [
                job
                for job in self._jobs.values()
                if job.status == STATUS_IN_PROGRESS and job.locked_at is not None and job.locked_at < locked_before
            ]
            for job in stuck:
                self._transition(job, STATUS_PENDING, run_after=now, locked_at=None, lock_owner=None, updated_at=now)
            return len(stuck)

    def delete_terminal_completed_before(self, *, cutoff: datetime) -> int:
        with self._lock:
            doomed = [
                job_id
                for job_id, job in self._jobs.items()
                if job.status in TERMINAL_STATUSES and job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in doomed:
                self._jobs.pop(job_id, None)
            return len(doomed)

    def list_created_between(self, *, start: datetime, end: datetime) -> list[GenerationJob]:
        with self._lock:
            return [
                job.copy()
                for job in self._jobs.values()
                if job.created_at is not None and start <= job.created_at <= end
            ]

    def count_runnable_pending(self, *, now: datetime) -> int:
        with self._lock:
            return sum(
                1
                for job in self._jobs.values()
                if job.status == STATUS_PENDING and job.run_after is not None and job.run_after <= now
            )

    def count_stuck(self, *, locked_before: datetime) -> int:
        with self._lock:
            return sum(
                1
                for job in self._jobs.values()
                if job.status == STATUS_IN_PROGRESS and job.locked_at is not None and job.locked_at < locked_before
            )

    def list_recent_completions(self, *, limit: int) -> list[GenerationJob]:
        with self._lock:
            ready = [job for job in self._jobs.values() if job.status == STATUS_READY and job.completed_at]
            ready.sort(key=lambda job: job.completed_at, reverse=True)  # type: ignore[arg-type, return-value]
            return [job.copy() for job in ready[: max(0, limit)]]

    def count_ready(self, *, fingerprint: str | None = None) -> int:
        with self._lock:
            return sum(
                1
                for job in self._jobs.values()
                if job.status == STATUS_READY and (fingerprint is None or job.fingerprint == fingerprint)
            )


class SqliteGenerationJobsRepository:
    """SQLite job table; every mutation is one guarded statement inside BEGIN IMMEDIATE."""

    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    @staticmethod
    def _to_job(row: Any) -> GenerationJob:
        return GenerationJob.from_row({key: row[key] for key in row.keys()})

    def enqueue(
        self,
        *,
        fingerprint: str,
        unit_key: str,
        prompt_version: str,
        unit_content: str,
        now: datetime,
    ) -> tuple[GenerationJob, bool]:
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO generation_jobs (
                    id, fingerprint, unit_key, prompt_version, status, attempts, unit_content,
                    run_after, created_at, updated_at
                ) VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?, ?)
                ON CONFLICT (fingerprint, unit_key, prompt_version) DO NOTHING
                """,
                (new_job_id(), fingerprint, unit_key, prompt_version, unit_content, now_iso, now_iso, now_iso),
            )
            created = cur.rowcount == 1
            row = conn.execute(
                f"""
                SELECT {_COLUMN_LIST} FROM generation_jobs
                WHERE fingerprint = ? AND unit_key = ? AND prompt_version = ?
                """,
                (fingerprint, unit_key, prompt_version),
            ).fetchone()
        return self._to_job(row), created

    def get(self, *, job_id: str) -> GenerationJob | None:
        with self._db.read() as conn:
            row = conn.execute(f"SELECT {_COLUMN_LIST} FROM generation_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._to_job(row) if row is not None else None

    def find_by_unit(self, *, fingerprint: str, unit_key: str, prompt_version: str) -> GenerationJob | None:
        with self._db.read() as conn:
            row = conn.execute(
                f"""
                SELECT {_COLUMN_LIST} FROM generation_jobs
                WHERE fingerprint = ? AND unit_key = ? AND prompt_version = ?
                """,
                (fingerprint, unit_key, prompt_version),
            ).fetchone()
        return self._to_job(row) if row is not None else None

    def claim_batch(self, *, limit: int, now: datetime, owner: str) -> list[GenerationJob]:
        if limit <= 0:
            return []
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            rows = conn.execute(
                f"""
                UPDATE generation_jobs
                SET status = 'in_progress', locked_at = ?, lock_owner = ?, updated_at = ?
                WHERE status = 'pending' AND id IN (
                    SELECT id FROM generation_jobs
                    WHERE status = 'pending' AND run_after <= ?
                    ORDER BY run_after ASC, created_at ASC
                    LIMIT ?
                )
                RETURNING {_COLUMN_LIST}
                """,
                (now_iso, owner, now_iso, now_iso, int(limit)),
            ).fetchall()
        return sorted((self._to_job(row) for row in rows), key=_claim_order)

    def _guarded_update(self, *, assignments: str, params: tuple[Any, ...], job_id: str, owner: str) -> GenerationJob | None:
        with self._db.transaction() as conn:
            rows = conn.execute(
                f"""
                UPDATE generation_jobs
                SET {assignments}, locked_at = NULL, lock_owner = NULL
                WHERE id = ? AND status = 'in_progress' AND lock_owner = ?
                RETURNING {_COLUMN_LIST}
                """,
                (*params, job_id, owner),
            ).fetchall()
        return self._to_job(rows[0]) if rows else None

    def complete(
        self,
        *,
        job_id: str,
        owner: str,
        content: dict[str, Any],
        generation_time_ms: int,
        now: datetime,
    ) -> GenerationJob | None:
        now_iso = to_iso(now)
        return self._guarded_update(
            assignments=(
                "status = 'ready', content = ?, generation_time_ms = ?, completed_at = ?, "
                "last_error = NULL, updated_at = ?"
            ),
            params=(_dump_content(content), int(generation_time_ms), now_iso, now_iso),
            job_id=job_id,
            owner=owner,
        )

    def schedule_retry(
        self,
        *,
        job_id: str,
        owner: str,
        run_after: datetime,
        error: str,
        now: datetime,
    ) -> GenerationJob | None:
        return self._guarded_update(
            assignments="status = 'pending', attempts = attempts + 1, run_after = ?, last_error = ?, updated_at = ?",
            params=(to_iso(run_after), error, to_iso(now)),
            job_id=job_id,
            owner=owner,
        )

    def fail(self, *, job_id: str, owner: str, error: str, now: datetime) -> GenerationJob | None:
        now_iso = to_iso(now)
        return self._guarded_update(
            assignments="status = 'failed', attempts = attempts + 1, last_error = ?, completed_at = ?, updated_at = ?",
            params=(error, now_iso, now_iso),
            job_id=job_id,
            owner=owner,
        )

    def reclaim_stuck(self, *, locked_before: datetime, now: datetime) -> int:
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                UPDATE generation_jobs
                SET status = 'pending', run_after = ?, locked_at = NULL, lock_owner = NULL, updated_at = ?
                WHERE status = 'in_progress' AND locked_at < ?
                """,
                (now_iso, now_iso, to_iso(locked_before)),
            )
            return int(cur.rowcount)

    def delete_terminal_completed_before(self, *, cutoff: datetime) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM generation_jobs
                WHERE status IN ('ready', 'failed') AND completed_at IS NOT NULL AND completed_at < ?
                """,
                (to_iso(cutoff),),
            )
            return int(cur.rowcount)

    def list_created_between(self, *, start: datetime, end: datetime) -> list[GenerationJob]:
        with self._db.read() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMN_LIST} FROM generation_jobs WHERE created_at >= ? AND created_at <= ?",
                (to_iso(start), to_iso(end)),
            ).fetchall()
        return [self._to_job(row) for row in rows]

    def count_runnable_pending(self, *, now: datetime) -> int:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT COUNT(1) AS cnt FROM generation_jobs WHERE status = 'pending' AND run_after <= ?",
                (to_iso(now),),
            ).fetchone()
        return int(row["cnt"]) if row is not None else 0

    def count_stuck(self, *, locked_before: datetime) -> int:
        with self._db.read() as conn:
            row = conn.execute(
                "SELECT COUNT(1) AS cnt FROM generation_jobs WHERE status = 'in_progress' AND locked_at < ?",
                (to_iso(locked_before),),
            ).fetchone()
        return int(row["cnt"]) if row is not None else 0

    def list_recent_completions(self, *, limit: int) -> list[GenerationJob]:
        with self._db.read() as conn:
            rows = conn.execute(
                f"""
                SELECT {_COLUMN_LIST} FROM generation_jobs
                WHERE status = 'ready' AND completed_at IS NOT NULL
                ORDER BY completed_at DESC
                LIMIT ?
                """,
                (max(0, int(limit)),),
            ).fetchall()
        return [self._to_job(row) for row in rows]

    def count_ready(self, *, fingerprint: str | None = None) -> int:
        sql = "SELECT COUNT(1) AS cnt FROM generation_jobs WHERE status = 'ready'"
        params: tuple[Any, ...] = ()
        if fingerprint is not None:
            sql += " AND fingerprint = ?"
            params = (fingerprint,)
        with self._db.read() as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row["cnt"]) if row is not None else 0


class PostgresGenerationJobsRepository:
    """Jobs repository for the postgres backend; claims use FOR UPDATE SKIP LOCKED."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "generation_jobs") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    @staticmethod
    def _to_job(row: Any) -> GenerationJob:
        return GenerationJob.from_row(dict(zip(JOB_COLUMNS, row)))

    def _fetchone(self, sql: str, params: tuple[Any, ...]) -> GenerationJob | None:
        def _op(conn: Any) -> GenerationJob | None:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return self._to_job(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def _fetchall(self, sql: str, params: tuple[Any, ...]) -> list[GenerationJob]:
        def _op(conn: Any) -> list[GenerationJob]:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            return [self._to_job(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def _rowcount(self, sql: str, params: tuple[Any, ...]) -> int:
        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                return int(cur.rowcount)

        return self._tx_runner.run_in_tx(fn=_op)

    def _count(self, sql: str, params: tuple[Any, ...]) -> int:
        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            return int(row[0]) if row is not None else 0

        return self._tx_runner.run_in_tx(fn=_op)

    def enqueue(
        self,
        *,
        fingerprint: str,
        unit_key: str,
        prompt_version: str,
        unit_content: str,
        now: datetime,
    ) -> tuple[GenerationJob, bool]:
        insert_sql = f"""
            INSERT INTO {self._table_name} (
                id, fingerprint, unit_key, prompt_version, status, attempts, unit_content,
                run_after, created_at, updated_at
            ) VALUES (%s, %s, %s, %s, 'pending', 0, %s, %s, %s, %s)
            ON CONFLICT (fingerprint, unit_key, prompt_version) DO NOTHING
            RETURNING {_COLUMN_LIST}
        """
        select_sql = f"""
            SELECT {_COLUMN_LIST} FROM {self._table_name}
            WHERE fingerprint = %s AND unit_key = %s AND prompt_version = %s
            LIMIT 1
        """

        def _op(conn: Any) -> tuple[GenerationJob, bool]:
            with conn.cursor() as cur:
                cur.execute(
                    insert_sql,
                    (new_job_id(), fingerprint, unit_key, prompt_version, unit_content, now, now, now),
                )
                row = cur.fetchone()
                if row is not None:
                    return self._to_job(row), True
                cur.execute(select_sql, (fingerprint, unit_key, prompt_version))
                existing = cur.fetchone()
            if existing is None:
                raise RuntimeError("generation job vanished after conflicting insert")
            return self._to_job(existing), False

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, job_id: str) -> GenerationJob | None:
        return self._fetchone(
            f"SELECT {_COLUMN_LIST} FROM {self._table_name} WHERE id = %s LIMIT 1",
            (job_id,),
        )

    def find_by_unit(self, *, fingerprint: str, unit_key: str, prompt_version: str) -> GenerationJob | None:
        return self._fetchone(
            f"""
            SELECT {_COLUMN_LIST} FROM {self._table_name}
            WHERE fingerprint = %s AND unit_key = %s AND prompt_version = %s
            LIMIT 1
            """,
            (fingerprint, unit_key, prompt_version),
        )

    def claim_batch(self, *, limit: int, now: datetime, owner: str) -> list[GenerationJob]:
        if limit <= 0:
            return []
        jobs = self._fetchall(
            f"""
            UPDATE {self._table_name}
            SET status = 'in_progress', locked_at = %s, lock_owner = %s, updated_at = %s
            WHERE status = 'pending' AND id IN (
                SELECT id FROM {self._table_name}
                WHERE status = 'pending' AND run_after <= %s
                ORDER BY run_after ASC, created_at ASC
                LIMIT %s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {_COLUMN_LIST}
            """,
            (now, owner, now, now, int(limit)),
        )
        return sorted(jobs, key=_claim_order)

    def _guarded_update(
        self,
        *,
        assignments: str,
        params: tuple[Any, ...],
        job_id: str,
        owner: str,
    ) -> GenerationJob | None:
        return self._fetchone(
            f"""
            UPDATE {self._table_name}
            SET {assignments}, locked_at = NULL, lock_owner = NULL
            WHERE id = %s AND status = 'in_progress' AND lock_owner = %s
            RETURNING {_COLUMN_LIST}
            """,
            (*params, job_id, owner),
        )

    def complete(
        self,
        *,
        job_id: str,
        owner: str,
        content: dict[str, Any],
        generation_time_ms: int,
        now: datetime,
    ) -> GenerationJob | None:
        return self._guarded_update(
            assignments=(
                "status = 'ready', content = %s::jsonb, generation_time_ms = %s, completed_at = %s, "
                "last_error = NULL, updated_at = %s"
            ),
            params=(_dump_content(content), int(generation_time_ms), now, now),
            job_id=job_id,
            owner=owner,
        )

    def schedule_retry(
        self,
        *,
        job_id: str,
        owner: str,
        run_after: datetime,
        error: str,
        now: datetime,
    ) -> GenerationJob | None:
        return self._guarded_update(
            assignments="status = 'pending', attempts = attempts + 1, run_after = %s, last_error = %s, updated_at = %s",
            params=(run_after, error, now),
            job_id=job_id,
            owner=owner,
        )

    def fail(self, *, job_id: str, owner: str, error: str, now: datetime) -> GenerationJob | None:
        return self._guarded_update(
            assignments="status = 'failed', attempts = attempts + 1, last_error = %s, completed_at = %s, updated_at = %s",
            params=(error, now, now),
            job_id=job_id,
            owner=owner,
        )

    def reclaim_stuck(self, *, locked_before: datetime, now: datetime) -> int:
        return self._rowcount(
            f"""
            UPDATE {self._table_name}
            SET status = 'pending', run_after = %s, locked_at = NULL, lock_owner = NULL, updated_at = %s
            WHERE status = 'in_progress' AND locked_at < %s
            """,
            (now, now, as_utc(locked_before)),
        )

    def delete_terminal_completed_before(self, *, cutoff: datetime) -> int:
        return self._rowcount(
            f"""
            DELETE FROM {self._table_name}
            WHERE status IN ('ready', 'failed') AND completed_at IS NOT NULL AND completed_at < %s
            """,
            (as_utc(cutoff),),
        )

    def list_created_between(self, *, start: datetime, end: datetime) -> list[GenerationJob]:
        return self._fetchall(
            f"SELECT {_COLUMN_LIST} FROM {self._table_name} WHERE created_at >= %s AND created_at <= %s",
            (start, end),
        )

    def count_runnable_pending(self, *, now: datetime) -> int:
        return self._count(
            f"SELECT COUNT(1) FROM {self._table_name} WHERE status = 'pending' AND run_after <= %s",
            (now,),
        )

    def count_stuck(self, *, locked_before: datetime) -> int:
        return self._count(
            f"SELECT COUNT(1) FROM {self._table_name} WHERE status = 'in_progress' AND locked_at < %s",
            (locked_before,),
        )

    def list_recent_completions(self, *, limit: int) -> list[GenerationJob]:
        return self._fetchall(
            f"""
            SELECT {_COLUMN_LIST} FROM {self._table_name}
            WHERE status = 'ready' AND completed_at IS NOT NULL
            ORDER BY completed_at DESC
            LIMIT %s
            """,
            (max(0, int(limit)),),
        )

    def count_ready(self, *, fingerprint: str | None = None) -> int:
        if fingerprint is None:
            return self._count(f"SELECT COUNT(1) FROM {self._table_name} WHERE status = 'ready'", ())
        return self._count(
            f"SELECT COUNT(1) FROM {self._table_name} WHERE status = 'ready' AND fingerprint = %s",
            (fingerprint,),
        )
