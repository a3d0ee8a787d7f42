from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from sticker_cache.db.postgres import PostgresTxRunner, validate_identifier
from sticker_cache.db.sqlite import SqliteDatabase
from sticker_cache.models import FailureLog, to_iso

_FAILURE_COLUMNS = (
    "id",
    "job_id",
    "fingerprint",
    "unit_key",
    "attempt",
    "error_class",
    "error_message",
    "occurred_at",
)
_FAILURE_COLUMN_LIST = ", ".join(_FAILURE_COLUMNS)


class InMemoryFailureLogsRepository:
    def __init__(self, entries: list[FailureLog], *, lock: threading.RLock | None = None) -> None:
        self._entries = entries
        self._lock = lock or threading.RLock()

    def append(self, *, entry: FailureLog) -> FailureLog:
        with self._lock:
            self._entries.append(entry)
        return entry

    def list_for_job(self, *, job_id: str) -> list[FailureLog]:
        with self._lock:
            rows = [e for e in self._entries if e.job_id == job_id]
        rows.sort(key=lambda e: (e.attempt, e.occurred_at))
        return rows

    def delete_before(self, *, cutoff: datetime) -> int:
        with self._lock:
            kept = [e for e in self._entries if e.occurred_at >= cutoff]
            deleted = len(self._entries) - len(kept)
            self._entries[:] = kept
            return deleted


class SqliteFailureLogsRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def append(self, *, entry: FailureLog) -> FailureLog:
        with self._db.transaction() as conn:
            conn.execute(
                f"INSERT INTO generation_failures ({_FAILURE_COLUMN_LIST}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.job_id,
                    entry.fingerprint,
                    entry.unit_key,
                    int(entry.attempt),
                    entry.error_class,
                    entry.error_message,
                    to_iso(entry.occurred_at),
                ),
            )
        return entry

    def list_for_job(self, *, job_id: str) -> list[FailureLog]:
        with self._db.read() as conn:
            rows = conn.execute(
                f"""
                SELECT {_FAILURE_COLUMN_LIST} FROM generation_failures
                WHERE job_id = ?
                ORDER BY attempt ASC, occurred_at ASC
                """,
                (job_id,),
            ).fetchall()
        return [FailureLog.from_row({key: row[key] for key in row.keys()}) for row in rows]

    def delete_before(self, *, cutoff: datetime) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM generation_failures WHERE occurred_at < ?", (to_iso(cutoff),))
            return int(cur.rowcount)


class PostgresFailureLogsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "generation_failures") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def append(self, *, entry: FailureLog) -> FailureLog:
        sql = f"""
            INSERT INTO {self._table_name} ({_FAILURE_COLUMN_LIST})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
        """

        def _op(conn: Any) -> FailureLog:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        entry.id,
                        entry.job_id,
                        entry.fingerprint,
                        entry.unit_key,
                        int(entry.attempt),
                        entry.error_class,
                        entry.error_message,
                        entry.occurred_at,
                    ),
                )
            return entry

        return self._tx_runner.run_in_tx(fn=_op)

    def list_for_job(self, *, job_id: str) -> list[FailureLog]:
        sql = f"""
            SELECT {_FAILURE_COLUMN_LIST} FROM {self._table_name}
            WHERE job_id = %s
            ORDER BY attempt ASC, occurred_at ASC
        """

        def _op(conn: Any) -> list[FailureLog]:
            with conn.cursor() as cur:
                cur.execute(sql, (job_id,))
                rows = cur.fetchall() or []
            return [FailureLog.from_row(dict(zip(_FAILURE_COLUMNS, row))) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def delete_before(self, *, cutoff: datetime) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE occurred_at < %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (cutoff,))
                return int(cur.rowcount)

        return self._tx_runner.run_in_tx(fn=_op)
