from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from sticker_cache.db.postgres import PostgresTxRunner, validate_identifier
from sticker_cache.db.sqlite import SqliteDatabase
from sticker_cache.models import LatencySample, to_iso

_SAMPLE_COLUMNS = ("latency_ms", "cache_hit", "sampled_at", "fingerprint", "unit_key")
_SAMPLE_COLUMN_LIST = ", ".join(_SAMPLE_COLUMNS)


class InMemoryLatencySamplesRepository:
    def __init__(self, samples: list[LatencySample], *, lock: threading.RLock | None = None) -> None:
        self._samples = samples
        self._lock = lock or threading.RLock()

    def append(self, *, sample: LatencySample) -> LatencySample:
        with self._lock:
            self._samples.append(sample)
        return sample

    def list_between(self, *, start: datetime, end: datetime) -> list[LatencySample]:
        with self._lock:
            return [s for s in self._samples if start <= s.sampled_at <= end]

    def delete_before(self, *, cutoff: datetime) -> int:
        with self._lock:
            kept = [s for s in self._samples if s.sampled_at >= cutoff]
            deleted = len(self._samples) - len(kept)
            self._samples[:] = kept
            return deleted


class SqliteLatencySamplesRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def append(self, *, sample: LatencySample) -> LatencySample:
        with self._db.transaction() as conn:
            conn.execute(
                f"INSERT INTO latency_samples ({_SAMPLE_COLUMN_LIST}) VALUES (?, ?, ?, ?, ?)",
                (
                    int(sample.latency_ms),
                    1 if sample.cache_hit else 0,
                    to_iso(sample.sampled_at),
                    sample.fingerprint,
                    sample.unit_key,
                ),
            )
        return sample

    def list_between(self, *, start: datetime, end: datetime) -> list[LatencySample]:
        with self._db.read() as conn:
            rows = conn.execute(
                f"""
                SELECT {_SAMPLE_COLUMN_LIST} FROM latency_samples
                WHERE sampled_at >= ? AND sampled_at <= ?
                ORDER BY sampled_at ASC
                """,
                (to_iso(start), to_iso(end)),
            ).fetchall()
        return [LatencySample.from_row({key: row[key] for key in row.keys()}) for row in rows]

    def delete_before(self, *, cutoff: datetime) -> int:
        with self._db.transaction() as conn:
            cur = conn.execute("DELETE FROM latency_samples WHERE sampled_at < ?", (to_iso(cutoff),))
            return int(cur.rowcount)


class PostgresLatencySamplesRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "latency_samples") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def append(self, *, sample: LatencySample) -> LatencySample:
        sql = f"""
            INSERT INTO {self._table_name} ({_SAMPLE_COLUMN_LIST})
            VALUES (%s, %s, %s, %s, %s)
        """

        def _op(conn: Any) -> LatencySample:
            with conn.cursor() as cur:
                cur.execute(
                    sql,
                    (
                        int(sample.latency_ms),
                        bool(sample.cache_hit),
                        sample.sampled_at,
                        sample.fingerprint,
                        sample.unit_key,
                    ),
                )
            return sample

        return self._tx_runner.run_in_tx(fn=_op)

    def list_between(self, *, start: datetime, end: datetime) -> list[LatencySample]:
        sql = f"""
            SELECT {_SAMPLE_COLUMN_LIST} FROM {self._table_name}
            WHERE sampled_at >= %s AND sampled_at <= %s
            ORDER BY sampled_at ASC
        """

        def _op(conn: Any) -> list[LatencySample]:
            with conn.cursor() as cur:
                cur.execute(sql, (start, end))
                rows = cur.fetchall() or []
            return [LatencySample.from_row(dict(zip(_SAMPLE_COLUMNS, row))) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def delete_before(self, *, cutoff: datetime) -> int:
        sql = f"DELETE FROM {self._table_name} WHERE sampled_at < %s"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql, (cutoff,))
                return int(cur.rowcount)

        return self._tx_runner.run_in_tx(fn=_op)
