from __future__ import annotations

import threading
from typing import Any

from sticker_cache.db.postgres import PostgresTxRunner, validate_identifier
from sticker_cache.db.sqlite import SqliteDatabase
from sticker_cache.models import StickerVersion, StickerVersionSet, to_iso

_VERSION_COLUMNS = ("sticker_id", "current_version", "v1_content", "v1_created_at", "v2_content", "v2_created_at")
_VERSION_COLUMN_LIST = ", ".join(_VERSION_COLUMNS)


def _slot(target_version: int) -> int:
    if target_version not in (1, 2):
        raise ValueError("target_version must be 1 or 2")
    return int(target_version)


def _row_params(version_set: StickerVersionSet) -> tuple[Any, ...]:
    slots: dict[int, StickerVersion] = {v.version_number: v for v in version_set.versions}
    v1 = slots.get(1)
    v2 = slots.get(2)
    if v1 is None:
        raise ValueError("sticker version set must carry version 1")
    return (
        version_set.sticker_id,
        int(version_set.current_version),
        v1.content,
        v1.created_at,
        v2.content if v2 is not None else None,
        v2.created_at if v2 is not None else None,
    )


class InMemoryStickerVersionsRepository:
    def __init__(self, rows: dict[str, StickerVersionSet], *, lock: threading.RLock | None = None) -> None:
        self._rows = rows
        self._lock = lock or threading.RLock()

    @staticmethod
    def _clone(version_set: StickerVersionSet) -> StickerVersionSet:
        return StickerVersionSet(
            sticker_id=version_set.sticker_id,
            current_version=version_set.current_version,
            versions=[StickerVersion(**v.__dict__) for v in version_set.versions],
        )

    def get(self, *, sticker_id: str) -> StickerVersionSet | None:
        with self._lock:
            row = self._rows.get(sticker_id)
            return self._clone(row) if row is not None else None

    def upsert(self, *, version_set: StickerVersionSet) -> StickerVersionSet:
        _row_params(version_set)
        with self._lock:
            self._rows[version_set.sticker_id] = self._clone(version_set)
        return self._clone(version_set)

    def set_current_version(self, *, sticker_id: str, target_version: int) -> StickerVersionSet | None:
        slot = _slot(target_version)
        with self._lock:
            row = self._rows.get(sticker_id)
            if row is None or not any(v.version_number == slot for v in row.versions):
                return None
            row.current_version = slot
            return self._clone(row)


class SqliteStickerVersionsRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    def get(self, *, sticker_id: str) -> StickerVersionSet | None:
        with self._db.read() as conn:
            row = conn.execute(
                f"SELECT {_VERSION_COLUMN_LIST} FROM sticker_versions WHERE sticker_id = ?",
                (sticker_id,),
            ).fetchone()
        if row is None:
            return None
        return StickerVersionSet.from_row({key: row[key] for key in row.keys()})

    def upsert(self, *, version_set: StickerVersionSet) -> StickerVersionSet:
        params = list(_row_params(version_set))
        params[3] = to_iso(params[3])
        params[5] = to_iso(params[5])
        with self._db.transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO sticker_versions ({_VERSION_COLUMN_LIST})
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (sticker_id) DO UPDATE
                SET current_version = excluded.current_version,
                    v1_content = excluded.v1_content,
                    v1_created_at = excluded.v1_created_at,
                    v2_content = excluded.v2_content,
                    v2_created_at = excluded.v2_created_at
                """,
                tuple(params),
            )
        return version_set

    def set_current_version(self, *, sticker_id: str, target_version: int) -> StickerVersionSet | None:
        slot = _slot(target_version)
        with self._db.transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE sticker_versions SET current_version = ?
                WHERE sticker_id = ? AND v{slot}_content IS NOT NULL
                """,
                (slot, sticker_id),
            )
            if cur.rowcount != 1:
                return None
            row = conn.execute(
                f"SELECT {_VERSION_COLUMN_LIST} FROM sticker_versions WHERE sticker_id = ?",
                (sticker_id,),
            ).fetchone()
        return StickerVersionSet.from_row({key: row[key] for key in row.keys()})


class PostgresStickerVersionsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "sticker_versions") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def get(self, *, sticker_id: str) -> StickerVersionSet | None:
        sql = f"SELECT {_VERSION_COLUMN_LIST} FROM {self._table_name} WHERE sticker_id = %s LIMIT 1"

        def _op(conn: Any) -> StickerVersionSet | None:
            with conn.cursor() as cur:
                cur.execute(sql, (sticker_id,))
                row = cur.fetchone()
            if row is None:
                return None
            return StickerVersionSet.from_row(dict(zip(_VERSION_COLUMNS, row)))

        return self._tx_runner.run_in_tx(fn=_op)

    def upsert(self, *, version_set: StickerVersionSet) -> StickerVersionSet:
        sql = f"""
            INSERT INTO {self._table_name} ({_VERSION_COLUMN_LIST})
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (sticker_id) DO UPDATE
            SET current_version = EXCLUDED.current_version,
                v1_content = EXCLUDED.v1_content,
                v1_created_at = EXCLUDED.v1_created_at,
                v2_content = EXCLUDED.v2_content,
                v2_created_at = EXCLUDED.v2_created_at
        """
        params = _row_params(version_set)

        def _op(conn: Any) -> StickerVersionSet:
            with conn.cursor() as cur:
                cur.execute(sql, params)
            return version_set

        return self._tx_runner.run_in_tx(fn=_op)

    def set_current_version(self, *, sticker_id: str, target_version: int) -> StickerVersionSet | None:
        slot = _slot(target_version)
        sql = f"""
            UPDATE {self._table_name} SET current_version = %s
            WHERE sticker_id = %s AND v{slot}_content IS NOT NULL
            RETURNING {_VERSION_COLUMN_LIST}
        """

        def _op(conn: Any) -> StickerVersionSet | None:
            with conn.cursor() as cur:
                cur.execute(sql, (slot, sticker_id))
                row = cur.fetchone()
            if row is None:
                return None
            return StickerVersionSet.from_row(dict(zip(_VERSION_COLUMNS, row)))

        return self._tx_runner.run_in_tx(fn=_op)
