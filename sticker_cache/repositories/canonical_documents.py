from __future__ import annotations

import threading
from datetime import datetime
from typing import Any

from sticker_cache.db.postgres import PostgresTxRunner, validate_identifier
from sticker_cache.db.sqlite import SqliteDatabase
from sticker_cache.models import CanonicalDocument, to_iso

_DOC_COLUMNS = ("fingerprint", "reference_count", "first_seen_at", "last_reference_at", "total_pages")
_DOC_COLUMN_LIST = ", ".join(_DOC_COLUMNS)


class InMemoryCanonicalDocumentsRepository:
    def __init__(
        self,
        documents: dict[str, CanonicalDocument],
        refs: dict[tuple[str, str], str],
        *,
        lock: threading.RLock | None = None,
    ) -> None:
        self._documents = documents
        self._refs = refs
        self._lock = lock or threading.RLock()

    @staticmethod
    def _clone(doc: CanonicalDocument) -> CanonicalDocument:
        return CanonicalDocument(**doc.__dict__)

    def get(self, *, fingerprint: str) -> CanonicalDocument | None:
        with self._lock:
            doc = self._documents.get(fingerprint)
            return self._clone(doc) if doc is not None else None

    def insert_if_absent(
        self,
        *,
        fingerprint: str,
        now: datetime,
        total_pages: int | None = None,
    ) -> tuple[CanonicalDocument, bool]:
        with self._lock:
            existing = self._documents.get(fingerprint)
            if existing is not None:
                return self._clone(existing), False
            doc = CanonicalDocument(
                fingerprint=fingerprint,
                reference_count=0,
                first_seen_at=now,
                last_reference_at=now,
                total_pages=total_pages,
            )
            self._documents[fingerprint] = doc
            return self._clone(doc), True

    def add_reference(self, *, fingerprint: str, ref_type: str, ref_id: str, now: datetime) -> bool:
        with self._lock:
            doc = self._documents.get(fingerprint)
            if doc is None:
                raise KeyError(fingerprint)
            key = (ref_type, ref_id)
            previous = self._refs.get(key)
            if previous == fingerprint:
                return False
            if previous is not None:
                old_doc = self._documents.get(previous)
                if old_doc is not None:
                    old_doc.reference_count = max(0, old_doc.reference_count - 1)
            self._refs[key] = fingerprint
            doc.reference_count += 1
            doc.last_reference_at = now
            return True

    def remove_reference(self, *, fingerprint: str, ref_type: str, ref_id: str) -> bool:
        with self._lock:
            key = (ref_type, ref_id)
            if self._refs.get(key) != fingerprint:
                return False
            del self._refs[key]
            doc = self._documents.get(fingerprint)
            if doc is not None:
                doc.reference_count = max(0, doc.reference_count - 1)
            return True

    def list_referenced(self) -> list[CanonicalDocument]:
        with self._lock:
            docs = [self._clone(doc) for doc in self._documents.values() if doc.reference_count > 0]
        docs.sort(key=lambda doc: (-doc.reference_count, doc.fingerprint))
        return docs

    def count(self) -> int:
        with self._lock:
            return len(self._documents)


class SqliteCanonicalDocumentsRepository:
    def __init__(self, db: SqliteDatabase) -> None:
        self._db = db

    @staticmethod
    def _to_doc(row: Any) -> CanonicalDocument:
        return CanonicalDocument.from_row({key: row[key] for key in row.keys()})

    def get(self, *, fingerprint: str) -> CanonicalDocument | None:
        with self._db.read() as conn:
            row = conn.execute(
                f"SELECT {_DOC_COLUMN_LIST} FROM canonical_documents WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
        return self._to_doc(row) if row is not None else None

    def insert_if_absent(
        self,
        *,
        fingerprint: str,
        now: datetime,
        total_pages: int | None = None,
    ) -> tuple[CanonicalDocument, bool]:
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO canonical_documents (
                    fingerprint, reference_count, first_seen_at, last_reference_at, total_pages
                ) VALUES (?, 0, ?, ?, ?)
                ON CONFLICT (fingerprint) DO NOTHING
                """,
                (fingerprint, now_iso, now_iso, total_pages),
            )
            created = cur.rowcount == 1
            row = conn.execute(
                f"SELECT {_DOC_COLUMN_LIST} FROM canonical_documents WHERE fingerprint = ?",
                (fingerprint,),
            ).fetchone()
        return self._to_doc(row), created

    def add_reference(self, *, fingerprint: str, ref_type: str, ref_id: str, now: datetime) -> bool:
        now_iso = to_iso(now)
        with self._db.transaction() as conn:
            row = conn.execute(
                "SELECT fingerprint FROM canonical_document_refs WHERE ref_type = ? AND ref_id = ?",
                (ref_type, ref_id),
            ).fetchone()
            if row is not None and row["fingerprint"] == fingerprint:
                return False
            if row is not None:
                conn.execute(
                    """
                    UPDATE canonical_document_refs SET fingerprint = ?, created_at = ?
                    WHERE ref_type = ? AND ref_id = ?
                    """,
                    (fingerprint, now_iso, ref_type, ref_id),
                )
                conn.execute(
                    """
                    UPDATE canonical_documents
                    SET reference_count = MAX(reference_count - 1, 0)
                    WHERE fingerprint = ?
                    """,
                    (row["fingerprint"],),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO canonical_document_refs (fingerprint, ref_type, ref_id, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (fingerprint, ref_type, ref_id, now_iso),
                )
            conn.execute(
                """
                UPDATE canonical_documents
                SET reference_count = reference_count + 1, last_reference_at = ?
                WHERE fingerprint = ?
                """,
                (now_iso, fingerprint),
            )
            return True

    def remove_reference(self, *, fingerprint: str, ref_type: str, ref_id: str) -> bool:
        with self._db.transaction() as conn:
            cur = conn.execute(
                "DELETE FROM canonical_document_refs WHERE ref_type = ? AND ref_id = ? AND fingerprint = ?",
                (ref_type, ref_id, fingerprint),
            )
            if cur.rowcount != 1:
                return False
            conn.execute(
                """
                UPDATE canonical_documents
                SET reference_count = MAX(reference_count - 1, 0)
                WHERE fingerprint = ?
                """,
                (fingerprint,),
            )
            return True

    def list_referenced(self) -> list[CanonicalDocument]:
        with self._db.read() as conn:
            rows = conn.execute(
                f"""
                SELECT {_DOC_COLUMN_LIST} FROM canonical_documents
                WHERE reference_count > 0
                ORDER BY reference_count DESC, fingerprint ASC
                """
            ).fetchall()
        return [self._to_doc(row) for row in rows]

    def count(self) -> int:
        with self._db.read() as conn:
            row = conn.execute("SELECT COUNT(1) AS cnt FROM canonical_documents").fetchone()
        return int(row["cnt"]) if row is not None else 0


class PostgresCanonicalDocumentsRepository:
    def __init__(
        self,
        *,
        tx_runner: PostgresTxRunner,
        table_name: str = "canonical_documents",
        refs_table_name: str = "canonical_document_refs",
    ) -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)
        self._refs_table_name = validate_identifier(refs_table_name)

    @staticmethod
    def _to_doc(row: Any) -> CanonicalDocument:
        return CanonicalDocument.from_row(dict(zip(_DOC_COLUMNS, row)))

    def get(self, *, fingerprint: str) -> CanonicalDocument | None:
        sql = f"SELECT {_DOC_COLUMN_LIST} FROM {self._table_name} WHERE fingerprint = %s LIMIT 1"

        def _op(conn: Any) -> CanonicalDocument | None:
            with conn.cursor() as cur:
                cur.execute(sql, (fingerprint,))
                row = cur.fetchone()
            return self._to_doc(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def insert_if_absent(
        self,
        *,
        fingerprint: str,
        now: datetime,
        total_pages: int | None = None,
    ) -> tuple[CanonicalDocument, bool]:
        insert_sql = f"""
            INSERT INTO {self._table_name} (
                fingerprint, reference_count, first_seen_at, last_reference_at, total_pages
            ) VALUES (%s, 0, %s, %s, %s)
            ON CONFLICT (fingerprint) DO NOTHING
            RETURNING {_DOC_COLUMN_LIST}
        """
        select_sql = f"SELECT {_DOC_COLUMN_LIST} FROM {self._table_name} WHERE fingerprint = %s LIMIT 1"

        def _op(conn: Any) -> tuple[CanonicalDocument, bool]:
            with conn.cursor() as cur:
                cur.execute(insert_sql, (fingerprint, now, now, total_pages))
                row = cur.fetchone()
                if row is not None:
                    return self._to_doc(row), True
                cur.execute(select_sql, (fingerprint,))
                existing = cur.fetchone()
            if existing is None:
                raise RuntimeError("canonical document vanished after conflicting insert")
            return self._to_doc(existing), False

        return self._tx_runner.run_in_tx(fn=_op)

    def add_reference(self, *, fingerprint: str, ref_type: str, ref_id: str, now: datetime) -> bool:
        """Attach (ref_type, ref_id) to this document, moving it off a previous one if needed."""
        current_sql = f"""
            SELECT fingerprint FROM {self._refs_table_name}
            WHERE ref_type = %s AND ref_id = %s
            FOR UPDATE
        """
        edge_sql = f"""
            INSERT INTO {self._refs_table_name} (fingerprint, ref_type, ref_id, created_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (ref_type, ref_id) DO NOTHING
        """
        move_sql = f"""
            UPDATE {self._refs_table_name} SET fingerprint = %s, created_at = %s
            WHERE ref_type = %s AND ref_id = %s
        """
        drop_sql = f"""
            UPDATE {self._table_name}
            SET reference_count = GREATEST(reference_count - 1, 0)
            WHERE fingerprint = %s
        """
        bump_sql = f"""
            UPDATE {self._table_name}
            SET reference_count = reference_count + 1, last_reference_at = %s
            WHERE fingerprint = %s
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(current_sql, (ref_type, ref_id))
                row = cur.fetchone()
                if row is not None and row[0] == fingerprint:
                    return False
                if row is not None:
                    cur.execute(move_sql, (fingerprint, now, ref_type, ref_id))
                    cur.execute(drop_sql, (row[0],))
                else:
                    cur.execute(edge_sql, (fingerprint, ref_type, ref_id, now))
                    if cur.rowcount != 1:
                        return False
                cur.execute(bump_sql, (now, fingerprint))
            return True

        return self._tx_runner.run_in_tx(fn=_op)

    def remove_reference(self, *, fingerprint: str, ref_type: str, ref_id: str) -> bool:
        edge_sql = f"""
            DELETE FROM {self._refs_table_name}
            WHERE ref_type = %s AND ref_id = %s AND fingerprint = %s
        """
        drop_sql = f"""
            UPDATE {self._table_name}
            SET reference_count = GREATEST(reference_count - 1, 0)
            WHERE fingerprint = %s
        """

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(edge_sql, (ref_type, ref_id, fingerprint))
                if cur.rowcount != 1:
                    return False
                cur.execute(drop_sql, (fingerprint,))
            return True

        return self._tx_runner.run_in_tx(fn=_op)

    def list_referenced(self) -> list[CanonicalDocument]:
        sql = f"""
            SELECT {_DOC_COLUMN_LIST} FROM {self._table_name}
            WHERE reference_count > 0
            ORDER BY reference_count DESC, fingerprint ASC
        """

        def _op(conn: Any) -> list[CanonicalDocument]:
            with conn.cursor() as cur:
                cur.execute(sql)
                rows = cur.fetchall() or []
            return [self._to_doc(row) for row in rows]

        return self._tx_runner.run_in_tx(fn=_op)

    def count(self) -> int:
        sql = f"SELECT COUNT(1) FROM {self._table_name}"

        def _op(conn: Any) -> int:
            with conn.cursor() as cur:
                cur.execute(sql)
                row = cur.fetchone()
            return int(row[0]) if row is not None else 0

        return self._tx_runner.run_in_tx(fn=_op)
