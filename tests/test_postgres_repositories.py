from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import T0
from sticker_cache.db.postgres import SCHEMA_STATEMENTS, PostgresTxRunner
from sticker_cache.repositories import (
    PostgresCanonicalDocumentsRepository,
    PostgresFailureLogsRepository,
    PostgresGenerationJobsRepository,
    PostgresLatencySamplesRepository,
    PostgresStickerVersionsRepository,
)
from sticker_cache.repositories.generation_jobs import JOB_COLUMNS

FP = "ab" * 32


def _job_row(**overrides) -> tuple:
    row = {
        "id": "job_pg_1",
        "fingerprint": FP,
        "unit_key": "page-3:en:text_only",
        "prompt_version": "2026-01-11.1",
        "status": "in_progress",
        "attempts": 0,
        "unit_content": "page text",
        "locked_at": T0,
        "lock_owner": "run_a",
        "run_after": T0,
        "content": None,
        "generation_time_ms": None,
        "completed_at": None,
        "last_error": None,
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return tuple(row[column] for column in JOB_COLUMNS)


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self._conn = conn
        self.rowcount = 0
        self._rows: list[tuple] = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, query: str, params=None):
        self._conn.statements.append((" ".join(query.split()), params))
        rows, rowcount = self._conn.responses.pop(0) if self._conn.responses else ([], 0)
        self._rows = list(rows)
        self.rowcount = rowcount

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeConnection:
    def __init__(self, responses):
        self.responses = list(responses)
        self.statements: list[tuple[str, tuple | None]] = []

    def cursor(self):
        return FakeCursor(self)


class FakeRunner:
    def __init__(self, *responses):
        self.conn = FakeConnection(responses)
        self.calls = 0

    def run_in_tx(self, *, fn):
        self.calls += 1
        return fn(self.conn)

    @property
    def statements(self):
        return self.conn.statements


def test_postgres_repositories_reject_invalid_table_name():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresGenerationJobsRepository(tx_runner=FakeRunner(), table_name="jobs;drop table jobs")
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresCanonicalDocumentsRepository(tx_runner=FakeRunner(), refs_table_name="refs x")


def test_tx_runner_requires_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        PostgresTxRunner("   ")


def test_schema_declares_unique_unit_and_status_check():
    ddl = "\n".join(SCHEMA_STATEMENTS)
    assert "UNIQUE (fingerprint, unit_key, prompt_version)" in ddl
    assert "CHECK (status IN ('pending', 'in_progress', 'ready', 'failed'))" in ddl
    assert "PRIMARY KEY (ref_type, ref_id)" in ddl


def test_claim_batch_uses_skip_locked_subselect():
    runner = FakeRunner(([_job_row(id="j2", run_after=T0 + timedelta(seconds=1)), _job_row(id="j1")], 2))
    repo = PostgresGenerationJobsRepository(tx_runner=runner)
    claimed = repo.claim_batch(limit=5, now=T0 + timedelta(minutes=1), owner="run_a")

    assert [job.id for job in claimed] == ["j1", "j2"]
    sql, params = runner.statements[0]
    assert sql.startswith("UPDATE generation_jobs SET status = 'in_progress'")
    assert "FOR UPDATE SKIP LOCKED" in sql
    assert "ORDER BY run_after ASC, created_at ASC" in sql
    assert "WHERE status = 'pending' AND run_after <= %s" in sql
    assert "RETURNING" in sql
    assert params == (T0 + timedelta(minutes=1), "run_a", T0 + timedelta(minutes=1), T0 + timedelta(minutes=1), 5)


def test_claim_batch_with_zero_limit_skips_the_database():
    runner = FakeRunner()
    repo = PostgresGenerationJobsRepository(tx_runner=runner)
    assert repo.claim_batch(limit=0, now=T0, owner="run_a") == []
    assert runner.calls == 0


def test_enqueue_inserts_on_conflict_do_nothing_then_reads_existing():
    existing = _job_row(status="pending", lock_owner=None, locked_at=None)
    runner = FakeRunner(([], 0), ([existing], 1))
    repo = PostgresGenerationJobsRepository(tx_runner=runner)
    job, created = repo.enqueue(
        fingerprint=FP,
        unit_key="page-3:en:text_only",
        prompt_version="2026-01-11.1",
        unit_content="page text",
        now=T0,
    )
    assert created is False
    assert job.id == "job_pg_1"
    insert_sql, _ = runner.statements[0]
    select_sql, select_params = runner.statements[1]
    assert "ON CONFLICT (fingerprint, unit_key, prompt_version) DO NOTHING" in insert_sql
    assert select_sql.startswith("SELECT")
    assert select_params == (FP, "page-3:en:text_only", "2026-01-11.1")


def test_complete_is_guarded_by_status_and_lock_owner():
    runner = FakeRunner(([], 0))
    repo = PostgresGenerationJobsRepository(tx_runner=runner)
    result = repo.complete(
        job_id="job_pg_1",
        owner="run_a",
        content={"stickers": [{"anchor_text": "x", "explanation": "y"}]},
        generation_time_ms=120,
        now=T0,
    )
    assert result is None
    sql, params = runner.statements[0]
    assert "status = 'ready'" in sql
    assert "content = %s::jsonb" in sql
    assert "WHERE id = %s AND status = 'in_progress' AND lock_owner = %s" in sql
    assert params[-2:] == ("job_pg_1", "run_a")
    assert params[0] == '{"stickers": [{"anchor_text": "x", "explanation": "y"}]}'


def test_schedule_retry_increments_attempts_in_sql():
    row = _job_row(status="pending", attempts=1, lock_owner=None, locked_at=None, last_error="timeout")
    runner = FakeRunner(([row], 1))
    repo = PostgresGenerationJobsRepository(tx_runner=runner)
    job = repo.schedule_retry(job_id="job_pg_1", owner="run_a", run_after=T0, error="timeout", now=T0)
    assert job is not None and job.attempts == 1
    sql, _ = runner.statements[0]
    assert "attempts = attempts + 1" in sql
    assert "lock_owner = NULL" in sql


def test_reclaim_and_retention_delete_report_rowcount():
    runner = FakeRunner(([], 3), ([], 2))
    repo = PostgresGenerationJobsRepository(tx_runner=runner)
    assert repo.reclaim_stuck(locked_before=T0 - timedelta(minutes=15), now=T0) == 3
    assert repo.delete_terminal_completed_before(cutoff=T0 - timedelta(days=7)) == 2
    reclaim_sql, _ = runner.statements[0]
    delete_sql, _ = runner.statements[1]
    assert "WHERE status = 'in_progress' AND locked_at < %s" in reclaim_sql
    assert "attempts" not in reclaim_sql
    assert "status IN ('ready', 'failed')" in delete_sql


def test_add_reference_only_bumps_count_for_new_edge():
    runner = FakeRunner(([(FP,)], 1))
    repo = PostgresCanonicalDocumentsRepository(tx_runner=runner)
    assert repo.add_reference(fingerprint=FP, ref_type="file", ref_id="file_1", now=T0) is False
    assert len(runner.statements) == 1
    assert runner.statements[0][0].endswith("WHERE ref_type = %s AND ref_id = %s FOR UPDATE")

    runner = FakeRunner(([], 0), ([], 1), ([], 1))
    repo = PostgresCanonicalDocumentsRepository(tx_runner=runner)
    assert repo.add_reference(fingerprint=FP, ref_type="file", ref_id="file_1", now=T0) is True
    assert "ON CONFLICT (ref_type, ref_id) DO NOTHING" in runner.statements[1][0]
    assert "reference_count = reference_count + 1" in runner.statements[2][0]


def test_add_reference_moves_edge_from_previous_document():
    old_fp = "cd" * 32
    runner = FakeRunner(([(old_fp,)], 1), ([], 1), ([], 1), ([], 1))
    repo = PostgresCanonicalDocumentsRepository(tx_runner=runner)
    assert repo.add_reference(fingerprint=FP, ref_type="file", ref_id="file_1", now=T0) is True
    move, drop, bump = runner.statements[1:]
    assert move == (
        "UPDATE canonical_document_refs SET fingerprint = %s, created_at = %s WHERE ref_type = %s AND ref_id = %s",
        (FP, T0, "file", "file_1"),
    )
    assert "GREATEST(reference_count - 1, 0)" in drop[0]
    assert drop[1] == (old_fp,)
    assert bump[1] == (T0, FP)


def test_remove_reference_never_goes_below_zero():
    runner = FakeRunner(([], 1), ([], 1))
    repo = PostgresCanonicalDocumentsRepository(tx_runner=runner)
    assert repo.remove_reference(fingerprint=FP, ref_type="file", ref_id="file_1") is True
    assert "GREATEST(reference_count - 1, 0)" in runner.statements[1][0]


def test_insert_if_absent_returns_created_row():
    runner = FakeRunner(([(FP, 0, T0, T0, 12)], 1))
    repo = PostgresCanonicalDocumentsRepository(tx_runner=runner)
    doc, created = repo.insert_if_absent(fingerprint=FP, now=T0, total_pages=12)
    assert created is True
    assert doc.total_pages == 12
    assert "ON CONFLICT (fingerprint) DO NOTHING" in runner.statements[0][0]


def test_latency_and_failure_logs_delete_by_timestamp():
    latency_runner = FakeRunner(([], 4))
    failure_runner = FakeRunner(([], 1))
    assert PostgresLatencySamplesRepository(tx_runner=latency_runner).delete_before(cutoff=T0) == 4
    assert PostgresFailureLogsRepository(tx_runner=failure_runner).delete_before(cutoff=T0) == 1
    assert latency_runner.statements[0] == ("DELETE FROM latency_samples WHERE sampled_at < %s", (T0,))
    assert failure_runner.statements[0] == ("DELETE FROM generation_failures WHERE occurred_at < %s", (T0,))


def test_switch_version_is_a_single_pointer_update():
    runner = FakeRunner(([("s1", 1, "v-a", T0, "v-b", T0)], 1))
    repo = PostgresStickerVersionsRepository(tx_runner=runner)
    switched = repo.set_current_version(sticker_id="s1", target_version=1)
    assert switched.current_version == 1
    assert switched.current_content == "v-a"
    assert len(runner.statements) == 1
    sql, params = runner.statements[0]
    assert sql.startswith("UPDATE sticker_versions SET current_version = %s WHERE sticker_id = %s AND v1_content IS NOT NULL")
    assert "v2_content =" not in sql
    assert params == (1, "s1")

    missing = FakeRunner(([], 0))
    assert PostgresStickerVersionsRepository(tx_runner=missing).set_current_version(sticker_id="s1", target_version=2) is None
    with pytest.raises(ValueError):
        repo.set_current_version(sticker_id="s1", target_version=3)
