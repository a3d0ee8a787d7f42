from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from sticker_cache.db.postgres import PostgresTxRunner
from sticker_cache.db.sqlite import SqliteDatabase
from sticker_cache.models import CanonicalDocument, FailureLog, GenerationJob, LatencySample, StickerVersionSet
from sticker_cache.repositories import (
    InMemoryCanonicalDocumentsRepository,
    InMemoryFailureLogsRepository,
    InMemoryGenerationJobsRepository,
    InMemoryLatencySamplesRepository,
    InMemoryStickerVersionsRepository,
    PostgresCanonicalDocumentsRepository,
    PostgresFailureLogsRepository,
    PostgresGenerationJobsRepository,
    PostgresLatencySamplesRepository,
    PostgresStickerVersionsRepository,
    SqliteCanonicalDocumentsRepository,
    SqliteFailureLogsRepository,
    SqliteGenerationJobsRepository,
    SqliteLatencySamplesRepository,
    SqliteStickerVersionsRepository,
)
from sticker_cache.runtime_profile import true_stack_required


@dataclass
class CacheStore:
    """Bundle of the repositories one backend provides.

    Services take the store instead of individual repositories so that a
    worker run, the sweeper and the metrics endpoint always see the same
    backend.
    """

    backend: str
    documents: Any
    jobs: Any
    latency: Any
    failures: Any
    versions: Any
    _reset_hook: Any = None

    @classmethod
    def in_memory(cls) -> "CacheStore":
        lock = threading.RLock()
        documents: dict[str, CanonicalDocument] = {}
        refs: dict[tuple[str, str], str] = {}
        jobs: dict[str, GenerationJob] = {}
        samples: list[LatencySample] = []
        failures: list[FailureLog] = []
        versions: dict[str, StickerVersionSet] = {}

        def _reset() -> None:
            with lock:
                documents.clear()
                refs.clear()
                jobs.clear()
                samples.clear()
                failures.clear()
                versions.clear()

        return cls(
            backend="memory",
            documents=InMemoryCanonicalDocumentsRepository(documents, refs, lock=lock),
            jobs=InMemoryGenerationJobsRepository(jobs, lock=lock),
            latency=InMemoryLatencySamplesRepository(samples, lock=lock),
            failures=InMemoryFailureLogsRepository(failures, lock=lock),
            versions=InMemoryStickerVersionsRepository(versions, lock=lock),
            _reset_hook=_reset,
        )

    @classmethod
    def sqlite(cls, db_path: str) -> "CacheStore":
        db = SqliteDatabase(db_path)
        return cls(
            backend="sqlite",
            documents=SqliteCanonicalDocumentsRepository(db),
            jobs=SqliteGenerationJobsRepository(db),
            latency=SqliteLatencySamplesRepository(db),
            failures=SqliteFailureLogsRepository(db),
            versions=SqliteStickerVersionsRepository(db),
            _reset_hook=db.reset,
        )

    @classmethod
    def postgres(cls, dsn: str, *, ensure_schema: bool = True) -> "CacheStore":
        tx_runner = PostgresTxRunner(dsn)
        if ensure_schema:
            tx_runner.ensure_schema()
        return cls(
            backend="postgres",
            documents=PostgresCanonicalDocumentsRepository(tx_runner=tx_runner),
            jobs=PostgresGenerationJobsRepository(tx_runner=tx_runner),
            latency=PostgresLatencySamplesRepository(tx_runner=tx_runner),
            failures=PostgresFailureLogsRepository(tx_runner=tx_runner),
            versions=PostgresStickerVersionsRepository(tx_runner=tx_runner),
        )

    def reset(self) -> None:
        if self._reset_hook is None:
            raise RuntimeError(f"reset is not supported for the {self.backend} backend")
        self._reset_hook()


def create_store_from_env(environ: Mapping[str, str] | None = None) -> CacheStore:
    env = os.environ if environ is None else environ
    backend = env.get("STICKER_STORE_BACKEND", "memory").strip().lower()
    if true_stack_required(env) and backend != "postgres":
        raise RuntimeError("STICKER_STORE_BACKEND must be postgres when STICKER_REQUIRE_TRUESTACK=true")
    if backend == "sqlite":
        db_path = env.get("STICKER_STORE_SQLITE_PATH", ".local/sticker-cache.sqlite3")
        return CacheStore.sqlite(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when STICKER_STORE_BACKEND=postgres")
        return CacheStore.postgres(dsn)
    return CacheStore.in_memory()


store = create_store_from_env()
