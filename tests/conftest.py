import json
import pathlib
import sys
from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from sticker_cache.completion import CompletionResult
from sticker_cache.main import create_app
from sticker_cache.store import CacheStore, store

T0 = datetime(2026, 1, 11, 12, 0, 0, tzinfo=UTC)

TEST_ENV = {
    "WORKER_SECRET": "worker_test_secret",
    "CRON_SECRET": "cron_test_secret",
    "ADMIN_SECRET": "admin_test_secret",
    "APP_ENV": "test",
    "MOCK_LLM_ENABLED": "true",
}


def stickers_json(*pairs: tuple[str, str]) -> str:
    items = [{"anchor_text": a, "explanation": e} for a, e in pairs]
    return json.dumps({"stickers": items})


class ScriptedCompletion:
    """Replays queued answers; an Exception instance in the script is raised instead."""

    def __init__(self, script=None, *, default: str | None = None):
        self.script = list(script or [])
        self.default = default if default is not None else stickers_json(("limit", "The value a function approaches."))
        self.calls: list[list[dict[str, str]]] = []

    def complete(self, messages):
        self.calls.append(messages)
        item = self.script.pop(0) if self.script else self.default
        if isinstance(item, Exception):
            raise item
        return CompletionResult(text=item)


@pytest.fixture(autouse=True)
def reset_store():
    store.reset()
    yield


@pytest.fixture
def memory_store() -> CacheStore:
    return CacheStore.in_memory()


@pytest.fixture
def sqlite_store(tmp_path: pathlib.Path) -> CacheStore:
    return CacheStore.sqlite(str(tmp_path / "sticker-cache.sqlite3"))


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, tmp_path: pathlib.Path) -> CacheStore:
    if request.param == "sqlite":
        return CacheStore.sqlite(str(tmp_path / "sticker-cache.sqlite3"))
    return CacheStore.in_memory()


@pytest.fixture
def client(memory_store: CacheStore) -> TestClient:
    app = create_app(store=memory_store, completion=ScriptedCompletion(), environ=TEST_ENV)
    return TestClient(app)
