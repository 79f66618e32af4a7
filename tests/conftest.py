import json
import sys
import threading
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    original = db.DB_PATH
    db.configure(str(db_path))
    db.init()
    yield str(db_path)
    db.configure(original)


class ScriptedBackend:
    """Completion backend that replays a script.

    Each entry is a raw string, an exception instance to raise, or a dict
    that is JSON-encoded. Once the script runs out, ``default`` is used; when
    ``default`` is None the offline backend answers instead.
    """

    def __init__(self, script=None, default=None, delay: float = 0.0):
        self.script = list(script or [])
        self.default = default
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def complete(self, prompt, params):
        from llm_backend import OfflineCompletionBackend

        with self._lock:
            self.calls.append({"prompt": prompt, "params": dict(params)})
            entry = self.script.pop(0) if self.script else self.default
        if self.delay:
            time.sleep(self.delay)
        if entry is None:
            return OfflineCompletionBackend().complete(prompt, params)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, dict):
            return json.dumps(entry)
        return entry


class FakeStore:
    def __init__(self, results=None, delay: float = 0.0, error: Exception | None = None):
        self.results = list(results or [])
        self.delay = delay
        self.error = error
        self.calls = []
        self.timeouts = []

    def similarity_search(self, query_text, filters, k, *, timeout=None):
        self.calls.append((query_text, dict(filters), k))
        self.timeouts.append(timeout)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.results)[:k]


@pytest.fixture
def test_config():
    from config import OrchestratorConfig

    return OrchestratorConfig(backoff_base_ms=0, backoff_max_ms=0, per_stage_timeout_ms=2_000)


@pytest.fixture
def make_controller(test_config):
    from engines.routing import build_controller
    from item_bank import FallbackTemplateBank

    def _factory(backend=None, *, store=None, config=None, persist=None, advisor=None):
        return build_controller(
            config or test_config,
            backend=backend or ScriptedBackend(),
            store=store,
            advisor=advisor,
            fallback_bank=FallbackTemplateBank(),
            persist=persist,
        )

    return _factory
