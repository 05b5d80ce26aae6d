# tests/conftest.py
# ------------------------------------------------------------
# Purpose: Shared fixtures for unit tests. Stages talk to the
# databases only through query/execute/upsert/insert, so a small
# in-memory fake that routes SQL by substring is enough to drive
# them without MySQL or PostgreSQL.
# ------------------------------------------------------------

import threading
from contextlib import contextmanager

import pytest

from config.config_loader import _apply_defaults


class FakeDatabase:
    """
    routes: list of (substring, rows) pairs; the first substring found in the SQL wins.
    rows may be a list of dicts or a callable taking the bound params.
    Every write is recorded so tests can assert on what a stage wrote.
    failures: table name (or "execute") -> how many times that write raises ConnectionError
    before it starts succeeding. Writes made inside transaction() are only recorded once
    the block exits cleanly.
    """

    def __init__(self, name="fake", routes=None, execute_rowcount=1, failures=None):
        self.name = name
        self.routes = list(routes or [])
        self.execute_rowcount = execute_rowcount
        self.failures = dict(failures or {})
        self.queries = []
        self.executed = []
        self.upserts = []
        self.inserts = []
        self.rollbacks = 0
        self.disposed = False
        self._lock = threading.Lock()
        self._tx = threading.local()

    def route(self, needle, rows):
        self.routes.append((needle, rows))

    @contextmanager
    def transaction(self):
        if getattr(self._tx, "pending", None) is not None:
            yield self
            return
        self._tx.pending = []
        try:
            yield self
        except Exception:
            with self._lock:
                self.rollbacks += 1
            raise
        else:
            with self._lock:
                for kind, entry in self._tx.pending:
                    getattr(self, kind).append(entry)
        finally:
            self._tx.pending = None

    def _record(self, kind, entry):
        pending = getattr(self._tx, "pending", None)
        with self._lock:
            if pending is not None:
                pending.append((kind, entry))
            else:
                getattr(self, kind).append(entry)

    def _maybe_fail(self, key):
        with self._lock:
            if self.failures.get(key, 0) > 0:
                self.failures[key] -= 1
                raise ConnectionError(f"{key}: connection reset by peer")

    def query(self, sql, params=None, expanding=()):
        with self._lock:
            self.queries.append((sql, params))
        for needle, rows in self.routes:
            if needle in sql:
                result = rows(params or {}) if callable(rows) else rows
                return [dict(r) for r in result]
        return []

    def execute(self, sql, params=None, expanding=()):
        self._maybe_fail("execute")
        self._record("executed", (sql, params))
        return self.execute_rowcount

    def upsert(self, table_name, rows, conflict_cols, update_cols, returning=()):
        self._maybe_fail(table_name)
        self._record("upserts", {"table": table_name, "rows": list(rows), "conflict": list(conflict_cols)})
        if returning:
            return [{c: r.get(c) for c in returning} for r in rows]
        return []

    def insert_ignore(self, table_name, rows, conflict_cols=None, returning=()):
        self._maybe_fail(table_name)
        self._record("inserts", {"table": table_name, "rows": list(rows), "ignore": True})
        return len(rows)

    def insert(self, table_name, rows):
        self._maybe_fail(table_name)
        self._record("inserts", {"table": table_name, "rows": list(rows), "ignore": False})
        return len(rows)

    def ping(self):
        return True

    def dispose(self):
        self.disposed = True

    # ---- assertion helpers ----
    def written(self, table_name):
        """Every row inserted or upserted into table_name, in call order."""
        out = []
        for call in self.inserts + self.upserts:
            if call["table"] == table_name:
                out.extend(call["rows"])
        return out


class FakeTranslator:
    """Upper-cases text; `failing` is a set of source strings that come back empty."""

    def __init__(self, failing=()):
        self.calls = []
        self.failing = set(failing)
        self._lock = threading.Lock()

    def translate(self, text, source, target):
        with self._lock:
            self.calls.append((text, source, target))
        if text in self.failing:
            return ""
        return text.upper()


@pytest.fixture
def cfg():
    """A fully defaulted config dict; fast retries so failing batches don't slow the suite."""
    raw = {
        "environment": "test",
        "log_level": "WARNING",
        "databases": {
            "source": {"url": "mysql://u:p@localhost/magento", "type": "mysql"},
            "target": {"url": "postgresql://u:p@localhost/shop", "type": "postgresql"},
        },
        "translator": {"region": "eu-west-1", "max_concurrent_requests": 5, "pause_between_chunks_ms": 0},
        "processing": {"retry_attempts": 1, "retry_delay_ms": 0, "timeout_ms": 0},
        "media": {
            "cdn_base_url": "https://cdn.example.com/media/catalog/product",
            "provider_image_base_url": "https://cdn.example.com/file-manager/stream",
        },
    }
    return _apply_defaults(raw)


@pytest.fixture
def fake_db():
    return FakeDatabase


@pytest.fixture
def translator():
    return FakeTranslator()
