#!/usr/bin/env python3
"""
Database Capability
-------------------
 - Thin SQLAlchemy Core wrapper used for both the legacy (MySQL) source and the
   PostgreSQL target
 - query() returns plain dicts; list parameters can be expanded for IN (...) clauses
 - upsert()/insert_ignore() build INSERT ... ON CONFLICT statements against reflected tables
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import MetaData, Table, bindparam, create_engine, text
from sqlalchemy.dialects.postgresql import insert as pg_insert  # PostgreSQL UPSERT
from sqlalchemy.engine import make_url

log = logging.getLogger(__name__)


def mask_url(url: str) -> str:
    """Render a connection URL with the password hidden, for logs."""
    return make_url(url).render_as_string(hide_password=True)


def build_upsert(
    table: Table,
    rows: List[Dict[str, Any]],
    conflict_cols: Sequence[str],
    update_cols: Sequence[str],
    returning: Sequence[str] = (),
):
    """
    INSERT ... ON CONFLICT (conflict_cols) DO UPDATE SET <update_cols>, updated_at = NOW().

    Only the named columns are refreshed on conflict; everything else stays write-once.
    """
    insert_stmt = pg_insert(table).values(rows)

    update_map = {c: getattr(insert_stmt.excluded, c) for c in update_cols}
    if "updated_at" in table.c:
        update_map["updated_at"] = text("NOW()")

    stmt = insert_stmt.on_conflict_do_update(
        index_elements=list(conflict_cols),
        set_=update_map,
    )
    if returning:
        stmt = stmt.returning(*[table.c[c] for c in returning])
    return stmt


def build_insert_ignore(
    table: Table,
    rows: List[Dict[str, Any]],
    conflict_cols: Optional[Sequence[str]] = None,
    returning: Sequence[str] = (),
):
    """INSERT ... ON CONFLICT [(cols)] DO NOTHING."""
    stmt = pg_insert(table).values(rows).on_conflict_do_nothing(
        index_elements=list(conflict_cols) if conflict_cols else None
    )
    if returning:
        stmt = stmt.returning(*[table.c[c] for c in returning])
    return stmt


class Database:
    """
    One engine (connection pool) per side. Every call runs in its own short transaction
    unless the calling thread is inside transaction(), so the object is safe to share
    between batch worker threads.
    """

    def __init__(self, url: str, name: str = "db", echo: bool = False, engine=None):
        self.name = name
        self.url = url
        self.engine = engine or create_engine(url, future=True, pool_pre_ping=True, echo=echo)
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._lock = threading.Lock()
        self._local = threading.local()
        log.info(f"[{name}] engine ready: {mask_url(url)}")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @contextmanager
    def transaction(self):
        """
        Run every call made by this thread inside the block on one connection, committed
        on exit and rolled back if the block raises. Nested blocks join the outer one.
        """
        if getattr(self._local, "conn", None) is not None:
            yield self
            return
        with self.engine.begin() as conn:
            self._local.conn = conn
            try:
                yield self
            finally:
                self._local.conn = None

    @contextmanager
    def _begin(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            yield conn
        else:
            with self.engine.begin() as conn:
                yield conn

    def query(self, sql: str, params: Optional[Dict[str, Any]] = None, expanding: Iterable[str] = ()) -> List[Dict[str, Any]]:
        """Run a SELECT (or a statement with RETURNING) and return rows as dicts."""
        stmt = text(sql)
        expanding = list(expanding)
        if expanding:
            stmt = stmt.bindparams(*[bindparam(name, expanding=True) for name in expanding])
        with self._begin() as conn:
            result = conn.execute(stmt, params or {})
            if not result.returns_rows:
                return []
            return [dict(row) for row in result.mappings().all()]

    def execute(self, sql: str, params: Optional[Dict[str, Any]] = None, expanding: Iterable[str] = ()) -> int:
        """Run a write statement and return the affected row count."""
        stmt = text(sql)
        expanding = list(expanding)
        if expanding:
            stmt = stmt.bindparams(*[bindparam(name, expanding=True) for name in expanding])
        with self._begin() as conn:
            return conn.execute(stmt, params or {}).rowcount

    def table(self, name: str) -> Table:
        """Reflected table, loaded once and cached."""
        with self._lock:
            if name not in self._tables:
                self._tables[name] = Table(name, self._metadata, autoload_with=self.engine)
            return self._tables[name]

    def upsert(
        self,
        table_name: str,
        rows: List[Dict[str, Any]],
        conflict_cols: Sequence[str],
        update_cols: Sequence[str],
        returning: Sequence[str] = (),
    ) -> List[Dict[str, Any]]:
        if not rows:
            return []
        stmt = build_upsert(self.table(table_name), rows, conflict_cols, update_cols, returning)
        with self._begin() as conn:
            result = conn.execute(stmt)
            return [dict(r) for r in result.mappings().all()] if returning else []

    def insert_ignore(
        self,
        table_name: str,
        rows: List[Dict[str, Any]],
        conflict_cols: Optional[Sequence[str]] = None,
        returning: Sequence[str] = (),
    ) -> int:
        """Returns the number of rows actually written (conflicting rows are skipped)."""
        if not rows:
            return 0
        stmt = build_insert_ignore(self.table(table_name), rows, conflict_cols, returning)
        with self._begin() as conn:
            result = conn.execute(stmt)
            if returning:
                return len(result.fetchall())
            return result.rowcount

    def insert(self, table_name: str, rows: List[Dict[str, Any]]) -> int:
        if not rows:
            return 0
        with self._begin() as conn:
            conn.execute(self.table(table_name).insert(), rows)
        return len(rows)

    def ping(self) -> bool:
        self.query("SELECT 1 AS ok")
        return True

    def dispose(self) -> None:
        self.engine.dispose()
        log.info(f"[{self.name}] connections released")
