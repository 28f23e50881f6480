from __future__ import annotations

import logging
import os
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import declarative_base, sessionmaker

from utils import ApiError


Base = declarative_base()

_log = logging.getLogger("tenancy")
_TENANT_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,62}$")


def normalize_tenant_id(tenant_id: Any) -> str:
    tid = str(tenant_id or "").strip().lower()
    if not tid:
        raise ApiError("BAD_REQUEST", "Missing X-Tenant-ID header")
    if not _TENANT_ID_RE.fullmatch(tid):
        raise ApiError("BAD_REQUEST", "Invalid tenant id")
    return tid


def _make_engine(url: str, *, pool_size: int, max_overflow: int) -> Engine:
    if url.startswith("sqlite"):
        path = make_url(url).database or ""
        if path and path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        engine = create_engine(url, future=True, connect_args={"check_same_thread": False})

        # pysqlite defers BEGIN and breaks SAVEPOINT semantics; take over transaction control.
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, _record):
            dbapi_connection.isolation_level = None
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_recycle=1800,
    )


@dataclass
class TenantConnection:
    """One tenant's database: its engine plus a session factory bound to it."""

    tenant_id: str
    engine: Engine
    session_factory: sessionmaker

    def session(self):
        db = self.session_factory()
        db.info["tenant_id"] = self.tenant_id
        return db

    def pool_stats(self) -> dict[str, Any]:
        pool = self.engine.pool
        out: dict[str, Any] = {"class": type(pool).__name__}
        for name in ("size", "checkedin", "checkedout", "overflow"):
            fn = getattr(pool, name, None)
            if callable(fn):
                try:
                    out[name] = fn()
                except Exception:
                    out[name] = None
        return out


class TenantConnectionProvider:
    """
    Resolves a tenant id to its TenantConnection, creating the engine lazily.

    `initializer(engine)` runs once per tenant before the connection is handed out
    (create tables, schema evolution, RBAC seed). Connections are never shared across tenants.
    """

    def __init__(
        self,
        *,
        url_template: str,
        url_overrides: Optional[dict[str, str]] = None,
        allowed_tenants: Optional[list[str]] = None,
        initializer: Optional[Callable[[Engine], None]] = None,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self._url_template = url_template
        self._url_overrides = dict(url_overrides or {})
        self._allowed = {t.lower() for t in (allowed_tenants or [])}
        self._initializer = initializer
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._connections: dict[str, TenantConnection] = {}
        self._lock = threading.RLock()

    def url_for(self, tenant_id: str) -> str:
        tid = normalize_tenant_id(tenant_id)
        if tid in self._url_overrides:
            return self._url_overrides[tid]
        return self._url_template.replace("{tenant}", tid)

    def get_connection(self, tenant_id: Any) -> TenantConnection:
        tid = normalize_tenant_id(tenant_id)
        if self._allowed and tid not in self._allowed:
            raise ApiError("NOT_FOUND", f"Unknown tenant: {tid}")

        conn = self._connections.get(tid)
        if conn is not None:
            return conn

        with self._lock:
            conn = self._connections.get(tid)
            if conn is not None:
                return conn
            engine = _make_engine(self.url_for(tid), pool_size=self._pool_size, max_overflow=self._max_overflow)
            if self._initializer is not None:
                self._initializer(engine)
            conn = TenantConnection(
                tenant_id=tid,
                engine=engine,
                session_factory=sessionmaker(bind=engine, expire_on_commit=False, future=True),
            )
            self._connections[tid] = conn
            _log.info("tenant connection ready tenant=%s", tid)
            return conn

    def known_tenants(self) -> list[str]:
        with self._lock:
            return sorted(self._connections.keys())

    def pool_stats(self) -> dict[str, Any]:
        with self._lock:
            return {tid: c.pool_stats() for tid, c in self._connections.items()}

    def dispose(self) -> None:
        with self._lock:
            for c in self._connections.values():
                c.engine.dispose()
            self._connections.clear()
