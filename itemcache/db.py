"""Durable backend bootstrap: engine/session factories and schema creation.

The cache store owns one engine per instance; this module only knows how to
build engines for the supported URLs, label them for logs without leaking
credentials, and create the schema.

URLs:
    sqlite+aiosqlite:///:memory:   one shared in-memory connection (tests)
    sqlite+aiosqlite:///./x.db     file-backed SQLite in WAL mode (default)
    anything else                  passed to SQLAlchemy with its default pool
"""

from __future__ import annotations

import logging

from sqlalchemy import event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import ArgumentError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool, StaticPool

log = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


class Base(DeclarativeBase):
    """Declarative base for the cache tables."""


def url_label(url: str) -> str:
    """Short, credential-free description of a database URL for log lines."""
    try:
        u = make_url(url)
    except ArgumentError:
        return "unparseable-url"
    where = u.database or ""
    if u.host:
        where = f"{u.host}:{u.port}/{where}" if u.port else f"{u.host}/{where}"
    return f"{u.drivername}:{where or '-'}"


def is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and ":memory:" in url


def _install_sqlite_pragmas(eng: AsyncEngine, *, wal: bool) -> None:
    """Set per-connection pragmas (every new DBAPI connection gets them)."""

    @event.listens_for(eng.sync_engine, "connect")
    def _on_connect(dbapi_conn, _conn_record):
        cursor = dbapi_conn.cursor()
        try:
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL")
        finally:
            cursor.close()
        log.debug("db.connect %s wal=%s", url_label(str(eng.url)), wal)


def make_engine(url: str) -> AsyncEngine:
    """Build an async engine with a pool suited to the backend."""
    kwargs: dict = {}
    if is_memory_sqlite(url):
        # every session must see the same in-memory database
        kwargs["poolclass"] = StaticPool
    elif url.startswith("sqlite"):
        kwargs["poolclass"] = NullPool
    else:
        kwargs["pool_pre_ping"] = True

    eng = create_async_engine(url, **kwargs)
    if url.startswith("sqlite"):
        _install_sqlite_pragmas(eng, wal=not is_memory_sqlite(url))

    log.debug(
        "db.engine_created %s pool=%s",
        url_label(url),
        getattr(kwargs.get("poolclass"), "__name__", "default"),
    )
    return eng


def make_sessionmaker(eng: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(eng, expire_on_commit=False, class_=AsyncSession)


async def init_db(eng: AsyncEngine) -> None:
    """Create the cache tables (idempotent) and verify the connection works."""
    from . import models  # noqa: F401 (import registers metadata)

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        await conn.execute(text("SELECT 1"))
