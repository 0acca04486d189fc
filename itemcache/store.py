"""Tiered cache store: durable SQL tables with an in-process fallback.

`CacheStore` is the single facade callers talk to. It lazily opens the durable
backend exactly once; if that fails (no URL configured, driver missing, file
not writable, ...) the instance switches to its `MemoryStore` for the rest of
its life and never retries. Both backends sit behind `with_table()`, which
hands out either a live `AsyncSession` or `None` for memory mode, so the
read/write code below is written once.

Store failures never escape: every internal operation returns an `Outcome`
and the public methods log the error and degrade to `None`/`False`.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import time
from contextlib import asynccontextmanager, nullcontext, suppress
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, Generic, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from . import db, metrics
from .errors import CacheError, StoreOpFailure, StoreUnavailable
from .models import ENTRY_TABLES, TABLES, MetaRow
from .settings import settings

log = logging.getLogger(__name__)

T = TypeVar("T")

TABLE_NAMES = ("item", "query", "meta")


@dataclass(frozen=True)
class CacheEntry:
    """A cached payload with the instant it was fetched and when it expires."""

    key: str
    data: Any
    fetched_at: float
    expires_at: float

    def is_fresh(self, now: float) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of an internal store operation: a value or the error behind it."""

    value: Optional[T] = None
    error: Optional[CacheError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class MemoryStore:
    """In-process mirror of the `item`, `query` and `meta` tables.

    Values are stored as their JSON round-trip, so callers get back the same
    shapes the durable tables would give them (tuples become lists, dict keys
    become strings) and non-JSON payloads are rejected on both backends.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, Dict[str, Any]] = {name: {} for name in TABLE_NAMES}

    def table(self, name: str) -> Dict[str, Any]:
        return self._tables[name]

    def clear(self, name: str) -> None:
        self._tables[name].clear()

    def counts(self) -> Dict[str, int]:
        return {name: len(rows) for name, rows in self._tables.items()}


def _json_copy(value: Any) -> Any:
    return json.loads(json.dumps(value))


class CacheStore:
    """Facade over the durable tables and the memory fallback.

    Args:
        url: Async SQLAlchemy URL. ``None`` uses ``settings.CACHE_DB_URL``; an
            empty string disables durability up front.
        item_ttl_floor: Minimum TTL (seconds) applied to item puts.
        query_ttl_floor: Minimum TTL (seconds) applied to query puts.
        clock: Returns "now" in epoch seconds; injectable for tests.

    Do not point two stores with different TTL floors at the same database;
    each enforces only its own floors on write.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        item_ttl_floor: Optional[float] = None,
        query_ttl_floor: Optional[float] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.url = settings.CACHE_DB_URL if url is None else url
        self._floors = {
            "item": settings.ITEM_TTL_FLOOR if item_ttl_floor is None else item_ttl_floor,
            "query": settings.QUERY_TTL_FLOOR if query_ttl_floor is None else query_ttl_floor,
        }
        self._default_ttls = {"item": settings.ITEM_TTL, "query": settings.QUERY_TTL}
        self._clock = clock or time.time
        self.memory = MemoryStore()

        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None
        self._disabled = False
        self._open_lock = asyncio.Lock()
        # SQLite allows one writer; keep transactions from interleaving on it
        self._tx_lock = asyncio.Lock() if self.url.startswith("sqlite") else None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def backend(self) -> str:
        """``"durable"`` once the SQL backend is open, ``"memory"`` otherwise."""
        return "durable" if self._sessions is not None else "memory"

    def ttl_floor(self, table: str) -> float:
        return self._floors[table]

    def now(self) -> float:
        return self._clock()

    async def open(self) -> "CacheStore":
        await self._ensure_open()
        return self

    async def close(self) -> None:
        """Dispose the engine. A closed store keeps serving from memory only."""
        self._disabled = True
        self._sessions = None
        eng, self._engine = self._engine, None
        if eng is not None:
            await eng.dispose()
            log.info("store.closed %s", db.url_label(self.url))

    async def __aenter__(self) -> "CacheStore":
        return await self.open()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def _ensure_open(self) -> bool:
        if self._sessions is not None:
            return True
        if self._disabled:
            return False
        async with self._open_lock:
            if self._sessions is not None or self._disabled:
                return self._sessions is not None
            outcome = await self._open_durable()
            if not outcome.ok:
                # Decided once; never retried for this instance
                self._disabled = True
                metrics.observe_backend(False)
                log.warning("store.open_failed fallback=memory error=%s", outcome.error)
                return False
            self._engine, self._sessions = outcome.value
            metrics.observe_backend(True)
            log.info("store.open backend=durable %s", db.url_label(self.url))
            return True

    async def _open_durable(self) -> Outcome[tuple]:
        if not self.url:
            return Outcome(error=StoreUnavailable("no durable backend configured"))
        eng = None
        try:
            eng = db.make_engine(self.url)
            await db.init_db(eng)
        except Exception as exc:
            if eng is not None:
                with suppress(Exception):
                    await eng.dispose()
            return Outcome(error=StoreUnavailable(f"cannot open durable store: {exc!r}"))
        return Outcome((eng, db.make_sessionmaker(eng)))

    @asynccontextmanager
    async def with_table(
        self, name: str, mode: str = "readonly"
    ) -> AsyncIterator[Optional[AsyncSession]]:
        """Yield a session scoped to one transaction, or ``None`` in memory mode.

        ``readwrite`` commits on clean exit and rolls back on error; ``readonly``
        never commits.
        """
        if name not in TABLES:
            raise ValueError(f"unknown table {name!r}")
        if not await self._ensure_open():
            yield None
            return
        async with self._tx_lock or nullcontext():
            async with self._sessions() as session:
                if mode == "readonly":
                    yield session
                else:
                    async with session.begin():
                        yield session

    # ------------------------------------------------------------------
    # Internal operations (Outcome-returning)
    # ------------------------------------------------------------------

    async def _read_entry(self, table: str, key: str) -> Outcome[CacheEntry]:
        try:
            async with self.with_table(table, "readonly") as session:
                if session is None:
                    return Outcome(copy.deepcopy(self.memory.table(table).get(key)))
                row = await session.get(ENTRY_TABLES[table], key)
                if row is None:
                    return Outcome()
                return Outcome(CacheEntry(row.key, row.data, row.fetched_at, row.expires_at))
        except Exception as exc:
            return Outcome(error=StoreOpFailure(table, "get", exc))

    async def _write_entry(
        self, table: str, key: str, data: Any, ttl: Optional[float]
    ) -> Outcome[bool]:
        try:
            ttl = self._default_ttls[table] if ttl is None else float(ttl)
            now = self._clock()
            entry = CacheEntry(key, data, now, now + max(self._floors[table], ttl))
            async with self.with_table(table, "readwrite") as session:
                if session is None:
                    self.memory.table(table)[key] = CacheEntry(
                        key, _json_copy(data), entry.fetched_at, entry.expires_at
                    )
                else:
                    await session.merge(
                        ENTRY_TABLES[table](
                            key=key,
                            data=data,
                            fetched_at=entry.fetched_at,
                            expires_at=entry.expires_at,
                        )
                    )
            return Outcome(True)
        except Exception as exc:
            return Outcome(False, StoreOpFailure(table, "put", exc))

    async def _read_meta(self, key: str) -> Outcome[Any]:
        try:
            async with self.with_table("meta", "readonly") as session:
                if session is None:
                    return Outcome(copy.deepcopy(self.memory.table("meta").get(key)))
                row = await session.get(MetaRow, key)
                return Outcome(row.value if row is not None else None)
        except Exception as exc:
            return Outcome(error=StoreOpFailure("meta", "get", exc))

    async def _write_meta(self, key: str, value: Any) -> Outcome[bool]:
        try:
            async with self.with_table("meta", "readwrite") as session:
                if session is None:
                    self.memory.table("meta")[key] = _json_copy(value)
                else:
                    await session.merge(MetaRow(key=key, value=value))
            return Outcome(True)
        except Exception as exc:
            return Outcome(False, StoreOpFailure("meta", "put", exc))

    async def _clear(self, table: str) -> Outcome[bool]:
        try:
            async with self.with_table(table, "readwrite") as session:
                if session is None:
                    self.memory.clear(table)
                else:
                    await session.execute(delete(TABLES[table]))
            return Outcome(True)
        except Exception as exc:
            return Outcome(False, StoreOpFailure(table, "clear", exc))

    async def _count(self) -> Outcome[Dict[str, int]]:
        try:
            counts: Dict[str, int] = {}
            for name in TABLE_NAMES:
                async with self.with_table(name, "readonly") as session:
                    if session is None:
                        counts[name] = len(self.memory.table(name))
                    else:
                        q = select(func.count()).select_from(TABLES[name])
                        counts[name] = int((await session.execute(q)).scalar_one())
            return Outcome(counts)
        except Exception as exc:
            return Outcome(error=StoreOpFailure("*", "count", exc))

    def _absorb(self, outcome: Outcome, default: Any) -> Any:
        """Boundary: log and discard a store error, returning `default` instead."""
        err = outcome.error
        if err is None:
            return outcome.value
        if isinstance(err, StoreOpFailure):
            metrics.record_store_error(err.table, err.op)
            log.warning("store.op_failed table=%s op=%s error=%r", err.table, err.op, err.cause)
        else:
            log.warning("store.error error=%s", err)
        return default

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def _get(self, table: str, key: Any, allow_stale: bool) -> Any:
        if key is None or key == "":
            return None
        entry = self._absorb(await self._read_entry(table, str(key)), None)
        if entry is None:
            metrics.record_lookup(table, "miss")
            return None
        if entry.is_fresh(self._clock()):
            metrics.record_lookup(table, "hit")
            return entry.data
        if allow_stale:
            metrics.record_lookup(table, "stale")
            return entry.data
        metrics.record_lookup(table, "miss")
        return None

    async def _put(self, table: str, key: Any, data: Any, ttl: Optional[float]) -> bool:
        if key is None or key == "":
            return False
        return bool(self._absorb(await self._write_entry(table, str(key), data, ttl), False))

    async def get_item(self, key: Any, *, allow_stale: bool = False) -> Any:
        """Return cached item data if fresh (or stale with `allow_stale`), else ``None``."""
        return await self._get("item", key, allow_stale)

    async def put_item(self, key: Any, data: Any, *, ttl: Optional[float] = None) -> bool:
        """Store item data for ``max(item_ttl_floor, ttl)`` seconds. Never raises."""
        return await self._put("item", key, data, ttl)

    async def get_query(self, key: Any, *, allow_stale: bool = False) -> Any:
        return await self._get("query", key, allow_stale)

    async def put_query(self, key: Any, data: Any, *, ttl: Optional[float] = None) -> bool:
        return await self._put("query", key, data, ttl)

    async def get_item_entry(self, key: Any) -> Optional[CacheEntry]:
        """Full item entry regardless of freshness."""
        if key is None or key == "":
            return None
        return self._absorb(await self._read_entry("item", str(key)), None)

    async def get_query_entry(self, key: Any) -> Optional[CacheEntry]:
        if key is None or key == "":
            return None
        return self._absorb(await self._read_entry("query", str(key)), None)

    async def meta_get(self, key: str) -> Any:
        if not key:
            return None
        return self._absorb(await self._read_meta(key), None)

    async def meta_read(self, key: str) -> Outcome[Any]:
        """Read a meta value, keeping a failed read apart from an absent key.

        The error is logged and counted like everywhere else, but it is also
        returned in the `Outcome` so callers that must not mistake a broken read
        for "never written" can tell the two apart.
        """
        if not key:
            return Outcome()
        outcome = await self._read_meta(key)
        self._absorb(outcome, None)
        return outcome

    async def meta_put(self, key: str, value: Any) -> bool:
        if not key:
            return False
        return bool(self._absorb(await self._write_meta(key, value), False))

    async def clear(self, table: str) -> bool:
        """Remove every row of one table."""
        if table not in TABLES:
            raise ValueError(f"unknown table {table!r}")
        ok = bool(self._absorb(await self._clear(table), False))
        if ok:
            log.info("store.cleared table=%s backend=%s", table, self.backend)
        return ok

    async def stats(self) -> Dict[str, int]:
        """Entry counts per table (empty dict if the backend cannot be read)."""
        return self._absorb(await self._count(), {})
