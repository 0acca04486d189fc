"""Cached record fetching: single-flight per key, bulk-then-individual for lists.

`SingleFlightFetcher` guarantees at most one in-flight remote call per key:
concurrent callers for the same key await the same task and see the same
result or exception. `BatchFetchOrchestrator` answers a list of keys from the
cache, bulk-fetches the misses in chunks, and resolves whatever is left through
the single-flight path with a bounded pool of workers.
"""

from __future__ import annotations

import asyncio
import logging
from collections import abc
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from . import metrics
from .errors import FetchCancelled
from .settings import settings
from .store import CacheStore

log = logging.getLogger(__name__)

FetchOne = Callable[[Any], Awaitable[Any]]
FetchMany = Callable[[List[Any]], Awaitable[Optional[Sequence[Any]]]]

MIN_BATCH_SIZE = 10
MAX_BATCH_SIZE = 200


def record_id(record: Any) -> Any:
    """Identity of a remote record (``Id`` or ``id``), or ``None``."""
    if isinstance(record, dict):
        return record.get("Id") or record.get("id")
    return getattr(record, "Id", None) or getattr(record, "id", None)


def clamp_batch_size(size: Any) -> int:
    try:
        size = int(size or 0)
    except (TypeError, ValueError):
        size = 0
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, size or settings.BATCH_SIZE))


async def map_limit(
    items: Sequence[Any], limit: int, mapper: Callable[[Any], Awaitable[Any]]
) -> List[Any]:
    """Run `mapper` over `items` with at most `limit` calls in flight.

    Each worker pulls the next unclaimed index until none remain. A mapper
    failure leaves ``None`` in that slot.
    """
    out: List[Any] = [None] * len(items)
    cursor = iter(range(len(items)))

    async def worker() -> None:
        for i in cursor:
            try:
                out[i] = await mapper(items[i])
            except Exception as exc:
                log.debug("fetch.worker_failed item=%r error=%r", items[i], exc)
                out[i] = None

    n = max(1, min(int(limit or 1), len(items)))
    await asyncio.gather(*(worker() for _ in range(n)))
    return out


class SingleFlightFetcher:
    """Cache-first resolver for one key at a time with request coalescing."""

    def __init__(
        self,
        store: CacheStore,
        fetch_one: FetchOne,
        *,
        ttl: Optional[float] = None,
        allow_stale_on_error: bool = True,
    ) -> None:
        self.store = store
        self.fetch_one = fetch_one
        self.ttl = settings.ITEM_TTL if ttl is None else ttl
        self.allow_stale_on_error = allow_stale_on_error
        self._inflight: Dict[str, asyncio.Task] = {}

    def in_flight(self) -> int:
        """Number of keys with a remote fetch currently running."""
        return len(self._inflight)

    def cancel(self, key: Any) -> bool:
        """Cancel the in-flight fetch for `key`; waiting callers get `FetchCancelled`."""
        task = self._inflight.get(str(key))
        if task is None or task.done():
            return False
        return task.cancel()

    async def resolve(self, key: Any) -> Any:
        """Return the record for `key` from cache, a shared fetch, or stale data.

        Raises whatever `fetch_one` raised when no stale value may be served.
        """
        if key is None or key == "":
            return None
        k = str(key)

        fresh = await self.store.get_item(k)
        if fresh is not None:
            return fresh

        # No await between lookup and registration: the check-and-set is atomic
        task = self._inflight.get(k)
        if task is not None:
            metrics.record_coalesced()
        else:
            task = asyncio.ensure_future(self._fetch(key, k))
            self._inflight[k] = task
            task.add_done_callback(lambda t, k=k: self._forget(k, t))

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise FetchCancelled(k) from None
            raise

    def _forget(self, k: str, task: asyncio.Task) -> None:
        if self._inflight.get(k) is task:
            del self._inflight[k]
        if not task.cancelled():
            # mark retrieved; callers may all have gone away
            task.exception()

    async def _fetch(self, key: Any, k: str) -> Any:
        stale = None
        if self.allow_stale_on_error:
            stale = await self.store.get_item(k, allow_stale=True)

        try:
            data = await self.fetch_one(key)
        except Exception as exc:
            metrics.record_remote_fetch("one", "error")
            if self.allow_stale_on_error and stale is not None:
                log.info("fetch.one served_stale key=%s error=%r", k, exc)
                return stale
            log.warning("fetch.one failed key=%s error=%r", k, exc)
            raise

        if data:
            metrics.record_remote_fetch("one", "ok")
            await self.store.put_item(k, data, ttl=self.ttl)
            return data
        metrics.record_remote_fetch("one", "empty")
        return stale


class BatchFetchOrchestrator:
    """Resolve many keys: cache, then chunked bulk fetch, then per-key fallback."""

    def __init__(
        self,
        store: CacheStore,
        single: SingleFlightFetcher,
        *,
        fetch_many: Optional[FetchMany] = None,
        batch_size: Optional[int] = None,
        max_concurrent: Optional[int] = None,
        ttl: Optional[float] = None,
        get_id: Callable[[Any], Any] = record_id,
    ) -> None:
        self.store = store
        self.single = single
        self.fetch_many = fetch_many
        self.batch_size = clamp_batch_size(batch_size)
        self.max_concurrent = max(1, max_concurrent or settings.MAX_CONCURRENT)
        self.ttl = single.ttl if ttl is None else ttl
        self.get_id = get_id

    async def resolve_many(self, keys: Sequence[Any]) -> List[Any]:
        """Return records aligned with `keys` (duplicates and order kept).

        Positions that could not be resolved are ``None``; only invalid input
        raises.
        """
        if isinstance(keys, (str, bytes)) or not isinstance(keys, abc.Sequence):
            raise TypeError(f"keys must be a sequence of ids, got {type(keys).__name__}")
        if not keys:
            return []

        out: List[Any] = [None] * len(keys)
        missing: List[str] = []
        seen = set()
        for i, key in enumerate(keys):
            if key is None or key == "":
                continue
            hit = await self.store.get_item(key)
            if hit is not None:
                out[i] = hit
            elif str(key) not in seen:
                seen.add(str(key))
                missing.append(str(key))

        if missing and self.fetch_many is not None:
            await self._bulk_fill(missing)
            for i, key in enumerate(keys):
                if out[i] is None and key is not None and key != "":
                    out[i] = await self.store.get_item(key)

        remaining = [i for i, key in enumerate(keys) if out[i] is None and key not in (None, "")]
        if remaining:
            log.debug("fetch.many individual=%d concurrency=%d", len(remaining), self.max_concurrent)
            results = await map_limit(
                remaining, self.max_concurrent, lambda i: self.single.resolve(keys[i])
            )
            for i, value in zip(remaining, results):
                out[i] = value
        return out

    async def _bulk_fill(self, missing: List[str]) -> None:
        """Bulk-fetch `missing` in chunks; the first failing chunk stops the rest."""
        for start in range(0, len(missing), self.batch_size):
            chunk = missing[start : start + self.batch_size]
            try:
                records = await self.fetch_many(chunk)
            except Exception as exc:
                metrics.record_remote_fetch("many", "error")
                log.warning(
                    "fetch.many chunk_failed start=%d size=%d error=%r; falling back to single",
                    start,
                    len(chunk),
                    exc,
                )
                return
            metrics.record_remote_fetch("many", "ok")
            for record in records or []:
                rid = self.get_id(record)
                if rid:
                    await self.store.put_item(rid, record, ttl=self.ttl)


class CachedItemFetcher:
    """Callable front for item lookups: ``await f(id)`` and ``await f.many(ids)``."""

    def __init__(self, single: SingleFlightFetcher, batch: BatchFetchOrchestrator) -> None:
        self.single = single
        self.batch = batch

    async def __call__(self, key: Any) -> Any:
        return await self.single.resolve(key)

    async def many(self, keys: Sequence[Any]) -> List[Any]:
        return await self.batch.resolve_many(keys)

    def cancel(self, key: Any) -> bool:
        return self.single.cancel(key)


def create_cached_item_details_fetcher(
    store: CacheStore,
    *,
    fetch_one: FetchOne,
    fetch_many: Optional[FetchMany] = None,
    batch_size: Optional[int] = None,
    ttl: Optional[float] = None,
    allow_stale_on_error: Optional[bool] = None,
    max_concurrent: Optional[int] = None,
) -> CachedItemFetcher:
    """Wire a single-flight fetcher and a batch orchestrator over `store`.

    Args:
        store: Cache facade to read from and populate.
        fetch_one: ``async (id) -> record | None``; falsy means not found.
        fetch_many: Optional ``async (ids) -> [record, ...]``; records carry
            their own ``Id``/``id``.
        batch_size: Keys per bulk call, clamped to [10, 200].
        ttl: Item TTL in seconds (default ``settings.ITEM_TTL``).
        allow_stale_on_error: Serve expired data when the remote call fails.
        max_concurrent: Worker count for per-key fallback resolution.
    """
    if not callable(fetch_one):
        raise TypeError("fetch_one is required")
    if fetch_many is not None and not callable(fetch_many):
        raise TypeError("fetch_many must be callable")
    if allow_stale_on_error is None:
        allow_stale_on_error = settings.ALLOW_STALE_ON_ERROR

    single = SingleFlightFetcher(
        store, fetch_one, ttl=ttl, allow_stale_on_error=allow_stale_on_error
    )
    batch = BatchFetchOrchestrator(
        store,
        single,
        fetch_many=fetch_many,
        batch_size=batch_size,
        max_concurrent=max_concurrent,
    )
    return CachedItemFetcher(single, batch)
