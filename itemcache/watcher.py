"""Delta watcher: poll upstream for newly created items and pre-warm the cache.

A watcher keeps a per-user cursor (the newest creation time it has seen) in the
`meta` table. Every tick it asks upstream for the latest items, prefetches the
ones created after the cursor through the cached fetcher, and moves the cursor
forward to the newest creation time on the page. A failed poll leaves the
cursor alone so the next tick retries from the same point.

States: idle -> polling -> idle, and stopped (terminal) once `stop()` is
called. A stopped watcher cannot be restarted.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from pydantic import ValidationError

from . import metrics
from .fetcher import CachedItemFetcher, record_id
from .schemas import WatchCursor
from .settings import settings
from .store import CacheStore

log = logging.getLogger(__name__)

_FRACTION = re.compile(r"(\.\d{6})\d+")


class WatchState(str, enum.Enum):
    IDLE = "idle"
    POLLING = "polling"
    STOPPED = "stopped"


def created_at(record: Any) -> Optional[float]:
    """Creation time of a record in epoch seconds, or ``None`` if absent/unparseable."""
    if not isinstance(record, Mapping):
        return None
    value = record.get("DateCreated") or record.get("dateCreated")
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        text = _FRACTION.sub(r"\1", str(value).strip())
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


def _as_records(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping):
        items = payload.get("Items")
        if isinstance(items, list):
            return items
    return []


class DeltaWatcher:
    """Periodic poller that advances a persisted creation-time cursor."""

    def __init__(
        self,
        store: CacheStore,
        *,
        user_id: str,
        fetch_json: Callable[..., Any],
        get_auth_headers: Callable[[], Mapping[str, str]],
        fetcher: CachedItemFetcher,
        interval: Optional[float] = None,
        min_interval: Optional[float] = None,
        limit: Optional[int] = None,
        prefetch: Optional[int] = None,
        include_item_types: Optional[str] = None,
    ) -> None:
        if not user_id:
            raise ValueError("user_id is required")
        if not callable(fetch_json):
            raise TypeError("fetch_json is required")
        if not callable(get_auth_headers):
            raise TypeError("get_auth_headers is required")
        if fetcher is None or not callable(getattr(fetcher, "many", None)):
            raise TypeError("fetcher with a many() method is required")

        self.store = store
        self.user_id = user_id
        self.fetch_json = fetch_json
        self.get_auth_headers = get_auth_headers
        self.fetcher = fetcher
        self.limit = limit or settings.WATCH_LIMIT
        self.prefetch = prefetch or settings.WATCH_PREFETCH
        self.include_item_types = include_item_types
        self.meta_key = f"latestCursor:{user_id}"

        floor = settings.WATCH_MIN_INTERVAL if min_interval is None else min_interval
        self.interval = max(floor, settings.WATCH_INTERVAL if interval is None else interval)

        self.state = WatchState.IDLE
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> "DeltaWatcher":
        """Begin the self-rescheduling poll loop on the running event loop."""
        if self.state is WatchState.STOPPED:
            raise RuntimeError("watcher is stopped; create a new one to restart")
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run())
            log.info("watch.start user=%s interval=%.3fs", self.user_id, self.interval)
        return self

    def stop(self) -> None:
        """Prevent any further tick. A tick already running finishes on its own."""
        if self.state is WatchState.STOPPED:
            return
        self.state = WatchState.STOPPED
        self._stop_event.set()
        log.info("watch.stop user=%s", self.user_id)

    async def wait_stopped(self) -> None:
        """Wait for the loop task (and any tick it is running) to exit."""
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        while self.state is not WatchState.STOPPED:
            await self._safe_tick()
            if self.state is WatchState.STOPPED:
                break
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue

    async def _safe_tick(self) -> None:
        self.state = WatchState.POLLING
        try:
            await self.tick()
        except Exception as exc:
            metrics.record_tick("error")
            log.warning("watch.tick_failed user=%s error=%r", self.user_id, exc)
        finally:
            if self.state is WatchState.POLLING:
                self.state = WatchState.IDLE

    # ------------------------------------------------------------------
    # One poll
    # ------------------------------------------------------------------

    async def read_cursor(self) -> Optional[float]:
        """Stored cursor, 0 if never written, ``None`` if the read itself failed."""
        outcome = await self.store.meta_read(self.meta_key)
        if not outcome.ok:
            return None
        raw = outcome.value
        if raw is None:
            return 0.0
        try:
            return WatchCursor.model_validate(raw).last_seen_created_at
        except ValidationError:
            log.warning("watch.cursor_invalid key=%s value=%r; starting from 0", self.meta_key, raw)
            return 0.0

    def _params(self, **extra: str) -> str:
        qs: Dict[str, str] = dict(extra)
        qs["Limit"] = str(self.limit)
        if self.include_item_types:
            qs["IncludeItemTypes"] = self.include_item_types
        qs["Fields"] = "DateCreated,ImageTags,BackdropImageTags"
        return urlencode(qs)

    async def poll(self) -> List[Any]:
        """Newest items from the primary endpoint, else from the broader listing."""
        opts = {"headers": dict(self.get_auth_headers() or {})}

        try:
            latest = await self.fetch_json(
                f"/Users/{self.user_id}/Items/Latest?{self._params()}", opts
            )
        except Exception as exc:
            log.debug("watch.latest_failed user=%s error=%r", self.user_id, exc)
            latest = None
        records = _as_records(latest)
        if records:
            return records

        params = self._params(Recursive="true", SortBy="DateCreated", SortOrder="Descending")
        try:
            data = await self.fetch_json(f"/Users/{self.user_id}/Items?{params}", opts)
        except Exception as exc:
            log.warning("watch.poll_failed user=%s error=%r", self.user_id, exc)
            return []
        return _as_records(data)

    async def tick(self) -> bool:
        """Run one poll. Returns True if the cursor moved forward."""
        last_seen = await self.read_cursor()
        if last_seen is None:
            # an unreadable cursor must not be mistaken for 0 and overwritten
            metrics.record_tick("error")
            log.warning("watch.cursor_unreadable user=%s; skipping tick", self.user_id)
            return False
        records = await self.poll()
        if not records:
            metrics.record_tick("empty")
            return False

        max_seen = last_seen
        new_ids: List[Any] = []
        for rec in records:
            ts = created_at(rec)
            if ts is None:
                continue
            max_seen = max(max_seen, ts)
            rid = record_id(rec)
            if rid and ts > last_seen:
                new_ids.append(rid)

        if new_ids:
            try:
                await self.fetcher.many(new_ids[: self.prefetch])
            except Exception as exc:
                log.debug("watch.prefetch_failed user=%s error=%r", self.user_id, exc)

        if max_seen <= last_seen:
            metrics.record_tick("unchanged")
            return False

        saved = await self.store.meta_put(
            self.meta_key, WatchCursor(last_seen_created_at=max_seen).model_dump()
        )
        if not saved:
            metrics.record_tick("error")
            return False
        metrics.record_tick("advanced")
        log.info(
            "watch.cursor_advanced user=%s new=%d cursor=%.3f",
            self.user_id,
            len(new_ids),
            max_seen,
        )
        return True


def start_library_delta_watcher(
    store: CacheStore,
    *,
    user_id: Optional[str],
    fetch_json: Callable[..., Any],
    get_auth_headers: Callable[[], Mapping[str, str]],
    fetcher: CachedItemFetcher,
    interval: Optional[float] = None,
    limit: Optional[int] = None,
    include_item_types: Optional[str] = None,
    **kwargs: Any,
) -> Callable[[], None]:
    """Start a `DeltaWatcher` and return its zero-argument stop handle.

    Without a `user_id` nothing is started and the handle is a no-op.
    """
    if not user_id:
        return lambda: None
    watcher = DeltaWatcher(
        store,
        user_id=user_id,
        fetch_json=fetch_json,
        get_auth_headers=get_auth_headers,
        fetcher=fetcher,
        interval=interval,
        limit=limit,
        include_item_types=include_item_types,
        **kwargs,
    )
    watcher.start()
    return watcher.stop
