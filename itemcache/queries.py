"""Cached text/JSON fetches backed by the `query` table.

Keys are ``compute_key(["text" | "json", *key_parts])``; values are stored as
the tagged `TextPayload` / `JsonPayload` variants, so a text entry is never
handed back to a JSON caller (and vice versa).
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Optional, Sequence

from pydantic import ValidationError

from . import metrics
from .keys import compute_key
from .schemas import JsonPayload, TextPayload, query_payload_adapter
from .settings import settings
from .store import CacheEntry, CacheStore

log = logging.getLogger(__name__)


def _payload(entry: Optional[CacheEntry], kind: str):
    if entry is None:
        return None
    try:
        payload = query_payload_adapter.validate_python(entry.data)
    except ValidationError:
        log.debug("query.payload_invalid key=%s", entry.key)
        return None
    return payload if payload.kind == kind else None


async def _cached_fetch(
    store: CacheStore,
    kind: str,
    key_parts: Sequence[Any],
    fetch: Callable[[], Awaitable[Any]],
    wrap: Callable[[Any], Any],
    unwrap: Callable[[Any], Any],
    ttl: float,
    allow_stale_on_error: bool,
) -> Any:
    key = compute_key([kind, *key_parts])
    entry = await store.get_query_entry(key)
    cached = _payload(entry, kind)
    if cached is not None and entry.is_fresh(store.now()):
        metrics.record_lookup("query", "hit")
        return unwrap(cached)

    try:
        value = await fetch()
    except Exception as exc:
        metrics.record_remote_fetch(kind, "error")
        if allow_stale_on_error and cached is not None:
            log.info("query.served_stale kind=%s key=%s error=%r", kind, key, exc)
            return unwrap(cached)
        raise

    metrics.record_remote_fetch(kind, "ok")
    await store.put_query(key, wrap(value).model_dump(), ttl=ttl)
    return value


async def cached_fetch_text(
    store: CacheStore,
    key_parts: Sequence[Any],
    fetch_text: Callable[[str], Awaitable[str]],
    url: str,
    *,
    ttl: Optional[float] = None,
    allow_stale_on_error: Optional[bool] = None,
) -> str:
    """Return the text at `url`, served from the query cache while fresh."""
    return await _cached_fetch(
        store,
        "text",
        key_parts,
        lambda: fetch_text(url),
        lambda text: TextPayload(text=text),
        lambda payload: payload.text,
        settings.LIST_FILE_TTL if ttl is None else ttl,
        settings.ALLOW_STALE_ON_ERROR if allow_stale_on_error is None else allow_stale_on_error,
    )


async def cached_fetch_json(
    store: CacheStore,
    key_parts: Sequence[Any],
    fetch_json: Callable[..., Awaitable[Any]],
    url: str,
    opts: Optional[Mapping[str, Any]] = None,
    *,
    ttl: Optional[float] = None,
    allow_stale_on_error: Optional[bool] = None,
) -> Any:
    """Return the JSON document at `url`, served from the query cache while fresh.

    On a remote failure the last stored document is returned if
    `allow_stale_on_error`; otherwise the error propagates.
    """
    return await _cached_fetch(
        store,
        "json",
        key_parts,
        lambda: fetch_json(url, opts),
        lambda data: JsonPayload(data=data),
        lambda payload: payload.data,
        settings.QUERY_TTL if ttl is None else ttl,
        settings.ALLOW_STALE_ON_ERROR if allow_stale_on_error is None else allow_stale_on_error,
    )
