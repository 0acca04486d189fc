"""Tiered client-side cache for remote records."""

from .fetcher import CachedItemFetcher, create_cached_item_details_fetcher
from .keys import compute_key
from .queries import cached_fetch_json, cached_fetch_text
from .store import CacheEntry, CacheStore
from .watcher import DeltaWatcher, start_library_delta_watcher

__all__ = [
    "CacheEntry",
    "CacheStore",
    "CachedItemFetcher",
    "DeltaWatcher",
    "cached_fetch_json",
    "cached_fetch_text",
    "compute_key",
    "create_cached_item_details_fetcher",
    "start_library_delta_watcher",
]
