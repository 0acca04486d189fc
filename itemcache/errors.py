"""Error taxonomy for the cache layer.

Store errors never leave the facade; they travel inside an `Outcome` and are
logged at the boundary. Remote errors reach whoever awaited the fetch unless a
stale value was served instead.
"""

from __future__ import annotations


class CacheError(Exception):
    """Base class for everything raised or recorded by itemcache."""


class StoreUnavailable(CacheError):
    """The durable backend could not be opened; memory fallback is in effect."""


class StoreOpFailure(CacheError):
    """A single durable read/write/clear failed."""

    def __init__(self, table: str, op: str, cause: BaseException | None = None):
        super().__init__(f"{op} on table {table!r} failed: {cause!r}")
        self.table = table
        self.op = op
        self.cause = cause


class RemoteFetchError(CacheError):
    """Upstream returned a non-success response or could not be reached."""

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class TransientRemoteError(RemoteFetchError):
    """Retryable upstream condition (429, 5xx, transport hiccup)."""

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message, url=url, status_code=status_code)
        self.retry_after = retry_after


class FetchCancelled(RemoteFetchError):
    """The shared in-flight fetch for a key was cancelled before it settled."""

    def __init__(self, key: str):
        super().__init__(f"fetch for key {key!r} was cancelled")
        self.key = key
