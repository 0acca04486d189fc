"""Upstream media-server client used as the cache's remote source.

Implements the collaborator contracts the cache consumes (`fetch_one`,
`fetch_many`, `fetch_json`, `fetch_text`, `get_auth_headers`) over a single
`httpx.AsyncClient`. Throttling (429), 5xx responses and transport errors are
retried with exponential backoff, honouring ``Retry-After``; anything else that
is not a 2xx raises `RemoteFetchError` so stale-on-error paths can engage.
"""

from __future__ import annotations

import logging
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import RemoteFetchError, TransientRemoteError
from .settings import settings

log = logging.getLogger(__name__)

RETRY_STATUSES = (429, 500, 502, 503, 504)
MAX_BACKOFF = 8.0
ITEM_FIELDS = "DateCreated,ImageTags,BackdropImageTags"


def parse_retry_after(value: str | None) -> float | None:
    """Parse a ``Retry-After`` header (integer seconds or HTTP-date)."""
    if not value:
        return None
    if value.isdigit():
        return float(value)
    try:
        dt = parsedate_to_datetime(value)
        if dt is not None:
            return max(0.0, (dt - dt.now(dt.tzinfo)).total_seconds())
    except (TypeError, ValueError):
        pass
    return None


class RemoteClient:
    """Thin async client for the upstream ``/Users/{id}/Items`` API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        user_id: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url or settings.REMOTE_BASE_URL).rstrip("/")
        self.token = token if token is not None else settings.REMOTE_TOKEN
        self.user_id = user_id
        self.max_retries = max(1, max_retries or settings.MAX_RETRIES)
        self._backoff = wait_exponential(multiplier=backoff, min=backoff, max=MAX_BACKOFF)
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.REQUEST_TIMEOUT,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    def get_auth_headers(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"X-Emby-Token": self.token}

    def _wait(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        ra = getattr(exc, "retry_after", None)
        if ra is not None:
            return min(ra, MAX_BACKOFF)
        return self._backoff(retry_state)

    async def _get_once(self, url: str, params: Any, headers: Mapping[str, str]) -> httpx.Response:
        try:
            r = await self._client.get(url, params=params, headers=headers)
        except httpx.TransportError as exc:
            log.warning("upstream.error url=%s err=%r", url, exc)
            raise TransientRemoteError(f"transport error: {exc!r}", url=url) from exc

        if r.status_code in RETRY_STATUSES:
            ra_hdr = r.headers.get("Retry-After")
            log.warning("upstream.retry status=%d url=%s retry_after=%s", r.status_code, url, ra_hdr)
            raise TransientRemoteError(
                f"upstream error {r.status_code}",
                url=url,
                status_code=r.status_code,
                retry_after=parse_retry_after(ra_hdr),
            )
        return r

    async def _get(
        self,
        url: str,
        *,
        params: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        allow_404: bool = False,
    ) -> Optional[httpx.Response]:
        merged = {**self.get_auth_headers(), **(headers or {})}
        retrying = AsyncRetrying(
            wait=self._wait,
            stop=stop_after_attempt(self.max_retries),
            retry=retry_if_exception_type(TransientRemoteError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    r = await self._get_once(url, params, merged)
        except TransientRemoteError:
            log.error("upstream.failed url=%s attempts=%d", url, self.max_retries)
            raise

        if allow_404 and r.status_code == 404:
            return None
        if not r.is_success:
            raise RemoteFetchError(
                f"upstream returned {r.status_code}", url=url, status_code=r.status_code
            )
        return r

    # ------------------------------------------------------------------
    # Collaborator contracts
    # ------------------------------------------------------------------

    async def fetch_json(self, url: str, opts: Optional[Mapping[str, Any]] = None) -> Any:
        """GET `url` and decode JSON. `opts` may carry ``headers`` and ``params``."""
        opts = opts or {}
        r = await self._get(url, params=opts.get("params"), headers=opts.get("headers"))
        try:
            return r.json()
        except ValueError as exc:
            raise RemoteFetchError(f"invalid JSON from {url}", url=url) from exc

    async def fetch_text(self, url: str) -> str:
        r = await self._get(url)
        return r.text

    def _items_path(self) -> str:
        return f"/Users/{self.user_id}/Items" if self.user_id else "/Items"

    async def fetch_one(self, item_id: Any) -> Optional[Dict[str, Any]]:
        """Fetch one item by id; ``None`` when upstream says 404."""
        r = await self._get(f"{self._items_path()}/{item_id}", allow_404=True)
        return r.json() if r is not None else None

    async def fetch_many(self, item_ids: Sequence[Any]) -> List[Dict[str, Any]]:
        """Bulk-fetch items; ids upstream does not know are simply absent."""
        if not item_ids:
            return []
        params = {"Ids": ",".join(str(i) for i in item_ids), "Fields": ITEM_FIELDS}
        r = await self._get(self._items_path(), params=params)
        data = r.json() or {}
        return list(data.get("Items") or [])

    async def probe(self) -> bool:
        """Return True if the upstream public info endpoint answers 200."""
        try:
            r = await self._client.get("/System/Info/Public", timeout=5.0)
            return r.status_code == 200
        except Exception:
            return False
