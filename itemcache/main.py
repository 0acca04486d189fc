"""FastAPI service around the item cache.

The lifespan opens the cache store, builds the upstream client and the cached
fetcher, and (when ``WATCH_USER_ID`` is set) runs a delta watcher that
pre-warms the cache with newly created items.

- GET    /               -> redirect to Swagger UI (/docs)
- GET    /healthz        -> liveness, no I/O
- GET    /healthcheck    -> backend, upstream probe, table sizes
- GET    /items/{id}     -> one item through the single-flight fetcher
- GET    /items?ids=a,b  -> many items through the batch fetcher
- DELETE /cache/{table}  -> clear one cache table
- GET    /metrics        -> Prometheus exposition
"""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse

from . import metrics
from .clients import RemoteClient
from .errors import RemoteFetchError
from .fetcher import CachedItemFetcher, create_cached_item_details_fetcher
from .logging_config import configure_logging
from .schemas import ClearOut, HealthcheckOut, ProblemDetail
from .settings import settings
from .store import CacheStore
from .watcher import DeltaWatcher

configure_logging()
log = logging.getLogger(__name__)

MAX_IDS_PER_REQUEST = 500

app = FastAPI(title="itemcache", version="0.1.0")
metrics.install(app)


_STATUS_TITLES = {
    400: "Bad Request",
    404: "Not Found",
    422: "Unprocessable Entity",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


def _problem(
    status: int,
    title: str | None = None,
    detail: str | None = None,
    instance: str | None = None,
) -> JSONResponse:
    """Return an RFC7807 problem+json response."""
    body = {
        "type": "about:blank",
        "title": title or _STATUS_TITLES.get(status, "Error"),
        "status": status,
        "detail": detail,
        "instance": instance,
    }
    return JSONResponse(
        status_code=status, content=body, media_type="application/problem+json"
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_req: Request, exc: HTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else None
    return _problem(
        status=exc.status_code, title=_STATUS_TITLES.get(exc.status_code), detail=detail
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_req: Request, exc: RequestValidationError):
    msg = exc.errors()[0]["msg"] if exc.errors() else "Validation error"
    return _problem(status=422, detail=msg)


@app.exception_handler(RemoteFetchError)
async def remote_exception_handler(req: Request, exc: RemoteFetchError):
    log.info("route.upstream_failed path=%s status=%s error=%s", req.url.path, exc.status_code, exc)
    return _problem(status=503, detail="Upstream unavailable and no cached copy", instance=req.url.path)


# ---------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store, wire the fetcher, start the watcher; undo on shutdown."""
    store = await CacheStore().open()
    log.info("startup.store backend=%s", store.backend)

    client = RemoteClient(user_id=settings.WATCH_USER_ID)
    fetcher = create_cached_item_details_fetcher(
        store,
        fetch_one=client.fetch_one,
        fetch_many=client.fetch_many,
        batch_size=settings.BATCH_SIZE,
        max_concurrent=settings.MAX_CONCURRENT,
    )

    watcher: Optional[DeltaWatcher] = None
    if settings.WATCH_USER_ID:
        watcher = DeltaWatcher(
            store,
            user_id=settings.WATCH_USER_ID,
            fetch_json=client.fetch_json,
            get_auth_headers=client.get_auth_headers,
            fetcher=fetcher,
            include_item_types=settings.WATCH_ITEM_TYPES,
        ).start()
    else:
        log.info("startup.watcher disabled (no WATCH_USER_ID)")

    app.state.store = store
    app.state.client = client
    app.state.fetcher = fetcher
    app.state.watcher = watcher

    try:
        yield
    finally:
        if watcher is not None:
            watcher.stop()
            with suppress(asyncio.TimeoutError):
                await asyncio.wait_for(watcher.wait_stopped(), timeout=5.0)
        await client.aclose()
        await store.close()


app.router.lifespan_context = lifespan

_problem_resp = {
    "application/problem+json": {"schema": ProblemDetail.model_json_schema()},
}


# ---------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------


def get_store(request: Request) -> CacheStore:
    return request.app.state.store


def get_fetcher(request: Request) -> CachedItemFetcher:
    return request.app.state.fetcher


def get_client(request: Request) -> RemoteClient:
    return request.app.state.client


# ---------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------


@app.get("/", include_in_schema=False)
async def root(_request: Request):
    """Redirect the root path to the interactive API docs (/docs)."""
    return RedirectResponse(url=app.docs_url or "/docs", status_code=307)


@app.get("/healthz", include_in_schema=False)
async def healthz():
    """Always 200 while the process can serve requests."""
    return {"status": "ok"}


@app.get("/healthcheck", response_model=HealthcheckOut)
async def healthcheck(
    request: Request,
    store: CacheStore = Depends(get_store),
    client: RemoteClient = Depends(get_client),
):
    """Report backend mode, upstream reachability and table sizes."""
    upstream_ok = await client.probe()
    entries = await store.stats()
    watcher = getattr(request.app.state, "watcher", None)

    # memory fallback still serves traffic, but persistence is gone
    status = "ok" if (upstream_ok and store.backend == "durable") else "degraded"
    log.info(
        "route.healthcheck status=%s backend=%s upstream_ok=%s entries=%s",
        status,
        store.backend,
        upstream_ok,
        entries,
    )
    return {
        "status": status,
        "backend": store.backend,
        "upstream_ok": upstream_ok,
        "entries": entries,
        "watcher": watcher.state.value if watcher is not None else None,
    }


@app.get(
    "/items/{item_id}",
    responses={
        404: {"content": _problem_resp, "model": ProblemDetail},
        503: {"content": _problem_resp, "model": ProblemDetail},
    },
)
async def get_item(
    item_id: str = Path(..., min_length=1),
    fetcher: CachedItemFetcher = Depends(get_fetcher),
) -> Any:
    """Return one item: fresh cache, shared in-flight fetch, or stale fallback."""
    item = await fetcher(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
    return item


@app.get("/items", responses={400: {"content": _problem_resp, "model": ProblemDetail}})
async def get_items(
    ids: str = Query(..., min_length=1, description="Comma-separated item ids"),
    fetcher: CachedItemFetcher = Depends(get_fetcher),
) -> List[Any]:
    """Return items aligned with `ids`; unresolved positions are null."""
    keys = [part.strip() for part in ids.split(",")]
    if len(keys) > MAX_IDS_PER_REQUEST:
        raise HTTPException(
            status_code=400, detail=f"At most {MAX_IDS_PER_REQUEST} ids per request"
        )
    results = await fetcher.many(keys)
    log.info(
        "route.items requested=%d resolved=%d",
        len(keys),
        sum(1 for r in results if r is not None),
    )
    return results


@app.delete("/cache/{table}", response_model=ClearOut)
async def clear_cache(
    table: str = Path(..., pattern=r"^(item|query|meta)$"),
    store: CacheStore = Depends(get_store),
):
    """Drop every entry of one cache table."""
    cleared = await store.clear(table)
    return {"table": table, "cleared": cleared}
