import time
from fastapi import FastAPI, Request, Response
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# --- Metric objects ---
REQUESTS = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["path", "method", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_latency_seconds",
    "Request latency seconds",
    labelnames=["path", "method"],
)
CACHE_LOOKUPS = Counter(
    "itemcache_lookups_total",
    "Cache table lookups by result",
    labelnames=["table", "result"],
)
STORE_ERRORS = Counter(
    "itemcache_store_errors_total",
    "Durable store operation failures",
    labelnames=["table", "op"],
)
REMOTE_FETCHES = Counter(
    "itemcache_remote_fetches_total",
    "Remote fetches issued by the cache",
    labelnames=["kind", "outcome"],
)
COALESCED = Counter(
    "itemcache_coalesced_total", "Callers that joined an in-flight fetch"
)
WATCHER_TICKS = Counter(
    "itemcache_watcher_ticks_total", "Delta watcher ticks", labelnames=["outcome"]
)
DURABLE_OK_G = Gauge("itemcache_durable_ok", "Durable backend in use (1) or memory (0)")


# --- Helpers ---
def record_lookup(table: str, result: str) -> None:
    CACHE_LOOKUPS.labels(table=table, result=result).inc()


def record_store_error(table: str, op: str) -> None:
    STORE_ERRORS.labels(table=table, op=op).inc()


def record_remote_fetch(kind: str, outcome: str) -> None:
    REMOTE_FETCHES.labels(kind=kind, outcome=outcome).inc()


def record_coalesced() -> None:
    COALESCED.inc()


def record_tick(outcome: str) -> None:
    WATCHER_TICKS.labels(outcome=outcome).inc()


def observe_backend(durable: bool) -> None:
    DURABLE_OK_G.set(1 if durable else 0)


# --- Installation: middleware + /metrics endpoint ---
def install(app: FastAPI) -> None:
    @app.middleware("http")
    async def _metrics_mw(request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = getattr(response, "status_code", 500)
            return response
        finally:
            dur = time.perf_counter() - t0
            REQUEST_LATENCY.labels(
                path=request.url.path, method=request.method
            ).observe(dur)
            REQUESTS.labels(
                path=request.url.path,
                method=request.method,
                status=str(status),
            ).inc()

    @app.get("/metrics", include_in_schema=False)
    async def metrics():
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
