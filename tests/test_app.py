"""HTTP surface: health, item routes, cache admin, problem+json and lifespan wiring."""

import asyncio

import httpx
import pytest
import pytest_asyncio
import respx

import itemcache.main as app_main
from itemcache.errors import RemoteFetchError
from itemcache.fetcher import create_cached_item_details_fetcher
from itemcache.settings import settings


class FakeClient:
    def __init__(self, ok=True):
        self.ok = ok

    async def probe(self):
        return self.ok


@pytest_asyncio.fixture
async def wired(monkeypatch, memory_store, remote):
    """App state wired to a memory store and an in-process remote (no lifespan)."""
    fetcher = create_cached_item_details_fetcher(
        memory_store, fetch_one=remote.fetch_one, fetch_many=remote.fetch_many
    )
    fake = FakeClient()
    state = app_main.app.state
    monkeypatch.setattr(state, "store", memory_store, raising=False)
    monkeypatch.setattr(state, "fetcher", fetcher, raising=False)
    monkeypatch.setattr(state, "client", fake, raising=False)
    monkeypatch.setattr(state, "watcher", None, raising=False)
    return memory_store, remote, fake


@pytest_asyncio.fixture
async def test_client(wired):
    transport = httpx.ASGITransport(app=app_main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.mark.asyncio
async def test_root_redirects_to_docs(test_client):
    r = await test_client.get("/", follow_redirects=False)
    assert r.status_code == 307
    assert r.headers["location"] == "/docs"


@pytest.mark.asyncio
async def test_healthz(test_client):
    r = await test_client.get("/healthz")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_healthcheck_is_degraded_on_memory_backend(test_client, wired):
    store, _, _ = wired
    await store.put_item("a", {"Id": "a"})

    r = await test_client.get("/healthcheck")

    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "degraded"
    assert body["backend"] == "memory"
    assert body["upstream_ok"] is True
    assert body["entries"]["item"] == 1
    assert body["watcher"] is None


@pytest.mark.asyncio
async def test_healthcheck_ok_with_durable_backend(monkeypatch, durable_store, test_client):
    monkeypatch.setattr(app_main.app.state, "store", durable_store)
    r = await test_client.get("/healthcheck")
    assert r.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_get_item_caches_upstream_record(test_client, wired):
    store, remote, _ = wired

    r1 = await test_client.get("/items/a")
    r2 = await test_client.get("/items/a")

    assert r1.status_code == r2.status_code == 200
    assert r1.json() == {"Id": "a", "Name": "Alpha"}
    assert remote.one_calls == ["a"]
    assert await store.get_item("a") == {"Id": "a", "Name": "Alpha"}


@pytest.mark.asyncio
async def test_get_item_unknown_is_problem_404(test_client):
    r = await test_client.get("/items/nope")
    assert r.status_code == 404
    assert r.headers["content-type"].startswith("application/problem+json")
    body = r.json()
    assert body["status"] == 404
    assert body["title"] == "Not Found"
    assert "nope" in body["detail"]


@pytest.mark.asyncio
async def test_upstream_failure_without_stale_is_503(test_client, wired):
    _, remote, _ = wired
    remote.fail_one = RemoteFetchError("upstream down", status_code=502)

    r = await test_client.get("/items/a")

    assert r.status_code == 503
    assert r.headers["content-type"].startswith("application/problem+json")
    assert r.json()["instance"] == "/items/a"


@pytest.mark.asyncio
async def test_upstream_failure_serves_stale(test_client, wired, clock):
    store, remote, _ = wired
    await store.put_item("a", {"Id": "a", "Name": "old"}, ttl=10)
    clock.advance(11)
    remote.fail_one = RemoteFetchError("upstream down")

    r = await test_client.get("/items/a")

    assert r.status_code == 200
    assert r.json()["Name"] == "old"


@pytest.mark.asyncio
async def test_get_items_keeps_order_and_nulls(test_client, wired):
    _, remote, _ = wired

    r = await test_client.get("/items", params={"ids": "b,zz,a,b"})

    assert r.status_code == 200
    assert [x and x["Id"] for x in r.json()] == ["b", None, "a", "b"]
    assert remote.many_calls == [["b", "zz", "a"]]


@pytest.mark.asyncio
async def test_get_items_rejects_too_many_ids(test_client):
    ids = ",".join(str(i) for i in range(app_main.MAX_IDS_PER_REQUEST + 1))
    r = await test_client.get("/items", params={"ids": ids})
    assert r.status_code == 400
    assert r.json()["title"] == "Bad Request"


@pytest.mark.asyncio
async def test_get_items_requires_ids(test_client):
    r = await test_client.get("/items")
    assert r.status_code == 422
    assert r.headers["content-type"].startswith("application/problem+json")


@pytest.mark.asyncio
async def test_clear_cache_table(test_client, wired):
    store, _, _ = wired
    await store.put_item("a", {"Id": "a"})

    r = await test_client.delete("/cache/item")

    assert r.status_code == 200
    assert r.json() == {"table": "item", "cleared": True}
    assert await store.get_item("a", allow_stale=True) is None


@pytest.mark.asyncio
async def test_clear_cache_unknown_table_is_422(test_client):
    r = await test_client.delete("/cache/users")
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_metrics_exposes_cache_counters(test_client):
    await test_client.get("/items/a")
    r = await test_client.get("/metrics")
    assert r.status_code == 200
    assert "itemcache_lookups_total" in r.text
    assert "http_requests_total" in r.text


@pytest.mark.asyncio
async def test_lifespan_wires_durable_store_without_watcher():
    async with app_main.lifespan(app_main.app):
        state = app_main.app.state
        assert state.store.backend == "durable"
        assert state.watcher is None
        assert callable(state.fetcher)
    assert state.store.backend == "memory"


@pytest.mark.asyncio
@respx.mock
async def test_lifespan_starts_watcher_when_user_configured(monkeypatch):
    base = "http://upstream.test"
    monkeypatch.setattr(settings, "REMOTE_BASE_URL", base)
    monkeypatch.setattr(settings, "WATCH_USER_ID", "u1")
    respx.get(f"{base}/Users/u1/Items/Latest").mock(
        return_value=httpx.Response(200, json=[{"Id": "n1", "DateCreated": 5}])
    )
    bulk = respx.get(f"{base}/Users/u1/Items").mock(
        return_value=httpx.Response(200, json={"Items": [{"Id": "n1", "Name": "New"}]})
    )

    async with app_main.lifespan(app_main.app):
        state = app_main.app.state
        assert state.watcher is not None
        for _ in range(100):
            if await state.store.meta_get("latestCursor:u1"):
                break
            await asyncio.sleep(0.01)
        assert await state.store.meta_get("latestCursor:u1") == {"last_seen_created_at": 5.0}
        assert await state.store.get_item("n1") == {"Id": "n1", "Name": "New"}

    assert bulk.called
    assert state.watcher.state.value == "stopped"
