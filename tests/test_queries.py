"""Cached text/JSON helpers on top of the query table."""

import pytest

from itemcache.keys import compute_key
from itemcache.queries import cached_fetch_json, cached_fetch_text


class Upstream:
    def __init__(self):
        self.calls = []
        self.fail = None
        self.version = 1

    async def fetch_json(self, url, opts=None):
        self.calls.append((url, opts))
        if self.fail:
            raise self.fail
        return {"url": url, "version": self.version}

    async def fetch_text(self, url):
        self.calls.append((url, None))
        if self.fail:
            raise self.fail
        return f"line-{self.version}\n"


@pytest.mark.asyncio
async def test_json_served_from_cache_while_fresh(store):
    up = Upstream()
    parts = ["/Items", {"UserId": "u1"}]

    first = await cached_fetch_json(store, parts, up.fetch_json, "/Items?u=1", {"headers": {}}, ttl=60)
    up.version = 2
    second = await cached_fetch_json(store, parts, up.fetch_json, "/Items?u=1", {"headers": {}}, ttl=60)

    assert first == second == {"url": "/Items?u=1", "version": 1}
    assert len(up.calls) == 1
    assert up.calls[0][1] == {"headers": {}}


@pytest.mark.asyncio
async def test_json_refetched_after_expiry(store, clock):
    up = Upstream()
    await cached_fetch_json(store, ["p"], up.fetch_json, "/x", ttl=60)

    clock.advance(61)
    up.version = 2
    assert (await cached_fetch_json(store, ["p"], up.fetch_json, "/x", ttl=60))["version"] == 2
    assert len(up.calls) == 2


@pytest.mark.asyncio
async def test_stale_json_on_error(store, clock):
    up = Upstream()
    await cached_fetch_json(store, ["p"], up.fetch_json, "/x", ttl=60)

    clock.advance(61)
    up.fail = ConnectionError("down")

    got = await cached_fetch_json(store, ["p"], up.fetch_json, "/x", ttl=60, allow_stale_on_error=True)
    assert got["version"] == 1

    with pytest.raises(ConnectionError):
        await cached_fetch_json(store, ["p"], up.fetch_json, "/x", ttl=60, allow_stale_on_error=False)


@pytest.mark.asyncio
async def test_error_without_any_cached_copy_propagates(store):
    up = Upstream()
    up.fail = ConnectionError("down")
    with pytest.raises(ConnectionError):
        await cached_fetch_text(store, ["list.txt"], up.fetch_text, "/list.txt")


@pytest.mark.asyncio
async def test_text_round_trip_and_tagged_storage(store):
    up = Upstream()
    text = await cached_fetch_text(store, ["list.txt"], up.fetch_text, "/list.txt", ttl=60)
    again = await cached_fetch_text(store, ["list.txt"], up.fetch_text, "/list.txt", ttl=60)

    assert text == again == "line-1\n"
    assert len(up.calls) == 1
    stored = await store.get_query(compute_key(["text", "list.txt"]))
    assert stored == {"kind": "text", "text": "line-1\n"}


@pytest.mark.asyncio
async def test_text_and_json_entries_never_mix(store):
    up = Upstream()
    # Plant a JSON payload under the key a text lookup would use
    await store.put_query(compute_key(["text", "same"]), {"kind": "json", "data": [1]}, ttl=60)

    text = await cached_fetch_text(store, ["same"], up.fetch_text, "/same")
    assert text == "line-1\n"
    assert len(up.calls) == 1


@pytest.mark.asyncio
async def test_garbage_payload_is_a_miss(store):
    up = Upstream()
    await store.put_query(compute_key(["json", "g"]), {"unexpected": True}, ttl=60)

    assert (await cached_fetch_json(store, ["g"], up.fetch_json, "/g"))["version"] == 1
    assert len(up.calls) == 1
