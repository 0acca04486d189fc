# --- keep this shim at the very top ---
import os
import sys

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
# --------------------------------------

# Tests never touch a file-backed DB or a real upstream unless they ask for one
os.environ["CACHE_DB_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.pop("WATCH_USER_ID", None)

import asyncio

import pytest
import pytest_asyncio

from itemcache.store import CacheStore  # noqa: E402

MEMORY_SQLITE = "sqlite+aiosqlite:///:memory:"


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = 1_000_000.0):
        self.t = start

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def memory_store(clock):
    """Store with durability disabled up front (pure memory mode)."""
    store = await CacheStore("", clock=clock).open()
    yield store
    await store.close()


@pytest_asyncio.fixture
async def durable_store(clock):
    """Store backed by an in-memory SQLite database."""
    store = await CacheStore(MEMORY_SQLITE, clock=clock).open()
    assert store.backend == "durable"
    yield store
    await store.close()


@pytest_asyncio.fixture(params=["memory", "durable"])
async def store(request, clock):
    """Run a test once per backend; behaviour must not differ."""
    url = "" if request.param == "memory" else MEMORY_SQLITE
    s = await CacheStore(url, clock=clock).open()
    assert s.backend == request.param
    yield s
    await s.close()


class Remote:
    """Instrumented stand-in for fetch_one / fetch_many."""

    def __init__(self, records=None, delay: float = 0.0):
        self.records = dict(records or {})
        self.delay = delay
        self.one_calls = []
        self.many_calls = []
        self.fail_one = None
        self.fail_many = None

    async def fetch_one(self, key):
        self.one_calls.append(key)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_one is not None:
            raise self.fail_one
        rec = self.records.get(str(key))
        return dict(rec) if rec is not None else None

    async def fetch_many(self, keys):
        self.many_calls.append(list(keys))
        if self.fail_many is not None:
            raise self.fail_many
        return [dict(self.records[k]) for k in keys if k in self.records]


@pytest.fixture
def remote():
    return Remote(
        {
            "a": {"Id": "a", "Name": "Alpha"},
            "b": {"Id": "b", "Name": "Bravo"},
            "c": {"Id": "c", "Name": "Charlie"},
            "42": {"Id": "42", "Name": "X"},
        }
    )


@pytest.fixture
def make_remote():
    return Remote
