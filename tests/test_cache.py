from cache import MemoryCache, SQLCache
from database import make_engine, make_session_factory


def make_cache() -> SQLCache:
    return SQLCache(make_session_factory(make_engine("sqlite:///:memory:")))


def test_sql_cache_round_trips_json_values():
    cache = make_cache()

    assert cache.get("transactions", []) == []
    cache.set("transactions", [{"id": "a", "amount": "-10"}])
    cache.set("dirtyQueue", ["cards"])

    assert cache.get("transactions") == [{"id": "a", "amount": "-10"}]
    assert cache.get("dirtyQueue") == ["cards"]


def test_sql_cache_overwrites_existing_key():
    cache = make_cache()
    cache.set("startingBalance", {"amount": "10", "anchor": None})
    cache.set("startingBalance", {"amount": "20", "anchor": "2025-01-01"})
    assert cache.get("startingBalance") == {"amount": "20", "anchor": "2025-01-01"}


def test_memory_cache_returns_copies():
    cache = MemoryCache()
    value = [{"id": "a"}]
    cache.set("transactions", value)
    value.append({"id": "b"})

    stored = cache.get("transactions")
    stored.append({"id": "c"})

    assert cache.get("transactions") == [{"id": "a"}]
    assert cache.get("missing", "fallback") == "fallback"
