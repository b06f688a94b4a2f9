"""Tests for the in-memory analytics cache."""

from session_guard.services.cache import InMemoryTTLCache


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_entry_expires_after_ttl():
    clock = FakeClock()
    cache = InMemoryTTLCache(default_ttl=300, clock=clock)
    cache.set("analytics:u1:daily", {"total": 1})

    clock.now = 299
    assert cache.get("analytics:u1:daily") == {"total": 1}

    clock.now = 300
    assert cache.get("analytics:u1:daily") is None
    assert len(cache) == 0


def test_per_entry_ttl_override():
    clock = FakeClock()
    cache = InMemoryTTLCache(default_ttl=300, clock=clock)
    cache.set("short", 1, ttl=5)
    cache.set("long", 2)

    clock.now = 6
    assert cache.get("short") is None
    assert cache.get("long") == 2


def test_expired_entries_are_evicted_without_being_read():
    clock = FakeClock()
    cache = InMemoryTTLCache(default_ttl=300, maxsize=5000, clock=clock)
    for i in range(1000):
        cache.set(f"analytics:u{i}:daily:a:b", i)

    clock.now = 10_000
    assert len(cache) == 0


def test_size_is_bounded():
    cache = InMemoryTTLCache(maxsize=3)
    for i in range(10):
        cache.set(f"k{i}", i)

    assert len(cache) == 3
    assert cache.get("k9") == 9
    assert cache.get("k0") is None


def test_invalidate_by_prefix():
    cache = InMemoryTTLCache()
    cache.set("analytics:u1:daily:a:b", 1)
    cache.set("analytics:u1:weekly:a:b", 2)
    cache.set("analytics:u10:daily:a:b", 3)

    assert cache.invalidate("analytics:u1:") == 2
    assert cache.get("analytics:u10:daily:a:b") == 3


def test_invalidate_skips_expired_entries():
    clock = FakeClock()
    cache = InMemoryTTLCache(default_ttl=300, clock=clock)
    cache.set("analytics:u1:daily:a:b", 1, ttl=10)
    cache.set("analytics:u1:weekly:a:b", 2)

    clock.now = 20
    assert cache.invalidate("analytics:u1:") == 1


def test_clear():
    cache = InMemoryTTLCache()
    cache.set("a", 1)
    cache.set("b", 2)
    cache.clear()
    assert len(cache) == 0
