"""Unit tests for the TTL cache and its invalidation rules."""

from __future__ import annotations

import pytest

from treechat.data_runtime.cache import EXISTS, LIST, TREE, Cache, query_key


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> Cache:
    return Cache(ttl=60.0, max_size=100, clock=clock)


def _keys(cache: Cache, workspace: str = "ws1") -> set[str]:
    return set(cache.export(workspace))


def test_get_set_and_ttl(cache: Cache, clock: FakeClock) -> None:
    cache.set("ws1", "/a", {"v": 1})
    entry = cache.get("ws1", "/a")
    assert entry is not None
    assert entry.value == {"v": 1}

    clock.now = 1059.9
    assert cache.get("ws1", "/a") is not None
    clock.now = 1060.0
    assert cache.get("ws1", "/a") is None


def test_cached_none_is_a_hit(cache: Cache) -> None:
    cache.set("ws1", "/missing", None)
    entry = cache.get("ws1", "/missing")
    assert entry is not None
    assert entry.value is None


def test_entries_are_workspace_scoped(cache: Cache) -> None:
    cache.set("ws1", "/a", 1)
    assert cache.get("ws2", "/a") is None
    cache.invalidate_path("ws2", "/a")
    assert cache.get("ws1", "/a") is not None


def test_invalidate_path_exact_and_ancestor_queries(cache: Cache) -> None:
    for key in (
        "/a/b",
        query_key("/a/b", EXISTS),
        query_key("/a", LIST),
        query_key("/a", TREE),
        query_key("/", TREE),
        "/a",
        "/a/b/c",
        "/ab",
        query_key("/ab", LIST),
    ):
        cache.set("ws1", key, "x")

    removed = cache.invalidate_path("ws1", "/a/b")

    assert removed == 5
    assert _keys(cache) == {"/a", "/a/b/c", "/ab", "/ab?ls"}


def test_invalidate_path_recursive(cache: Cache) -> None:
    for key in ("/a", "/a/b", "/a/b/c", query_key("/a/b/c", TREE), "/ab", query_key("/", LIST)):
        cache.set("ws1", key, "x")

    cache.invalidate_path("ws1", "/a", recursive=True)

    assert _keys(cache) == {"/ab"}


def test_invalidate_pattern(cache: Cache) -> None:
    cache.set("ws1", "/sessions/1/name", 1)
    cache.set("ws1", "/sessions/2/name", 2)
    cache.set("ws1", "/pages/1", 3)
    assert cache.invalidate_pattern("ws1", r"^/sessions/") == 2
    assert _keys(cache) == {"/pages/1"}


def test_stale_fill_is_discarded(cache: Cache) -> None:
    token = cache.token("ws1")
    cache.invalidate_path("ws1", "/x")  # a write committed meanwhile
    assert cache.set("ws1", "/x", "old", token=token) is False
    assert cache.get("ws1", "/x") is None

    fresh = cache.token("ws1")
    assert cache.set("ws1", "/x", "new", token=fresh) is True


def test_fill_token_is_per_workspace(cache: Cache) -> None:
    token = cache.token("ws1")
    cache.invalidate_path("ws2", "/x")
    assert cache.set("ws1", "/x", "v", token=token) is True


def test_eviction_drops_oldest(clock: FakeClock) -> None:
    cache = Cache(ttl=60.0, max_size=2, clock=clock)
    cache.set("ws1", "/a", 1)
    cache.set("ws1", "/b", 2)
    cache.set("ws1", "/a", 10)  # refresh moves /a to the young end
    cache.set("ws1", "/c", 3)
    assert _keys(cache) == {"/a", "/c"}
    assert cache.stats.evictions == 1


def test_stats(cache: Cache) -> None:
    cache.set("ws1", "/a", 1)
    cache.get("ws1", "/a")
    cache.get("ws1", "/b")
    cache.invalidate_path("ws1", "/a")

    stats = cache.stats
    assert (stats.hits, stats.misses, stats.invalidations, stats.size) == (1, 1, 1, 0)
    assert stats.hit_rate == 0.5


def test_prune_and_clear(cache: Cache, clock: FakeClock) -> None:
    cache.set("ws1", "/old", 1)
    clock.now += 30
    cache.set("ws1", "/new", 2)
    cache.set("ws2", "/other", 3)
    clock.now += 31
    assert cache.prune() == 1

    assert cache.clear("ws1") == 1
    assert len(cache) == 1
    assert cache.clear() == 1
    assert len(cache) == 0


def test_export_and_load(cache: Cache, clock: FakeClock) -> None:
    cache.set("ws1", "/a", {"v": 1})
    cache.set("ws1", query_key("/", LIST), ["a"])
    exported = cache.export("ws1")

    other = Cache(ttl=60.0, clock=clock)
    assert other.load("ws1", exported) == 2
    entry = other.get("ws1", "/")
    assert entry is None
    listing = other.get("ws1", "/?ls")
    assert listing is not None
    assert listing.value == ["a"]
