from chapter_studio.search_cache import SearchCache, normalize_query


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_normalize_query_ignores_order_case_and_duplicates():
    assert normalize_query(["Dark Ambient", "ambient"]) == normalize_query(["AMBIENT", "dark"]) == "ambient dark"


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = SearchCache(ttl_seconds=10, clock=clock)
    cache.set("music", ["calm"], ["track"])

    clock.now = 5
    assert cache.get("music", ["Calm"]) == ["track"]
    assert cache.get("sfx", ["calm"]) is None

    clock.now = 11
    assert cache.get("music", ["calm"]) is None
    assert cache.hits == 1
    assert cache.misses == 2


def test_least_recently_used_entry_is_evicted():
    cache = SearchCache(ttl_seconds=100, max_entries=2, clock=Clock())
    cache.set("sfx", ["a"], 1)
    cache.set("sfx", ["b"], 2)
    cache.get("sfx", ["a"])
    cache.set("sfx", ["c"], 3)

    assert cache.get("sfx", ["b"]) is None
    assert cache.get("sfx", ["a"]) == 1
    assert len(cache) == 2


def test_purge_expired():
    clock = Clock()
    cache = SearchCache(ttl_seconds=1, clock=clock)
    cache.set("music", ["x"], 1)
    clock.now = 2
    cache.set("music", ["y"], 2)
    assert cache.purge_expired() == 1
    assert len(cache) == 1
