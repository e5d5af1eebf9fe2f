from __future__ import annotations

from feedloom.app.services.feed_pipeline import FeedFilters, SearchQuery, SortKey
from feedloom.app.services.feed_pipeline.scope_cache import (
    ScopeCache,
    ScopeSnapshot,
    query_fingerprint,
)


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_fingerprint_ignores_creator_scope() -> None:
    query = SearchQuery(text="music")

    assert query_fingerprint(query) == query_fingerprint(query.with_scope("userA"))
    assert query_fingerprint(query) != query_fingerprint(query.with_text("musi"))
    assert query_fingerprint(query) != query_fingerprint(
        query.with_filters(FeedFilters(sort=SortKey.OLDEST))
    )


def test_snapshots_are_scoped_per_session(make_item) -> None:
    cache = ScopeCache(maxsize=8, ttl=60)
    query = SearchQuery(text="music")
    snapshot = ScopeSnapshot(items=(make_item("p1"),), page=2, has_more=True)

    cache.store("s1", query, snapshot)

    assert cache.get("s1", query.with_scope("userA")) is snapshot
    assert cache.get("s2", query) is None
    assert cache.discard_session("s1") == 1
    assert cache.get("s1", query) is None


def test_snapshots_expire(make_item) -> None:
    clock = _Clock()
    cache = ScopeCache(maxsize=8, ttl=10, timer=clock)
    query = SearchQuery()
    cache.store("s1", query, ScopeSnapshot(items=(), page=1, has_more=False))

    clock.now = 11.0

    assert cache.get("s1", query) is None
    assert len(cache) == 0


def test_author_index_is_built_once(make_item) -> None:
    snapshot = ScopeSnapshot(
        items=(make_item("p1", author="a"), make_item("p2", author="b")),
        page=1,
        has_more=False,
    )

    index = snapshot.author_index()

    assert snapshot.author_index() is index
    assert [item.id for item in index.items_for("b")] == ["p2"]
