from __future__ import annotations

from datetime import datetime, timezone

import pytest

from feedloom.app.services.feed_pipeline import (
    ContentKind,
    FeedFilters,
    InvalidFeedFilter,
    MalformedQueryError,
    PrimaryQuerySpec,
    QueryComposer,
    SearchQuery,
    SortKey,
    TimeRange,
    build_primary_query,
)
from feedloom.app.services.feed_pipeline.query_composer import (
    AnyOf,
    Equals,
    Field,
    OnOrAfter,
    OrderBy,
    TextContains,
    evaluate,
)

NOW = datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc)


def test_primary_query_references_native_fields_only() -> None:
    query = SearchQuery(
        text="music",
        filters=FeedFilters(
            kind=ContentKind.TRACK,
            time_range=TimeRange.WEEK,
            sort=SortKey.POPULAR,
            author_id="u1",
        ),
    )

    spec = build_primary_query(query, page=3, page_size=15, now=NOW)

    assert all(field.is_native for field in spec.referenced_fields())
    assert spec.joined_fields() == ()
    assert spec.offset == 30
    assert spec.limit == 15
    assert spec.text_match == TextContains(Field.BODY, "music")
    assert Equals(Field.KIND, "track") in spec.predicates
    assert Equals(Field.AUTHOR_ID, "u1") in spec.predicates
    spec.validate()


def test_creator_scope_is_not_part_of_the_primary_query() -> None:
    spec = build_primary_query(
        SearchQuery(creator_scope="userA"), page=1, page_size=10, now=NOW
    )

    assert spec.predicates == ()
    assert spec.text_match is None


@pytest.mark.parametrize(
    "time_range, expected",
    [
        (TimeRange.TODAY, datetime(2026, 3, 4, tzinfo=timezone.utc)),
        (TimeRange.WEEK, datetime(2026, 2, 25, 15, 30, tzinfo=timezone.utc)),
        (TimeRange.MONTH, datetime(2026, 2, 2, 15, 30, tzinfo=timezone.utc)),
    ],
)
def test_time_range_cutoffs(time_range: TimeRange, expected: datetime) -> None:
    spec = build_primary_query(
        SearchQuery(filters=FeedFilters(time_range=time_range)),
        page=1,
        page_size=10,
        now=NOW,
    )

    assert spec.predicates == (OnOrAfter(Field.CREATED_AT, expected),)


def test_popular_sort_breaks_ties_by_recency_then_id() -> None:
    spec = build_primary_query(
        SearchQuery(filters=FeedFilters(sort=SortKey.POPULAR)),
        page=1,
        page_size=10,
        now=NOW,
    )

    assert spec.order == (
        OrderBy(Field.POPULARITY, descending=True),
        OrderBy(Field.CREATED_AT, descending=True),
        OrderBy(Field.ID),
    )


def test_invalid_page_is_rejected() -> None:
    with pytest.raises(ValueError):
        build_primary_query(SearchQuery(), page=0, page_size=10)


def test_validate_rejects_joined_fields() -> None:
    spec = PrimaryQuerySpec(
        predicates=(
            AnyOf(
                (
                    TextContains(Field.BODY, "music"),
                    TextContains(Field.JOINED_TITLE, "music"),
                )
            ),
        ),
        order=(),
        offset=0,
        limit=10,
    )

    with pytest.raises(MalformedQueryError) as excinfo:
        spec.validate()

    assert excinfo.value.fields == ("joined.title",)


def test_without_joined_strips_clauses_and_returns_their_text() -> None:
    spec = PrimaryQuerySpec(
        predicates=(
            Equals(Field.KIND, "post"),
            TextContains(Field.JOINED_DESCRIPTION, "theory"),
        ),
        order=(OrderBy(Field.JOINED_TITLE), OrderBy(Field.ID)),
        offset=0,
        limit=10,
    )

    stripped, texts = spec.without_joined()

    assert stripped.predicates == (Equals(Field.KIND, "post"),)
    assert stripped.order == (OrderBy(Field.ID),)
    assert texts == ("theory",)
    stripped.validate()


def test_evaluate_text_contains_is_case_insensitive(make_item) -> None:
    item = make_item("p1", body="Music Video")

    assert evaluate(TextContains(Field.BODY, "music"), item)
    assert not evaluate(TextContains(Field.BODY, "theory"), item)


def test_composer_normalizes_and_truncates() -> None:
    composer = QueryComposer(max_query_length=5)

    normalized = composer.normalize(
        SearchQuery(text="  playlists  ", creator_scope="   ")
    )

    assert normalized.text == "playl"
    assert normalized.creator_scope is None


def test_filters_from_params_coerce_and_reject() -> None:
    filters = FeedFilters.from_params(kind="Track", time_range="week", sort=None)

    assert filters.kind is ContentKind.TRACK
    assert filters.time_range is TimeRange.WEEK
    assert filters.sort is SortKey.NEWEST
    assert FeedFilters.from_params(kind="all").is_default

    with pytest.raises(InvalidFeedFilter):
        FeedFilters.from_params(sort="loudest")
