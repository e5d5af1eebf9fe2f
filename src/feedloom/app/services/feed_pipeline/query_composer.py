"""Primary-store query construction for the feed pipeline.

The primary store can only evaluate predicates over columns native to the
primary entity. Text that lives on a joined entity is matched afterwards by
the secondary predicate evaluator, so a :class:`PrimaryQuerySpec` must never
contain a joined field. The type can still represent one, which lets a
defective caller be detected and repaired instead of silently producing a
wrong feed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterator, Protocol, Union

from .exceptions import MalformedQueryError
from .models import ContentItem, SearchQuery, SortKey, TimeRange

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUERY_LENGTH = 512


class Field(str, Enum):
    ID = "id"
    BODY = "body"
    KIND = "kind"
    AUTHOR_ID = "author_id"
    CREATED_AT = "created_at"
    POPULARITY = "popularity"
    JOINED_TITLE = "joined.title"
    JOINED_DESCRIPTION = "joined.description"

    @property
    def is_native(self) -> bool:
        return self not in JOINED_FIELDS


JOINED_FIELDS = frozenset({Field.JOINED_TITLE, Field.JOINED_DESCRIPTION})


@dataclass(slots=True, frozen=True)
class Equals:
    field: Field
    value: Any


@dataclass(slots=True, frozen=True)
class OnOrAfter:
    field: Field
    value: Any


@dataclass(slots=True, frozen=True)
class TextContains:
    """Case-insensitive substring match (``ILIKE '%text%'``)."""

    field: Field
    text: str


@dataclass(slots=True, frozen=True)
class AnyOf:
    clauses: tuple["Predicate", ...]


Predicate = Union[Equals, OnOrAfter, TextContains, AnyOf]


@dataclass(slots=True, frozen=True)
class OrderBy:
    field: Field
    descending: bool = False


def iter_fields(predicate: Predicate) -> Iterator[Field]:
    """Yield every field referenced by ``predicate``."""

    if isinstance(predicate, AnyOf):
        for clause in predicate.clauses:
            yield from iter_fields(clause)
        return
    yield predicate.field


def _iter_texts(predicate: Predicate) -> Iterator[str]:
    if isinstance(predicate, AnyOf):
        for clause in predicate.clauses:
            yield from _iter_texts(clause)
    elif isinstance(predicate, TextContains):
        yield predicate.text


def _references_joined(predicate: Predicate) -> bool:
    return any(not f.is_native for f in iter_fields(predicate))


@dataclass(slots=True, frozen=True)
class PrimaryQuerySpec:
    """Structured query over the primary entity.

    ``predicates`` are conjunctive hard filters. ``text_match`` is the native
    half of the text disjunction; executors evaluate it to flag rows
    (``matched_primary``) but never drop rows because of it.
    """

    predicates: tuple[Predicate, ...]
    order: tuple[OrderBy, ...]
    offset: int
    limit: int
    text_match: TextContains | None = None

    def referenced_fields(self) -> set[Field]:
        fields: set[Field] = set()
        for predicate in self.predicates:
            fields.update(iter_fields(predicate))
        if self.text_match is not None:
            fields.add(self.text_match.field)
        fields.update(order.field for order in self.order)
        return fields

    def joined_fields(self) -> tuple[str, ...]:
        return tuple(
            sorted(f.value for f in self.referenced_fields() if not f.is_native)
        )

    def validate(self) -> None:
        """Raise :class:`MalformedQueryError` if a joined field is referenced."""

        joined = self.joined_fields()
        if joined:
            raise MalformedQueryError(
                "Primary query references joined fields: " + ", ".join(joined),
                fields=joined,
            )

    def without_joined(self) -> tuple["PrimaryQuerySpec", tuple[str, ...]]:
        """Return a copy without joined-field predicates and the texts they carried."""

        kept: list[Predicate] = []
        stripped_texts: list[str] = []
        for predicate in self.predicates:
            if _references_joined(predicate):
                stripped_texts.extend(_iter_texts(predicate))
                continue
            kept.append(predicate)

        text_match = self.text_match
        if text_match is not None and not text_match.field.is_native:
            stripped_texts.append(text_match.text)
            text_match = None

        order = tuple(o for o in self.order if o.field.is_native)
        texts = tuple(dict.fromkeys(t for t in stripped_texts if t.strip()))
        return (
            replace(self, predicates=tuple(kept), order=order, text_match=text_match),
            texts,
        )


def time_range_cutoff(time_range: TimeRange, now: datetime) -> datetime | None:
    """Return the earliest ``created_at`` admitted by ``time_range``."""

    if time_range is TimeRange.TODAY:
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if time_range is TimeRange.WEEK:
        return now - timedelta(days=7)
    if time_range is TimeRange.MONTH:
        return now - timedelta(days=30)
    return None


def order_for(sort: SortKey) -> tuple[OrderBy, ...]:
    if sort is SortKey.OLDEST:
        return (OrderBy(Field.CREATED_AT), OrderBy(Field.ID))
    if sort is SortKey.POPULAR:
        # Ties on popularity fall back to the newer item, then the id.
        return (
            OrderBy(Field.POPULARITY, descending=True),
            OrderBy(Field.CREATED_AT, descending=True),
            OrderBy(Field.ID),
        )
    return (OrderBy(Field.CREATED_AT, descending=True), OrderBy(Field.ID))


def build_primary_query(
    query: SearchQuery,
    page: int,
    page_size: int,
    now: datetime | None = None,
) -> PrimaryQuerySpec:
    """Translate ``query`` into a native-column :class:`PrimaryQuerySpec`."""

    if page < 1:
        raise ValueError("page must be >= 1")
    if page_size < 1:
        raise ValueError("page_size must be >= 1")

    filters = query.filters
    predicates: list[Predicate] = []
    if filters.kind is not None:
        predicates.append(Equals(Field.KIND, filters.kind.value))
    if filters.author_id:
        predicates.append(Equals(Field.AUTHOR_ID, filters.author_id))

    cutoff = time_range_cutoff(filters.time_range, now or datetime.now(timezone.utc))
    if cutoff is not None:
        predicates.append(OnOrAfter(Field.CREATED_AT, cutoff))

    text = query.text.strip()
    text_match = TextContains(Field.BODY, text) if text else None

    return PrimaryQuerySpec(
        predicates=tuple(predicates),
        order=order_for(filters.sort),
        offset=(page - 1) * page_size,
        limit=page_size,
        text_match=text_match,
    )


def field_value(item: ContentItem, field: Field) -> Any:
    """Read ``field`` from ``item`` the way a store column would expose it."""

    if field is Field.KIND:
        return item.kind.value
    if field is Field.JOINED_TITLE:
        return item.joined_title
    if field is Field.JOINED_DESCRIPTION:
        return item.joined_description
    return getattr(item, field.value)


def evaluate(predicate: Predicate, item: ContentItem) -> bool:
    """Evaluate ``predicate`` against an already materialised ``item``."""

    if isinstance(predicate, AnyOf):
        return any(evaluate(clause, item) for clause in predicate.clauses)
    value = field_value(item, predicate.field)
    if isinstance(predicate, Equals):
        return value == predicate.value
    if isinstance(predicate, OnOrAfter):
        return value is not None and value >= predicate.value
    needle = predicate.text.casefold()
    return bool(needle) and needle in str(value or "").casefold()


class BaseQueryComposer(Protocol):
    """Interface for building primary-store queries."""

    def normalize(self, query: SearchQuery) -> SearchQuery:
        ...

    def build_primary_query(
        self,
        query: SearchQuery,
        page: int,
        page_size: int,
        now: datetime | None = None,
    ) -> PrimaryQuerySpec:
        ...


class QueryComposer:
    """Default composer applying query length limits."""

    def __init__(self, max_query_length: int = DEFAULT_MAX_QUERY_LENGTH) -> None:
        self._max_query_length = max_query_length

    def normalize(self, query: SearchQuery) -> SearchQuery:
        text = (query.text or "").strip()
        if len(text) > self._max_query_length:
            logger.info(
                "Truncating overlong feed query (len=%d, limit=%d)",
                len(text),
                self._max_query_length,
            )
            text = text[: self._max_query_length]
        scope = (query.creator_scope or "").strip() or None
        if text == query.text and scope == query.creator_scope:
            return query
        return replace(query, text=text, creator_scope=scope)

    def build_primary_query(
        self,
        query: SearchQuery,
        page: int,
        page_size: int,
        now: datetime | None = None,
    ) -> PrimaryQuerySpec:
        return build_primary_query(query, page, page_size, now=now)


__all__ = [
    "AnyOf",
    "BaseQueryComposer",
    "Equals",
    "Field",
    "JOINED_FIELDS",
    "OnOrAfter",
    "OrderBy",
    "Predicate",
    "PrimaryQuerySpec",
    "QueryComposer",
    "TextContains",
    "build_primary_query",
    "evaluate",
    "field_value",
    "iter_fields",
    "order_for",
    "time_range_cutoff",
]
