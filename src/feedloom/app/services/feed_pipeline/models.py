"""Value types shared by the feed composition pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from .exceptions import InvalidFeedFilter


class ContentKind(str, Enum):
    POST = "post"
    TRACK = "track"
    USER = "user"


class TimeRange(str, Enum):
    ALL = "all"
    TODAY = "today"
    WEEK = "week"
    MONTH = "month"


class SortKey(str, Enum):
    NEWEST = "newest"
    OLDEST = "oldest"
    POPULAR = "popular"


class PaginationMode(str, Enum):
    FRESH_SEARCH = "fresh-search"
    PAGING = "paging"
    SCOPED = "scoped"


Identity = tuple[str, str]


def _coerce_enum(enum_cls: type[Enum], value: Any, name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidFeedFilter(
            f"Unsupported {name} {value!r}; expected one of: {allowed}"
        ) from exc


@dataclass(slots=True, frozen=True)
class JoinedEntity:
    """Text owned by a related record (e.g. the track linked to a post)."""

    title: str = ""
    description: str = ""


@dataclass(slots=True, frozen=True)
class ContentItem:
    """A single feed entry as returned by the primary store."""

    id: str
    kind: ContentKind
    author_id: str
    created_at: datetime
    body: str = ""
    joined: JoinedEntity | None = None
    popularity: int = 0
    matched_primary: bool | None = None

    @property
    def identity(self) -> Identity:
        return (self.kind.value, str(self.id))

    @property
    def joined_title(self) -> str:
        return self.joined.title if self.joined is not None else ""

    @property
    def joined_description(self) -> str:
        return self.joined.description if self.joined is not None else ""

    def with_joined(self, joined: JoinedEntity | None) -> "ContentItem":
        return replace(self, joined=joined)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "kind": self.kind.value,
            "author_id": self.author_id,
            "created_at": self.created_at.isoformat(),
            "body": self.body,
            "popularity": self.popularity,
        }
        if self.joined is not None:
            data["joined"] = {
                "title": self.joined.title,
                "description": self.joined.description,
            }
        return data


@dataclass(slots=True, frozen=True)
class FeedFilters:
    """Structured filters applied natively by the primary store."""

    kind: ContentKind | None = None
    time_range: TimeRange = TimeRange.ALL
    sort: SortKey = SortKey.NEWEST
    author_id: str | None = None

    @classmethod
    def from_params(
        cls,
        *,
        kind: Any = None,
        time_range: Any = None,
        sort: Any = None,
        author_id: Any = None,
    ) -> "FeedFilters":
        """Build filters from loosely typed values, raising :class:`InvalidFeedFilter`."""

        resolved_kind = None
        if kind not in (None, "", "all"):
            resolved_kind = _coerce_enum(ContentKind, kind, "content kind")
        return cls(
            kind=resolved_kind,
            time_range=_coerce_enum(TimeRange, time_range or TimeRange.ALL, "time range"),
            sort=_coerce_enum(SortKey, sort or SortKey.NEWEST, "sort key"),
            author_id=(str(author_id).strip() or None) if author_id else None,
        )

    @property
    def is_default(self) -> bool:
        return self == FeedFilters()

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value if self.kind is not None else None,
            "time_range": self.time_range.value,
            "sort": self.sort.value,
            "author_id": self.author_id,
        }


@dataclass(slots=True, frozen=True)
class SearchQuery:
    """Immutable description of what the feed should show."""

    text: str = ""
    filters: FeedFilters = field(default_factory=FeedFilters)
    creator_scope: str | None = None

    def with_text(self, text: str) -> "SearchQuery":
        return replace(self, text=text)

    def with_filters(self, filters: FeedFilters) -> "SearchQuery":
        return replace(self, filters=filters)

    def with_scope(self, creator_id: str | None) -> "SearchQuery":
        return replace(self, creator_scope=creator_id or None)

    def same_search(self, other: "SearchQuery | None") -> bool:
        """Return whether ``other`` has identical text and filters."""

        if other is None:
            return False
        return self.text == other.text and self.filters == other.filters

    def as_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "filters": self.filters.as_dict(),
            "creator_scope": self.creator_scope,
        }


@dataclass(slots=True, frozen=True)
class FeedResult:
    """Outcome of a composition cycle handed back to the caller."""

    items: tuple[ContentItem, ...]
    has_more: bool
    applied_scope: str | None
    replace: bool
    page: int
    mode: PaginationMode
    generation: int
    total_known: int | None = None
    stale: bool = False
    skipped: bool = False
    from_cache: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "items": [item.as_dict() for item in self.items],
            "has_more": self.has_more,
            "applied_scope": self.applied_scope,
            "replace": self.replace,
            "page": self.page,
            "mode": self.mode.value,
            "generation": self.generation,
            "total_known": self.total_known,
            "stale": self.stale,
            "skipped": self.skipped,
            "from_cache": self.from_cache,
        }


__all__ = [
    "ContentItem",
    "ContentKind",
    "FeedFilters",
    "FeedResult",
    "Identity",
    "JoinedEntity",
    "PaginationMode",
    "SearchQuery",
    "SortKey",
    "TimeRange",
]
