"""In-process primary store used by the HTTP surface and tests."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import orjson

from feedloom.app.services.feed_pipeline.exceptions import PartialJoinError
from feedloom.app.services.feed_pipeline.models import (
    ContentItem,
    ContentKind,
    Identity,
    JoinedEntity,
)
from feedloom.app.services.feed_pipeline.query_composer import (
    PrimaryQuerySpec,
    evaluate,
    field_value,
)
from feedloom.app.services.feed_pipeline.retrieval import QueryPage

logger = logging.getLogger(__name__)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def item_from_record(record: Mapping[str, Any]) -> tuple[ContentItem, JoinedEntity | None]:
    """Build a :class:`ContentItem` and its joined entity from a seed record."""

    item = ContentItem(
        id=str(record["id"]),
        kind=ContentKind(str(record.get("kind", ContentKind.POST.value))),
        author_id=str(record["author_id"]),
        created_at=_parse_timestamp(record["created_at"]),
        body=str(record.get("body") or ""),
        popularity=int(record.get("popularity") or 0),
    )
    joined_raw = record.get("joined")
    joined = None
    if isinstance(joined_raw, Mapping):
        joined = JoinedEntity(
            title=str(joined_raw.get("title") or ""),
            description=str(joined_raw.get("description") or ""),
        )
    return item, joined


class InMemoryContentStore:
    """Primary store over a list of items with a separate joined-entity table.

    Rows are returned without their joined entity; :meth:`load` resolves those
    the way a second query against the related table would.
    """

    def __init__(
        self,
        items: Iterable[ContentItem] = (),
        joined: Mapping[Identity, JoinedEntity] | None = None,
        *,
        unavailable_joins: Iterable[Identity] = (),
    ) -> None:
        self._items: dict[Identity, ContentItem] = {}
        self._joined: dict[Identity, JoinedEntity] = dict(joined or {})
        self._unavailable: set[Identity] = set(unavailable_joins)
        self._lock = asyncio.Lock()
        self.queries: list[PrimaryQuerySpec] = []
        self.extend(items)

    @classmethod
    def from_seed_file(cls, path: str | Path) -> "InMemoryContentStore":
        raw = Path(path).expanduser().read_bytes()
        records = orjson.loads(raw)
        if isinstance(records, Mapping):
            records = records.get("items", [])
        store = cls()
        for record in records:
            item, joined = item_from_record(record)
            store.add(item, joined)
        logger.info("Loaded %d feed items from %s", len(store), path)
        return store

    def add(self, item: ContentItem, joined: JoinedEntity | None = None) -> None:
        if item.joined is not None and joined is None:
            joined = item.joined
            item = item.with_joined(None)
        self._items[item.identity] = item
        if joined is not None:
            self._joined[item.identity] = joined

    def extend(self, items: Iterable[ContentItem]) -> None:
        for item in items:
            self.add(item)

    def __len__(self) -> int:
        return len(self._items)

    def _sorted(self, rows: list[ContentItem], spec: PrimaryQuerySpec) -> list[ContentItem]:
        # Stable sorts applied from the least significant key.
        for order in reversed(spec.order):
            rows.sort(
                key=lambda item, f=order.field: field_value(item, f),
                reverse=order.descending,
            )
        return rows

    async def execute(self, spec: PrimaryQuerySpec) -> QueryPage:
        spec.validate()
        async with self._lock:
            self.queries.append(spec)
            rows = [
                item
                for item in self._items.values()
                if all(evaluate(predicate, item) for predicate in spec.predicates)
            ]
        rows = self._sorted(rows, spec)
        window = rows[spec.offset : spec.offset + spec.limit]
        if spec.text_match is not None:
            window = [
                replace(item, matched_primary=evaluate(spec.text_match, item))
                for item in window
            ]
        return QueryPage(items=tuple(window), total=len(rows))

    async def load(self, items: Sequence[ContentItem]) -> dict[Identity, JoinedEntity]:
        loaded: dict[Identity, JoinedEntity] = {}
        missing: list[Identity] = []
        for item in items:
            key = item.identity
            if key in self._unavailable:
                missing.append(key)
                continue
            joined = self._joined.get(key)
            if joined is not None:
                loaded[key] = joined
        if missing:
            raise PartialJoinError(
                f"Joined entities unavailable for {len(missing)} items",
                loaded=loaded,
                missing=tuple(missing),
            )
        return loaded


__all__ = ["InMemoryContentStore", "item_from_record"]
