from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Sequence

import pytest

from feedloom.app.db import InMemoryContentStore
from feedloom.app.services.feed_pipeline import (
    ContentItem,
    ContentKind,
    JoinedEntity,
    PrimaryQuerySpec,
    QueryPage,
)

BASE_TIME = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def build_item(
    item_id: str,
    *,
    kind: ContentKind = ContentKind.POST,
    author: str = "author-1",
    body: str = "",
    minutes_ago: int = 0,
    popularity: int = 0,
    joined: JoinedEntity | None = None,
) -> ContentItem:
    return ContentItem(
        id=item_id,
        kind=kind,
        author_id=author,
        created_at=BASE_TIME - timedelta(minutes=minutes_ago),
        body=body,
        popularity=popularity,
        joined=joined,
    )


class ScriptedExecutor:
    """Return canned pages keyed by page number, ignoring predicates."""

    def __init__(self, pages: Sequence[Sequence[ContentItem]], total: int | None = None) -> None:
        self._pages = [tuple(page) for page in pages]
        self._total = total
        self.calls: list[PrimaryQuerySpec] = []

    async def execute(self, spec: PrimaryQuerySpec) -> QueryPage:
        self.calls.append(spec)
        index = spec.offset // spec.limit
        items = self._pages[index] if index < len(self._pages) else ()
        return QueryPage(items=items, total=self._total)


class GatedExecutor:
    """Delegate to ``store`` but hold queries for gated texts until released."""

    def __init__(self, store: InMemoryContentStore) -> None:
        self._store = store
        self._gates: dict[str, asyncio.Event] = {}
        self.calls: list[PrimaryQuerySpec] = []

    def gate(self, text: str) -> asyncio.Event:
        event = asyncio.Event()
        self._gates[text] = event
        return event

    async def execute(self, spec: PrimaryQuerySpec) -> QueryPage:
        self.calls.append(spec)
        text = spec.text_match.text if spec.text_match is not None else ""
        gate = self._gates.get(text)
        if gate is not None:
            await gate.wait()
        return await self._store.execute(spec)


class FlakyExecutor:
    """Fail the first ``failures`` calls, then delegate to ``store``."""

    def __init__(self, store: InMemoryContentStore, failures: int = 1) -> None:
        self._store = store
        self.failures = failures
        self.calls = 0

    async def execute(self, spec: PrimaryQuerySpec) -> QueryPage:
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise ConnectionError("primary store unavailable")
        return await self._store.execute(spec)


@pytest.fixture
def make_item():
    return build_item


@pytest.fixture
def music_store() -> InMemoryContentStore:
    store = InMemoryContentStore()
    store.add(build_item("p1", body="music video", minutes_ago=1))
    store.add(
        build_item("p2", body="hello", minutes_ago=2),
        JoinedEntity(title="Music Theory", description="Intervals and scales"),
    )
    store.add(
        build_item("p3", body="weekend plans", minutes_ago=3),
        JoinedEntity(title="Road Trip", description="Driving playlist"),
    )
    return store
