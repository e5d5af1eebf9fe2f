from __future__ import annotations

import asyncio
from typing import Sequence

import pytest

from feedloom.app.services.feed_pipeline import (
    BatchRetriever,
    JoinedEntity,
    MalformedQueryError,
    PartialJoinError,
    PrimaryQuerySpec,
    QueryPage,
    RetrievalError,
)
from feedloom.app.services.feed_pipeline.query_composer import (
    AnyOf,
    Field,
    OrderBy,
    TextContains,
)
from feedloom.app.services.service_pulse import (
    MALFORMED_QUERY,
    PARTIAL_JOIN,
    ServicePulse,
)


def _spec(*predicates, text: str | None = None) -> PrimaryQuerySpec:
    return PrimaryQuerySpec(
        predicates=tuple(predicates),
        order=(OrderBy(Field.CREATED_AT, descending=True),),
        offset=0,
        limit=10,
        text_match=TextContains(Field.BODY, text) if text else None,
    )


class _RecordingExecutor:
    def __init__(self, result, *, reject_joined: bool = True) -> None:
        self._result = result
        self._reject_joined = reject_joined
        self.specs: list[PrimaryQuerySpec] = []

    async def execute(self, spec: PrimaryQuerySpec):
        self.specs.append(spec)
        if self._reject_joined:
            spec.validate()
        return self._result


class _RejectingExecutor:
    async def execute(self, spec: PrimaryQuerySpec):
        raise MalformedQueryError("column does not exist", fields=("joined.title",))


class _SlowExecutor:
    async def execute(self, spec: PrimaryQuerySpec):
        await asyncio.sleep(1)
        return []


class _Loader:
    def __init__(self, mapping, *, partial: bool = False) -> None:
        self._mapping = mapping
        self._partial = partial

    async def load(self, items: Sequence):
        if self._partial:
            raise PartialJoinError("join table timed out", loaded=self._mapping)
        return self._mapping


@pytest.mark.asyncio
async def test_fetch_coerces_sequences_and_counts_raw_rows(make_item) -> None:
    executor = _RecordingExecutor([make_item("p1"), make_item("p2")])

    batch = await BatchRetriever(executor).fetch(_spec(text="music"))

    assert [item.id for item in batch.items] == ["p1", "p2"]
    assert batch.raw_count == 2
    assert batch.total is None
    assert not batch.recovered


@pytest.mark.asyncio
async def test_malformed_spec_is_stripped_before_execution(make_item) -> None:
    pulse = ServicePulse()
    executor = _RecordingExecutor(QueryPage(items=(make_item("p1"),), total=1))
    spec = _spec(
        AnyOf(
            (
                TextContains(Field.BODY, "music"),
                TextContains(Field.JOINED_TITLE, "music"),
            )
        )
    )

    batch = await BatchRetriever(executor, pulse=pulse).fetch(spec)

    assert batch.recovered
    assert batch.recovered_texts == ("music",)
    assert executor.specs[0].joined_fields() == ()
    assert pulse.count(MALFORMED_QUERY) == 1
    assert pulse.latest(MALFORMED_QUERY)["fields"] == ["joined.title"]


@pytest.mark.asyncio
async def test_store_rejection_after_stripping_is_a_retrieval_error() -> None:
    with pytest.raises(RetrievalError):
        await BatchRetriever(_RejectingExecutor()).fetch(
            _spec(TextContains(Field.JOINED_TITLE, "music"))
        )


@pytest.mark.asyncio
async def test_store_rejection_of_a_native_spec_is_a_retrieval_error() -> None:
    with pytest.raises(RetrievalError):
        await BatchRetriever(_RejectingExecutor()).fetch(_spec(text="music"))


@pytest.mark.asyncio
async def test_timeout_becomes_retrieval_error() -> None:
    retriever = BatchRetriever(_SlowExecutor(), timeout=0.01)

    with pytest.raises(RetrievalError, match="timed out"):
        await retriever.fetch(_spec())


@pytest.mark.asyncio
async def test_joined_entities_are_attached(make_item) -> None:
    item = make_item("p2", body="hello")
    loader = _Loader({item.identity: JoinedEntity(title="Music Theory")})

    batch = await BatchRetriever(_RecordingExecutor([item]), loader).fetch(_spec())

    assert batch.items[0].joined_title == "Music Theory"


@pytest.mark.asyncio
async def test_partial_join_keeps_loaded_entities(make_item) -> None:
    pulse = ServicePulse()
    first = make_item("p1")
    second = make_item("p2")
    loader = _Loader({first.identity: JoinedEntity(title="Loaded")}, partial=True)
    retriever = BatchRetriever(
        _RecordingExecutor([first, second]), loader, pulse=pulse
    )

    batch = await retriever.fetch(_spec())

    assert batch.items[0].joined_title == "Loaded"
    assert batch.items[1].joined is None
    assert pulse.latest(PARTIAL_JOIN) == {"requested": 2, "loaded": 1}
