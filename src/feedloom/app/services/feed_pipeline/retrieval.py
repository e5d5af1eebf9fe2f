"""Primary-store retrieval with malformed-query recovery and join enrichment."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Mapping, Protocol, Sequence

from feedloom.app.services.service_pulse import (
    MALFORMED_QUERY,
    PARTIAL_JOIN,
    ServicePulse,
)

from .exceptions import MalformedQueryError, PartialJoinError, RetrievalError
from .models import ContentItem, Identity, JoinedEntity
from .query_composer import PrimaryQuerySpec

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class QueryPage:
    """Rows returned for one primary query, with an optional total count."""

    items: tuple[ContentItem, ...]
    total: int | None = None


class PrimaryStoreExecutor(Protocol):
    """Runs a :class:`PrimaryQuerySpec` against the primary store.

    Implementations must raise :class:`MalformedQueryError` for specs that
    reference joined fields rather than silently dropping the clause.
    """

    async def execute(
        self, spec: PrimaryQuerySpec
    ) -> QueryPage | Sequence[ContentItem]:
        ...


class JoinedEntityLoader(Protocol):
    """Resolves joined entities for a batch; may raise :class:`PartialJoinError`."""

    async def load(
        self, items: Sequence[ContentItem]
    ) -> Mapping[Identity, JoinedEntity]:
        ...


@dataclass(slots=True)
class FetchedBatch:
    items: list[ContentItem]
    raw_count: int
    total: int | None
    recovered_texts: tuple[str, ...] = ()
    recovered: bool = False


def _coerce_page(result: QueryPage | Sequence[ContentItem] | None) -> QueryPage:
    if result is None:
        return QueryPage(items=())
    if isinstance(result, QueryPage):
        return result
    return QueryPage(items=tuple(result))


class BatchRetriever:
    """Fetch one primary page and enrich it for secondary evaluation."""

    def __init__(
        self,
        executor: PrimaryStoreExecutor,
        joined_loader: JoinedEntityLoader | None = None,
        *,
        timeout: float | None = None,
        pulse: ServicePulse | None = None,
    ) -> None:
        self._executor = executor
        self._joined_loader = joined_loader
        self._timeout = timeout if timeout and timeout > 0 else None
        self._pulse = pulse

    async def fetch(self, spec: PrimaryQuerySpec) -> FetchedBatch:
        texts: tuple[str, ...] = ()
        recovered = False
        try:
            spec.validate()
        except MalformedQueryError as exc:
            spec, texts = self._recover(spec, exc)
            recovered = True

        try:
            page = await self._execute(spec)
        except MalformedQueryError as exc:
            if recovered:
                raise RetrievalError(
                    "Primary store rejected the query after joined predicates were removed"
                ) from exc
            stripped, extra = self._recover(spec, exc)
            if stripped == spec:
                raise RetrievalError(f"Primary store rejected the query: {exc}") from exc
            spec, texts, recovered = stripped, texts + extra, True
            try:
                page = await self._execute(spec)
            except MalformedQueryError as retry_exc:
                raise RetrievalError(
                    "Primary store rejected the query after joined predicates were removed"
                ) from retry_exc

        items = await self._enrich(list(page.items))
        return FetchedBatch(
            items=items,
            raw_count=len(page.items),
            total=page.total,
            recovered_texts=texts,
            recovered=recovered,
        )

    def _recover(
        self, spec: PrimaryQuerySpec, exc: MalformedQueryError
    ) -> tuple[PrimaryQuerySpec, tuple[str, ...]]:
        stripped, texts = spec.without_joined()
        fields = exc.fields or spec.joined_fields()
        logger.warning(
            "Recovered malformed primary query (fields=%s); matching %d text(s) client-side",
            ", ".join(fields) or "unknown",
            len(texts),
        )
        if self._pulse is not None:
            self._pulse.emit(
                MALFORMED_QUERY,
                {"fields": list(fields), "texts": list(texts)},
            )
        return stripped, texts

    async def _execute(self, spec: PrimaryQuerySpec) -> QueryPage:
        try:
            if self._timeout is None:
                result = await self._executor.execute(spec)
            else:
                result = await asyncio.wait_for(
                    self._executor.execute(spec), timeout=self._timeout
                )
        except (MalformedQueryError, RetrievalError):
            raise
        except asyncio.TimeoutError as exc:
            raise RetrievalError(
                f"Primary query timed out after {self._timeout:.1f}s"
            ) from exc
        except Exception as exc:
            logger.exception("Primary store query failed")
            raise RetrievalError(str(exc) or exc.__class__.__name__) from exc
        return _coerce_page(result)

    async def _enrich(self, items: list[ContentItem]) -> list[ContentItem]:
        if self._joined_loader is None:
            return items
        targets = [item for item in items if item.joined is None]
        if not targets:
            return items

        try:
            loaded = dict(await self._joined_loader.load(targets))
        except PartialJoinError as exc:
            loaded = exc.loaded
            logger.warning(
                "Joined entities unavailable for %d of %d items; using native fields",
                len(targets) - len(loaded),
                len(targets),
            )
            if self._pulse is not None:
                self._pulse.emit(
                    PARTIAL_JOIN,
                    {"requested": len(targets), "loaded": len(loaded)},
                )

        if not loaded:
            return items
        return [
            item.with_joined(loaded[item.identity])
            if item.joined is None and item.identity in loaded
            else item
            for item in items
        ]


__all__ = [
    "BatchRetriever",
    "FetchedBatch",
    "JoinedEntityLoader",
    "PrimaryStoreExecutor",
    "QueryPage",
]
