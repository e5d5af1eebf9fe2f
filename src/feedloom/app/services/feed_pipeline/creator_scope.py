"""Creator-scoped re-filtering of an existing result set."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Iterable, Sequence

from feedloom.app.services.service_pulse import SCOPE_LATENCY, ServicePulse

from .models import ContentItem

logger = logging.getLogger(__name__)

DEFAULT_LINEAR_THRESHOLD = 300
DEFAULT_CHUNKED_THRESHOLD = 5000
DEFAULT_CHUNK_SIZE = 1000
DEFAULT_LATENCY_BUDGET_MS = 100.0


class ScopeStrategy(str, Enum):
    LINEAR = "linear"
    INDEXED = "indexed"
    CHUNKED = "chunked"
    EMPTY = "empty"


@dataclass(slots=True, frozen=True)
class ScopeMetrics:
    total: int
    matched: int
    elapsed_ms: float
    strategy: ScopeStrategy
    over_budget: bool

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        return data


class AuthorIndex:
    """Items grouped by author, preserving their original order."""

    __slots__ = ("_groups", "_size")

    def __init__(self, items: Iterable[ContentItem]) -> None:
        groups: dict[str, list[ContentItem]] = {}
        size = 0
        for item in items:
            groups.setdefault(item.author_id, []).append(item)
            size += 1
        self._groups = groups
        self._size = size

    def items_for(self, author_id: str) -> list[ContentItem]:
        return list(self._groups.get(author_id, ()))

    def authors(self) -> list[str]:
        return list(self._groups)

    def __len__(self) -> int:
        return self._size


class CreatorScopeOptimizer:
    """Pick a filtering strategy by dataset size and report slow scoping."""

    def __init__(
        self,
        *,
        linear_threshold: int = DEFAULT_LINEAR_THRESHOLD,
        chunked_threshold: int = DEFAULT_CHUNKED_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        latency_budget_ms: float = DEFAULT_LATENCY_BUDGET_MS,
        pulse: ServicePulse | None = None,
    ) -> None:
        if chunked_threshold < linear_threshold:
            raise ValueError("chunked_threshold must be >= linear_threshold")
        self._linear_threshold = max(int(linear_threshold), 0)
        self._chunked_threshold = int(chunked_threshold)
        self._chunk_size = max(int(chunk_size), 1)
        self._latency_budget_ms = float(latency_budget_ms)
        self._pulse = pulse
        self.last_metrics: ScopeMetrics | None = None

    @property
    def latency_budget_ms(self) -> float:
        return self._latency_budget_ms

    def choose_strategy(self, dataset_size: int) -> ScopeStrategy:
        if dataset_size < self._linear_threshold:
            return ScopeStrategy.LINEAR
        if dataset_size < self._chunked_threshold:
            return ScopeStrategy.INDEXED
        return ScopeStrategy.CHUNKED

    def _chunks(self, items: Sequence[ContentItem]) -> Iterable[Sequence[ContentItem]]:
        for start in range(0, len(items), self._chunk_size):
            yield items[start : start + self._chunk_size]

    def _filter_sync(
        self,
        items: Sequence[ContentItem],
        creator_id: str,
        strategy: ScopeStrategy,
        index: AuthorIndex | None,
    ) -> list[ContentItem]:
        if index is not None or strategy is ScopeStrategy.INDEXED:
            return (index or AuthorIndex(items)).items_for(creator_id)
        if strategy is ScopeStrategy.CHUNKED:
            scoped: list[ContentItem] = []
            for chunk in self._chunks(items):
                scoped.extend(item for item in chunk if item.author_id == creator_id)
            return scoped
        return [item for item in items if item.author_id == creator_id]

    def scope_to_creator(
        self,
        items: Sequence[ContentItem],
        creator_id: str,
        strategy_hint: int | None = None,
        *,
        index: AuthorIndex | None = None,
    ) -> list[ContentItem]:
        """Return the items authored by ``creator_id`` in their original order."""

        start = time.perf_counter()
        if not creator_id or not creator_id.strip():
            logger.warning("Ignoring creator scope with blank creator id")
            self._record(len(items), 0, start, ScopeStrategy.EMPTY, creator_id)
            return []

        strategy = self.choose_strategy(
            strategy_hint if strategy_hint is not None else len(items)
        )
        scoped = self._filter_sync(items, creator_id, strategy, index)
        self._record(len(items), len(scoped), start, strategy, creator_id)
        return scoped

    async def scope_to_creator_async(
        self,
        items: Sequence[ContentItem],
        creator_id: str,
        strategy_hint: int | None = None,
        *,
        index: AuthorIndex | None = None,
    ) -> list[ContentItem]:
        """Async variant; the chunked strategy yields between chunks."""

        dataset_size = strategy_hint if strategy_hint is not None else len(items)
        if (
            index is not None
            or not creator_id
            or self.choose_strategy(dataset_size) is not ScopeStrategy.CHUNKED
        ):
            return self.scope_to_creator(
                items, creator_id, strategy_hint, index=index
            )

        start = time.perf_counter()
        scoped: list[ContentItem] = []
        elapsed_before_yield = 0.0
        for chunk in self._chunks(items):
            chunk_start = time.perf_counter()
            scoped.extend(item for item in chunk if item.author_id == creator_id)
            elapsed_before_yield += time.perf_counter() - chunk_start
            await asyncio.sleep(0)
        # Excludes time suspended at the yields.
        self._record(
            len(items),
            len(scoped),
            start,
            ScopeStrategy.CHUNKED,
            creator_id,
            elapsed_ms=elapsed_before_yield * 1000,
        )
        return scoped

    def _record(
        self,
        total: int,
        matched: int,
        start: float,
        strategy: ScopeStrategy,
        creator_id: str,
        *,
        elapsed_ms: float | None = None,
    ) -> ScopeMetrics:
        if elapsed_ms is None:
            elapsed_ms = (time.perf_counter() - start) * 1000
        over_budget = elapsed_ms > self._latency_budget_ms
        metrics = ScopeMetrics(
            total=total,
            matched=matched,
            elapsed_ms=elapsed_ms,
            strategy=strategy,
            over_budget=over_budget,
        )
        self.last_metrics = metrics
        logger.debug(
            "Creator scope %s: %d -> %d items in %.2fms using %s",
            creator_id,
            total,
            matched,
            elapsed_ms,
            strategy.value,
        )
        if over_budget:
            logger.warning(
                "Slow creator scoping: %.2fms for %d items (budget %.0fms)",
                elapsed_ms,
                total,
                self._latency_budget_ms,
            )
            if self._pulse is not None:
                payload = metrics.as_dict()
                payload["creator_id"] = creator_id
                self._pulse.emit(SCOPE_LATENCY, payload)
        return metrics


__all__ = [
    "AuthorIndex",
    "CreatorScopeOptimizer",
    "ScopeMetrics",
    "ScopeStrategy",
]
