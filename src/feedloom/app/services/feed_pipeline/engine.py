"""Feed composition engine: one paginated, duplicate-free feed per session."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Sequence

from ulid import ULID

from feedloom.app.services.feed_config import FeedConfig
from feedloom.app.services.service_pulse import (
    RETRIEVAL_ERROR,
    STALE_DISCARD,
    ServicePulse,
)

from .creator_scope import CreatorScopeOptimizer, ScopeStrategy
from .dedup_index import DeduplicationIndex
from .exceptions import CompositionError, RetrievalError, StaleResultDiscard
from .models import ContentItem, FeedResult, SearchQuery
from .pagination import (
    FetchState,
    FetchTicket,
    PaginationState,
    PaginationStateMachine,
    Trigger,
)
from .query_composer import BaseQueryComposer, QueryComposer
from .retrieval import BatchRetriever, JoinedEntityLoader, PrimaryStoreExecutor
from .scope_cache import ScopeCache, ScopeSnapshot
from .secondary_predicate import apply_secondary_predicate_async

logger = logging.getLogger(__name__)


class FeedAction(str, Enum):
    AUTO = "auto"
    LOAD_MORE = "load_more"
    SCOPE_CHANGE = "scope_change"
    RETRY = "retry"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FeedCompositionEngine:
    """Compose feed pages for one session on top of a primary store."""

    def __init__(
        self,
        executor: PrimaryStoreExecutor,
        *,
        config: FeedConfig | None = None,
        joined_loader: JoinedEntityLoader | None = None,
        composer: BaseQueryComposer | None = None,
        optimizer: CreatorScopeOptimizer | None = None,
        scope_cache: ScopeCache | None = None,
        pulse: ServicePulse | None = None,
        session_id: str | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        cfg = config or FeedConfig()
        self._config = cfg
        self._pulse = pulse
        self._clock = clock
        self.session_id = session_id or str(ULID())
        self._composer = composer or QueryComposer(cfg.max_query_length)
        self._optimizer = optimizer or CreatorScopeOptimizer(
            linear_threshold=cfg.scope.linear_threshold,
            chunked_threshold=cfg.scope.chunked_threshold,
            chunk_size=cfg.scope.chunk_size,
            latency_budget_ms=cfg.scope.latency_budget_ms,
            pulse=pulse,
        )
        self._scope_cache = scope_cache or ScopeCache(
            maxsize=cfg.cache.maxsize, ttl=cfg.cache.ttl
        )
        self._retriever = BatchRetriever(
            executor,
            joined_loader,
            timeout=cfg.query_timeout,
            pulse=pulse,
        )
        self._dedup = DeduplicationIndex()
        self._machine = PaginationStateMachine(
            cfg.page_size, self._dedup, history_size=cfg.history_size
        )
        self._visible: list[ContentItem] = []

    @property
    def state(self) -> FetchState:
        return self._machine.state

    @property
    def pagination(self) -> PaginationState:
        return self._machine.pagination

    @property
    def generation(self) -> int:
        return self._machine.generation

    @property
    def query(self) -> SearchQuery | None:
        return self._machine.query

    @property
    def dedup_index(self) -> DeduplicationIndex:
        return self._dedup

    @property
    def optimizer(self) -> CreatorScopeOptimizer:
        return self._optimizer

    @property
    def visible_items(self) -> tuple[ContentItem, ...]:
        return tuple(self._visible)

    def snapshot(self) -> dict[str, Any]:
        data = self._machine.snapshot()
        data["session_id"] = self.session_id
        data["visible"] = len(self._visible)
        return data

    async def compose(
        self,
        query: SearchQuery,
        action: FeedAction = FeedAction.AUTO,
    ) -> FeedResult:
        """Run one composition cycle for ``query``.

        Raises :class:`CompositionError` when the primary store fails; the
        previously composed list is left untouched and :meth:`retry` re-enters
        the failed fetch.
        """

        if action is FeedAction.RETRY:
            return await self.retry()

        query = self._composer.normalize(query)
        if action is FeedAction.LOAD_MORE:
            if query == self.query:
                return await self.load_more()
            logger.debug("Load more requested for a different query; recomposing")
            action = FeedAction.AUTO

        trigger = self._trigger_for(query, action)
        if trigger is Trigger.CREATOR_SCOPE:
            return await self._change_scope(query)

        ticket = self._machine.begin(query, trigger)
        return await self._run(ticket)

    async def load_more(self) -> FeedResult:
        if not self._machine.can_load_more() or self.query is None:
            logger.debug(
                "Ignoring load more in state %s (has_more=%s)",
                self.state.value,
                self.pagination.has_more,
            )
            return self._skipped()
        ticket = self._machine.begin(self.query, Trigger.LOAD_MORE)
        return await self._run(ticket)

    async def retry(self) -> FeedResult:
        if self.state is not FetchState.ERROR:
            logger.debug("Ignoring retry in state %s", self.state.value)
            return self._skipped()
        ticket = self._machine.retry()
        return await self._run(ticket)

    def reset_session(self) -> None:
        """Forget pagination, dedup state and cached snapshots for this session."""

        self._machine.reset()
        self._visible = []
        dropped = self._scope_cache.discard_session(self.session_id)
        logger.debug(
            "Reset feed session %s (dropped %d cached snapshots)",
            self.session_id,
            dropped,
        )

    def _trigger_for(self, query: SearchQuery, action: FeedAction) -> Trigger:
        current = self.query
        if current is None:
            return Trigger.INITIAL
        if query.text != current.text:
            return Trigger.SEARCH_TEXT
        if query.filters != current.filters:
            return Trigger.FILTERS
        if (
            action is FeedAction.SCOPE_CHANGE
            or query.creator_scope != current.creator_scope
        ):
            return Trigger.CREATOR_SCOPE
        return Trigger.REFRESH

    async def _change_scope(self, query: SearchQuery) -> FeedResult:
        previous = self.query
        if (
            previous is not None
            and previous.creator_scope is None
            and self.state is FetchState.READY
        ):
            self._scope_cache.store(
                self.session_id,
                previous,
                ScopeSnapshot(
                    items=tuple(self._visible),
                    page=self.pagination.current_page,
                    has_more=self.pagination.has_more,
                    total_known=self.pagination.total_known,
                ),
            )

        snapshot = None
        if previous is not None and query.same_search(previous):
            snapshot = self._scope_cache.get(self.session_id, query)

        ticket = self._machine.begin(query, Trigger.CREATOR_SCOPE)
        if snapshot is None:
            return await self._run(ticket)
        return await self._apply_snapshot(ticket, snapshot)

    async def _apply_snapshot(
        self, ticket: FetchTicket, snapshot: ScopeSnapshot
    ) -> FeedResult:
        creator_id = ticket.query.creator_scope
        if creator_id is None:
            admitted = self._dedup.admit(snapshot.items)
            self._visible = admitted
            self._machine.restore(
                ticket,
                page=snapshot.page,
                has_more=snapshot.has_more,
                total_known=snapshot.total_known,
            )
            logger.debug(
                "Restored %d unscoped items from cache for session %s",
                len(admitted),
                self.session_id,
            )
            return self._result(ticket, admitted, replace=True, from_cache=True)

        index = None
        strategy = self._optimizer.choose_strategy(len(snapshot.items))
        if strategy is not ScopeStrategy.LINEAR:
            index = snapshot.author_index()
        scoped = await self._optimizer.scope_to_creator_async(
            snapshot.items, creator_id, index=index
        )
        if not self._machine.is_current(ticket):
            return self._discard(ticket)

        admitted = self._dedup.admit(scoped)
        self._visible = admitted
        self._machine.restore(
            ticket,
            page=snapshot.page,
            has_more=snapshot.has_more,
            total_known=None if snapshot.has_more else len(admitted),
        )
        return self._result(ticket, admitted, replace=True, from_cache=True)

    async def _narrow(
        self,
        ticket: FetchTicket,
        items: list[ContentItem],
        recovered_texts: Iterable[str] = (),
    ) -> list[ContentItem]:
        query_text = ticket.query.text
        texts = (query_text, *recovered_texts)
        for text in dict.fromkeys(t for t in texts if t and t.strip()):
            # matched_primary only answers for the query's own text.
            items = await apply_secondary_predicate_async(
                items,
                text,
                self._config.secondary_yield_every,
                use_primary_flag=text == query_text,
            )
        creator_id = ticket.query.creator_scope
        if creator_id:
            items = await self._optimizer.scope_to_creator_async(items, creator_id)
        return items

    async def _run(self, ticket: FetchTicket) -> FeedResult:
        auto_fetch = self._config.auto_fetch
        admitted_total: list[ContentItem] = []
        extra_pages = 0
        has_more = False
        total: int | None = None

        while True:
            spec = self._composer.build_primary_query(
                ticket.query,
                self.pagination.current_page,
                ticket.page_size,
                now=self._clock(),
            )
            try:
                batch = await self._retriever.fetch(spec)
            except RetrievalError as exc:
                if admitted_total and self._machine.is_current(ticket):
                    # Keep what the earlier pages of this cycle already admitted.
                    logger.warning(
                        "Follow-up fetch failed after %d items; finishing page early: %s",
                        len(admitted_total),
                        exc,
                    )
                    self._machine.rewind(ticket)
                    has_more = True
                    break
                return self._fail(ticket, exc)

            if not self._machine.is_current(ticket):
                return self._discard(ticket)

            narrowed = await self._narrow(ticket, batch.items, batch.recovered_texts)
            if not self._machine.is_current(ticket):
                return self._discard(ticket)

            admitted_total.extend(self._dedup.admit(narrowed))
            has_more = batch.raw_count >= ticket.page_size
            # Executor totals count raw rows, not client-side narrowed ones.
            narrowed_client_side = bool(
                (ticket.query.text and ticket.query.text.strip())
                or ticket.query.creator_scope
                or batch.recovered_texts
            )
            total = None if narrowed_client_side else batch.total

            if (
                has_more
                and len(admitted_total) < auto_fetch.min_results
                and extra_pages < auto_fetch.max_pages
            ):
                extra_pages += 1
                self._machine.advance(ticket)
                logger.debug(
                    "Auto-fetching page %d for session %s (%d new items so far)",
                    self.pagination.current_page,
                    self.session_id,
                    len(admitted_total),
                )
                continue
            break

        if ticket.reset:
            self._visible = list(admitted_total)
        else:
            self._visible.extend(admitted_total)
        if total is None and not has_more:
            total = len(self._visible)

        self._machine.complete(ticket, has_more=has_more, total_known=total)
        logger.debug(
            "Composed %d items for session %s (page=%d, mode=%s, has_more=%s)",
            len(admitted_total),
            self.session_id,
            self.pagination.current_page,
            self.pagination.mode.value,
            has_more,
        )
        return self._result(ticket, admitted_total, replace=ticket.reset)

    def _fail(self, ticket: FetchTicket, exc: RetrievalError) -> FeedResult:
        if not self._machine.fail(ticket, exc):
            return self._discard(ticket)
        if self._pulse is not None:
            self._pulse.emit(
                RETRIEVAL_ERROR,
                {
                    "session_id": self.session_id,
                    "generation": ticket.generation,
                    "error": str(exc),
                },
            )
        raise CompositionError(
            "The feed could not be loaded", generation=ticket.generation, cause=exc
        ) from exc

    def _discard(self, ticket: FetchTicket) -> FeedResult:
        notice = StaleResultDiscard(ticket.generation, self.generation)
        logger.debug("%s (session %s)", notice, self.session_id)
        if self._pulse is not None:
            self._pulse.emit(
                STALE_DISCARD,
                {
                    "session_id": self.session_id,
                    "generation": notice.generation,
                    "current": notice.current,
                },
            )
        return FeedResult(
            items=(),
            has_more=self.pagination.has_more,
            applied_scope=ticket.query.creator_scope,
            replace=False,
            page=ticket.page,
            mode=ticket.mode,
            generation=ticket.generation,
            stale=True,
        )

    def _skipped(self) -> FeedResult:
        pagination = self.pagination
        query = self.query
        return FeedResult(
            items=(),
            has_more=pagination.has_more,
            applied_scope=query.creator_scope if query else None,
            replace=False,
            page=pagination.current_page,
            mode=pagination.mode,
            generation=self.generation,
            total_known=pagination.total_known,
            skipped=True,
        )

    def _result(
        self,
        ticket: FetchTicket,
        items: Sequence[ContentItem],
        *,
        replace: bool,
        from_cache: bool = False,
    ) -> FeedResult:
        pagination = self.pagination
        return FeedResult(
            items=tuple(items),
            has_more=pagination.has_more,
            applied_scope=ticket.query.creator_scope,
            replace=replace,
            page=pagination.current_page,
            mode=pagination.mode,
            generation=ticket.generation,
            total_known=pagination.total_known,
            from_cache=from_cache,
        )


__all__ = ["FeedAction", "FeedCompositionEngine"]
