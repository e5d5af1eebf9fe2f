"""Explicit pagination state machine with generation tokens.

Every triggering action moves the machine into ``fetching`` and mints a new
generation. A fetch may only complete or fail the machine while its ticket
still carries the current generation; anything older is stale and must be
dropped by the caller without touching visible state.
"""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

from .dedup_index import DeduplicationIndex
from .exceptions import InvalidTransition
from .models import PaginationMode, SearchQuery

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_SIZE = 50


class FetchState(str, Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    READY = "ready"
    ERROR = "error"


class Trigger(str, Enum):
    INITIAL = "initial"
    SEARCH_TEXT = "search_text"
    FILTERS = "filters"
    REFRESH = "refresh"
    CREATOR_SCOPE = "creator_scope"
    LOAD_MORE = "load_more"
    RETRY = "retry"


_RESET_TRIGGERS = frozenset(
    {
        Trigger.INITIAL,
        Trigger.SEARCH_TEXT,
        Trigger.FILTERS,
        Trigger.REFRESH,
        Trigger.CREATOR_SCOPE,
    }
)


@dataclass(slots=True)
class PaginationState:
    page_size: int
    current_page: int = 1
    total_known: int | None = None
    has_more: bool = False
    mode: PaginationMode = PaginationMode.FRESH_SEARCH

    def validate(self) -> list[str]:
        """Return human readable consistency problems, if any."""

        issues: list[str] = []
        if self.current_page < 1:
            issues.append(f"current_page must be >= 1 (got {self.current_page})")
        if self.page_size < 1:
            issues.append(f"page_size must be >= 1 (got {self.page_size})")
        if self.total_known is not None and self.total_known < 0:
            issues.append(f"total_known must not be negative (got {self.total_known})")
        if self.mode is PaginationMode.PAGING and self.current_page == 1:
            issues.append("paging mode requires current_page > 1")
        return issues

    def snapshot(self) -> dict[str, Any]:
        data = asdict(self)
        data["mode"] = self.mode.value
        return data


@dataclass(slots=True, frozen=True)
class FetchTicket:
    """Identifies one in-flight fetch cycle."""

    generation: int
    trigger: Trigger
    query: SearchQuery
    page: int
    page_size: int
    mode: PaginationMode
    reset: bool


@dataclass(slots=True, frozen=True)
class TransitionRecord:
    source: FetchState
    target: FetchState
    trigger: Trigger | None
    generation: int
    at: float = field(default_factory=time.monotonic)


class PaginationStateMachine:
    """Own pagination state and the generation token for one session."""

    def __init__(
        self,
        page_size: int,
        dedup_index: DeduplicationIndex,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self._page_size = page_size
        self._dedup = dedup_index
        self._pagination = PaginationState(page_size=page_size)
        self._state = FetchState.IDLE
        self._generation = 0
        self._query: SearchQuery | None = None
        self._active: FetchTicket | None = None
        self._failed: FetchTicket | None = None
        self._history: deque[TransitionRecord] = deque(maxlen=max(history_size, 1))

    @property
    def state(self) -> FetchState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pagination(self) -> PaginationState:
        return self._pagination

    @property
    def query(self) -> SearchQuery | None:
        return self._query

    @property
    def dedup_index(self) -> DeduplicationIndex:
        return self._dedup

    @property
    def active(self) -> FetchTicket | None:
        return self._active

    @property
    def history(self) -> tuple[TransitionRecord, ...]:
        return tuple(self._history)

    def _move(self, target: FetchState, trigger: Trigger | None) -> None:
        record = TransitionRecord(
            source=self._state,
            target=target,
            trigger=trigger,
            generation=self._generation,
        )
        self._history.append(record)
        logger.debug(
            "Pagination %s -> %s (trigger=%s, generation=%d)",
            record.source.value,
            target.value,
            trigger.value if trigger else None,
            self._generation,
        )
        self._state = target

    def can_load_more(self) -> bool:
        return self._state is FetchState.READY and self._pagination.has_more

    def begin(self, query: SearchQuery, trigger: Trigger) -> FetchTicket:
        """Enter ``fetching`` for ``trigger`` and return the new ticket."""

        if trigger is Trigger.RETRY:
            return self.retry()
        if trigger is Trigger.LOAD_MORE:
            if not self.can_load_more():
                raise InvalidTransition(
                    f"Cannot load more from state {self._state.value} "
                    f"(has_more={self._pagination.has_more})"
                )
            page = self._pagination.current_page + 1
            mode = PaginationMode.PAGING
            reset = False
            query = self._query or query
        elif trigger in _RESET_TRIGGERS:
            page = 1
            reset = True
            if query.creator_scope and trigger in (
                Trigger.CREATOR_SCOPE,
                Trigger.INITIAL,
            ):
                mode = PaginationMode.SCOPED
            else:
                mode = PaginationMode.FRESH_SEARCH
        else:  # pragma: no cover - exhaustive enum
            raise InvalidTransition(f"Unknown trigger {trigger!r}")

        return self._enter_fetching(query, trigger, page, mode, reset)

    def retry(self) -> FetchTicket:
        """Replay the failed ticket; only valid from ``error``."""

        if self._state is not FetchState.ERROR or self._failed is None:
            raise InvalidTransition(f"Cannot retry from state {self._state.value}")
        failed = self._failed
        return self._enter_fetching(
            failed.query, Trigger.RETRY, failed.page, failed.mode, failed.reset
        )

    def _enter_fetching(
        self,
        query: SearchQuery,
        trigger: Trigger,
        page: int,
        mode: PaginationMode,
        reset: bool,
    ) -> FetchTicket:
        self._generation += 1
        self._query = query
        self._failed = None
        if reset:
            self._dedup.reset()
            self._pagination.total_known = None
            self._pagination.has_more = False
        self._pagination.current_page = page
        self._pagination.mode = mode
        ticket = FetchTicket(
            generation=self._generation,
            trigger=trigger,
            query=query,
            page=page,
            page_size=self._page_size,
            mode=mode,
            reset=reset,
        )
        self._active = ticket
        self._move(FetchState.FETCHING, trigger)
        return ticket

    def is_current(self, ticket: FetchTicket) -> bool:
        return (
            ticket.generation == self._generation
            and self._state is FetchState.FETCHING
        )

    def advance(self, ticket: FetchTicket) -> int:
        """Move to the next page inside the same cycle and return it."""

        if not self.is_current(ticket):
            raise InvalidTransition("Cannot advance a stale ticket")
        self._pagination.current_page += 1
        return self._pagination.current_page

    def rewind(self, ticket: FetchTicket) -> int:
        """Undo one :meth:`advance` so a page that failed is fetched again later.

        Never moves below the page the ticket started on.
        """

        if not self.is_current(ticket):
            raise InvalidTransition("Cannot rewind a stale ticket")
        if self._pagination.current_page > ticket.page:
            self._pagination.current_page -= 1
        return self._pagination.current_page

    def complete(
        self,
        ticket: FetchTicket,
        *,
        has_more: bool,
        total_known: int | None = None,
    ) -> bool:
        """Apply a successful result; return ``False`` when ``ticket`` is stale."""

        if not self.is_current(ticket):
            return False
        self._pagination.has_more = has_more
        self._pagination.total_known = total_known
        issues = self._pagination.validate()
        if issues:
            logger.warning("Inconsistent pagination state: %s", "; ".join(issues))
        self._active = None
        self._move(FetchState.READY, ticket.trigger)
        return True

    def restore(
        self,
        ticket: FetchTicket,
        *,
        page: int,
        has_more: bool,
        total_known: int | None = None,
    ) -> bool:
        """Complete ``ticket`` with a previously cached pagination position."""

        if not self.is_current(ticket):
            return False
        self._pagination.current_page = max(int(page), 1)
        return self.complete(ticket, has_more=has_more, total_known=total_known)

    def fail(self, ticket: FetchTicket, error: BaseException) -> bool:
        """Record a failure; return ``False`` when ``ticket`` is stale."""

        if not self.is_current(ticket):
            return False
        logger.info(
            "Fetch for generation %d failed: %s", ticket.generation, error
        )
        self._failed = ticket
        self._active = None
        self._move(FetchState.ERROR, ticket.trigger)
        return True

    def reset(self) -> None:
        """Drop all session state; in-flight tickets become stale."""

        self._generation += 1
        self._dedup.reset()
        self._pagination = PaginationState(page_size=self._page_size)
        self._query = None
        self._active = None
        self._failed = None
        self._history.clear()
        self._state = FetchState.IDLE

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "generation": self._generation,
            "pagination": self._pagination.snapshot(),
            "query": self._query.as_dict() if self._query is not None else None,
            "admitted": len(self._dedup),
            "history": [
                {
                    "from": record.source.value,
                    "to": record.target.value,
                    "trigger": record.trigger.value if record.trigger else None,
                    "generation": record.generation,
                }
                for record in self._history
            ],
        }


__all__ = [
    "FetchState",
    "FetchTicket",
    "PaginationState",
    "PaginationStateMachine",
    "TransitionRecord",
    "Trigger",
]
