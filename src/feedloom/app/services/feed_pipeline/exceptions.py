from __future__ import annotations

"""Exceptions raised by feed pipeline components."""

from collections.abc import Mapping
from typing import Any


class FeedError(Exception):
    """Base class for feed composition failures."""


class MalformedQueryError(FeedError, ValueError):
    """A primary query referenced fields that live on a joined entity."""

    def __init__(self, message: str, fields: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.fields = fields


class RetrievalError(FeedError):
    """The primary store could not serve a query."""


class PartialJoinError(FeedError):
    """The joined-entity loader failed for some items."""

    def __init__(
        self,
        message: str,
        *,
        loaded: Mapping[Any, Any] | None = None,
        missing: tuple[Any, ...] = (),
    ) -> None:
        super().__init__(message)
        self.loaded = dict(loaded or {})
        self.missing = missing


class StaleResultDiscard(FeedError):
    """A result arrived for a generation that is no longer current."""

    def __init__(self, generation: int, current: int) -> None:
        super().__init__(
            f"Discarding result for generation {generation} (current {current})"
        )
        self.generation = generation
        self.current = current


class InvalidTransition(FeedError, ValueError):
    """The pagination state machine rejected a transition."""


class InvalidFeedFilter(FeedError, ValueError):
    """A filter value could not be interpreted."""


class CompositionError(FeedError):
    """User-visible failure of a composition cycle; the caller may retry."""

    retryable = True

    def __init__(self, message: str, *, generation: int, cause: BaseException) -> None:
        super().__init__(message)
        self.generation = generation
        self.cause = cause


__all__ = [
    "CompositionError",
    "FeedError",
    "InvalidFeedFilter",
    "InvalidTransition",
    "MalformedQueryError",
    "PartialJoinError",
    "RetrievalError",
    "StaleResultDiscard",
]
