"""Identity-based admission of result batches."""

from __future__ import annotations

import logging
from typing import Iterable

from .models import ContentItem, Identity

logger = logging.getLogger(__name__)


class DeduplicationIndex:
    """Track ``(kind, id)`` identities admitted during one composition session."""

    __slots__ = ("_seen", "_admitted", "_suppressed")

    def __init__(self) -> None:
        self._seen: set[Identity] = set()
        self._admitted = 0
        self._suppressed = 0

    def admit(self, items: Iterable[ContentItem]) -> list[ContentItem]:
        """Return the items not seen before and record their identities."""

        fresh: list[ContentItem] = []
        suppressed = 0
        for item in items:
            key = item.identity
            if key in self._seen:
                suppressed += 1
                continue
            self._seen.add(key)
            fresh.append(item)

        self._admitted += len(fresh)
        self._suppressed += suppressed
        if suppressed:
            logger.debug(
                "Suppressed %d duplicate items (admitted=%d, index size=%d)",
                suppressed,
                len(fresh),
                len(self._seen),
            )
        return fresh

    def reset(self) -> None:
        self._seen.clear()
        self._admitted = 0
        self._suppressed = 0

    @property
    def admitted_count(self) -> int:
        return self._admitted

    @property
    def suppressed_count(self) -> int:
        return self._suppressed

    def __contains__(self, item: object) -> bool:
        if isinstance(item, ContentItem):
            return item.identity in self._seen
        return item in self._seen

    def __len__(self) -> int:
        return len(self._seen)


__all__ = ["DeduplicationIndex"]
