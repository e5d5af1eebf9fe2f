"""Short-lived snapshots of unscoped feeds so creator scope can be toggled cheaply."""

from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass
from logging import getLogger
from typing import Callable

import orjson
from cachetools import TTLCache

from .creator_scope import AuthorIndex
from .models import ContentItem, SearchQuery

logger = getLogger(__name__)

CacheKey = tuple[str, str]


@dataclass(slots=True)
class ScopeSnapshot:
    """Unscoped composed list and the pagination position it was reached at."""

    items: tuple[ContentItem, ...]
    page: int
    has_more: bool
    total_known: int | None = None
    _index: AuthorIndex | None = None

    def author_index(self) -> AuthorIndex:
        if self._index is None:
            self._index = AuthorIndex(self.items)
        return self._index


def query_fingerprint(query: SearchQuery) -> str:
    """Stable digest of the text and filters of ``query``, ignoring its scope."""

    payload = orjson.dumps(
        {"text": query.text, "filters": query.filters.as_dict()},
        option=orjson.OPT_SORT_KEYS,
    )
    return hashlib.blake2b(payload, digest_size=16).hexdigest()


class ScopeCache:
    """TTL cache of :class:`ScopeSnapshot` keyed by session and search."""

    __slots__ = ("_backend",)

    def __init__(
        self,
        *,
        maxsize: int,
        ttl: float,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._backend: TTLCache[CacheKey, ScopeSnapshot] = TTLCache(
            maxsize=maxsize, ttl=ttl, timer=timer
        )

    def store(self, session_id: str, query: SearchQuery, snapshot: ScopeSnapshot) -> None:
        key = (session_id, query_fingerprint(query))
        self._backend[key] = snapshot
        logger.debug(
            "Cached unscoped snapshot for session %s (%d items, page %d)",
            session_id,
            len(snapshot.items),
            snapshot.page,
        )

    def get(self, session_id: str, query: SearchQuery) -> ScopeSnapshot | None:
        return self._backend.get((session_id, query_fingerprint(query)))

    def discard_session(self, session_id: str) -> int:
        stale = [key for key in list(self._backend.keys()) if key[0] == session_id]
        for key in stale:
            self._backend.pop(key, None)
        return len(stale)

    def __len__(self) -> int:
        return len(self._backend)


__all__ = ["ScopeCache", "ScopeSnapshot", "query_fingerprint"]
