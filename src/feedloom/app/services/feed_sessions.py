from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from ulid import ULID

from feedloom.app.services.feed_pipeline import FeedCompositionEngine
from feedloom.app.services.feed_pipeline.scope_cache import ScopeCache

logger = logging.getLogger(__name__)

EngineFactory = Callable[[str], FeedCompositionEngine]


@dataclass(slots=True)
class FeedSession:
    session_id: str
    engine: FeedCompositionEngine
    created_at: float = field(default_factory=time.monotonic)
    last_access: float = field(default_factory=time.monotonic)

    def touch(self) -> None:
        self.last_access = time.monotonic()


class FeedSessionRegistry:
    """Live feed sessions, each owning one composition engine."""

    def __init__(
        self,
        factory: EngineFactory,
        *,
        ttl: float,
        max_sessions: int,
        scope_cache: ScopeCache | None = None,
    ) -> None:
        self._factory = factory
        self._ttl = ttl
        self._max_sessions = max(int(max_sessions), 1)
        self._scope_cache = scope_cache
        self._sessions: dict[str, FeedSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _drop(self, session_id: str) -> FeedSession | None:
        session = self._sessions.pop(session_id, None)
        if session is not None and self._scope_cache is not None:
            self._scope_cache.discard_session(session_id)
        return session

    def _prune(self) -> None:
        if not self._sessions:
            return
        now = time.monotonic()
        stale = [
            sid
            for sid, session in self._sessions.items()
            if now - session.last_access > self._ttl
        ]
        for sid in stale:
            self._drop(sid)
        if stale:
            logger.debug("Pruned %d idle feed sessions", len(stale))
        if len(self._sessions) <= self._max_sessions:
            return
        ordered = sorted(self._sessions.values(), key=lambda s: s.last_access)
        for session in ordered[: max(0, len(ordered) - self._max_sessions)]:
            self._drop(session.session_id)

    def open(self, session_id: str | None = None) -> FeedSession:
        """Return the session for ``session_id``, creating one when unknown."""

        self._prune()
        if session_id:
            existing = self._sessions.get(session_id)
            if existing is not None:
                existing.touch()
                return existing

        if len(self._sessions) >= self._max_sessions:
            oldest = min(self._sessions.values(), key=lambda s: s.last_access)
            self._drop(oldest.session_id)

        sid = session_id or str(ULID())
        session = FeedSession(session_id=sid, engine=self._factory(sid))
        self._sessions[sid] = session
        logger.debug("Opened feed session %s (%d live)", sid, len(self._sessions))
        return session

    def get(self, session_id: str) -> FeedSession | None:
        self._prune()
        session = self._sessions.get(session_id)
        if session is not None:
            session.touch()
        return session

    def close(self, session_id: str) -> bool:
        session = self._drop(session_id)
        if session is None:
            return False
        session.engine.reset_session()
        logger.debug("Closed feed session %s", session_id)
        return True


__all__ = ["FeedSession", "FeedSessionRegistry"]
