from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class ScopeConfig:
    """Thresholds for the creator-scope optimizer."""

    linear_threshold: int = 300
    chunked_threshold: int = 5000
    chunk_size: int = 1000
    latency_budget_ms: float = 100.0


@dataclass(slots=True, frozen=True)
class AutoFetchConfig:
    """Follow-up fetches when filtering leaves a page (nearly) empty."""

    min_results: int = 1
    max_pages: int = 3


@dataclass(slots=True, frozen=True)
class ScopeCacheConfig:
    maxsize: int = 128
    ttl: int = 300


@dataclass(slots=True, frozen=True)
class SessionConfig:
    ttl: float = 1800.0
    max_sessions: int = 256


@dataclass(slots=True, frozen=True)
class FeedConfig:
    """Aggregate feed composition configuration."""

    page_size: int = 15
    max_query_length: int = 512
    query_timeout: float = 10.0
    secondary_yield_every: int = 500
    history_size: int = 50
    scope: ScopeConfig = field(default_factory=ScopeConfig)
    auto_fetch: AutoFetchConfig = field(default_factory=AutoFetchConfig)
    cache: ScopeCacheConfig = field(default_factory=ScopeCacheConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)

    @classmethod
    def from_settings(cls, settings: Any) -> "FeedConfig":
        """Construct a :class:`FeedConfig` from application settings."""

        feed = settings.FEED
        scope = feed.scope
        auto_fetch = feed.auto_fetch
        cache = feed.scope_cache
        sessions = settings.SESSIONS
        return cls(
            page_size=int(feed.page_size),
            max_query_length=int(settings.LIMITS.max_query_length),
            query_timeout=float(feed.query_timeout),
            secondary_yield_every=int(feed.secondary_yield_every),
            history_size=int(feed.history_size),
            scope=ScopeConfig(
                linear_threshold=int(scope.linear_threshold),
                chunked_threshold=int(scope.chunked_threshold),
                chunk_size=int(scope.chunk_size),
                latency_budget_ms=float(scope.latency_budget_ms),
            ),
            auto_fetch=AutoFetchConfig(
                min_results=int(auto_fetch.min_results),
                max_pages=int(auto_fetch.max_pages),
            ),
            cache=ScopeCacheConfig(
                maxsize=int(cache.maxsize),
                ttl=int(cache.ttl),
            ),
            sessions=SessionConfig(
                ttl=float(sessions.ttl),
                max_sessions=int(sessions.max_sessions),
            ),
        )

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


__all__ = [
    "AutoFetchConfig",
    "FeedConfig",
    "ScopeCacheConfig",
    "ScopeConfig",
    "SessionConfig",
]
