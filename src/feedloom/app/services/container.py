"""Application service wiring."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from feedloom.app.db import InMemoryContentStore
from feedloom.app.services.feed_config import FeedConfig
from feedloom.app.services.feed_pipeline import FeedCompositionEngine, ScopeCache
from feedloom.app.services.feed_sessions import FeedSessionRegistry
from feedloom.app.services.service_pulse import ServicePulse

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AppServices:
    """Bundle long-lived application services."""

    config: FeedConfig
    store: InMemoryContentStore
    scope_cache: ScopeCache
    sessions: FeedSessionRegistry
    service_pulse: ServicePulse

    @classmethod
    def create(
        cls,
        settings: Any = None,
        *,
        store: InMemoryContentStore | None = None,
        config: FeedConfig | None = None,
    ) -> "AppServices":
        if settings is None and (config is None or store is None):
            from feedloom.settings import settings as app_settings

            settings = app_settings

        if config is None:
            config = FeedConfig.from_settings(settings)
        if store is None:
            seed_path = str(settings.get("STORE.seed_path") or "")
            if seed_path:
                store = InMemoryContentStore.from_seed_file(seed_path)
            else:
                logger.info("No STORE.seed_path configured; starting with an empty store")
                store = InMemoryContentStore()

        service_pulse = ServicePulse()
        scope_cache = ScopeCache(maxsize=config.cache.maxsize, ttl=config.cache.ttl)

        def _engine(session_id: str) -> FeedCompositionEngine:
            return FeedCompositionEngine(
                store,
                config=config,
                joined_loader=store,
                scope_cache=scope_cache,
                pulse=service_pulse,
                session_id=session_id,
            )

        sessions = FeedSessionRegistry(
            _engine,
            ttl=config.sessions.ttl,
            max_sessions=config.sessions.max_sessions,
            scope_cache=scope_cache,
        )
        return cls(
            config=config,
            store=store,
            scope_cache=scope_cache,
            sessions=sessions,
            service_pulse=service_pulse,
        )


def get_services() -> AppServices:
    """Return the :class:`AppServices` container bound to the current app."""

    from quart import current_app

    services = current_app.extensions.get("feedloom")
    if services is None:
        raise RuntimeError("App services container is not initialised")
    return services


def get_sessions() -> FeedSessionRegistry:
    """Convenience accessor for the feed session registry."""

    return get_services().sessions


__all__ = ["AppServices", "get_services", "get_sessions"]
