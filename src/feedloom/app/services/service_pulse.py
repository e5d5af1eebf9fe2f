from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Protocol

from blinker import Namespace, Signal

logger = logging.getLogger(__name__)

SCOPE_LATENCY = "feed.scope_latency"
MALFORMED_QUERY = "feed.malformed_query"
STALE_DISCARD = "feed.stale_discard"
PARTIAL_JOIN = "feed.partial_join"
RETRIEVAL_ERROR = "feed.retrieval_error"


@dataclass(slots=True, frozen=True)
class PulseEvent:
    """Snapshot of a published diagnostic."""

    topic: str
    payload: Mapping[str, Any]
    timestamp: float

    def as_payload(self) -> dict[str, Any]:
        return dict(self.payload)


class PulseListener(Protocol):
    def __call__(self, event: PulseEvent) -> None:
        ...


class ServicePulse:
    """Pub/sub helper for feed diagnostics that must not fail a request."""

    def __init__(self) -> None:
        self._latest: dict[str, PulseEvent] = {}
        self._counts: Counter[str] = Counter()
        self._namespace = Namespace()
        self._broadcast_signal = Signal("service_pulse:*")

    def signal(self, topic: str) -> Signal:
        return self._namespace.signal(topic)

    def emit(self, topic: str, payload: Mapping[str, Any]) -> PulseEvent:
        """Record ``payload`` under ``topic`` and notify subscribers."""

        event = PulseEvent(
            topic=topic,
            payload=MappingProxyType(dict(payload)),
            timestamp=time.monotonic(),
        )
        self._latest[topic] = event
        self._counts[topic] += 1
        for signal in (self.signal(topic), self._broadcast_signal):
            for receiver in list(signal.receivers_for(self)):
                try:
                    receiver(self, event=event)
                except Exception:  # pragma: no cover - listener bugs stay local
                    logger.exception("Service pulse listener failed for topic %s", topic)
        return event

    def subscribe(
        self,
        listener: PulseListener,
        *,
        topics: Iterable[str] | None = None,
    ) -> Callable[[], None]:
        """Subscribe ``listener`` and return a callable that unsubscribes it."""

        def _receiver(sender: Any, *, event: PulseEvent | None = None, **_: Any) -> None:
            if event is not None:
                listener(event)

        if topics is None:
            signals = [self._broadcast_signal]
        else:
            signals = [self.signal(topic) for topic in dict.fromkeys(topics)]

        for sig in signals:
            sig.connect(_receiver, sender=self, weak=False)

        def unsubscribe() -> None:
            for sig in signals:
                sig.disconnect(_receiver, sender=self)

        return unsubscribe

    def latest(self, topic: str) -> dict[str, Any] | None:
        event = self._latest.get(topic)
        if event is None:
            return None
        return event.as_payload()

    def count(self, topic: str) -> int:
        return self._counts[topic]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return {
            topic: {**event.as_payload(), "count": self._counts[topic]}
            for topic, event in self._latest.items()
        }


__all__ = [
    "MALFORMED_QUERY",
    "PARTIAL_JOIN",
    "PulseEvent",
    "PulseListener",
    "RETRIEVAL_ERROR",
    "SCOPE_LATENCY",
    "STALE_DISCARD",
    "ServicePulse",
]
