from __future__ import annotations

from feedloom.app.services.service_pulse import (
    MALFORMED_QUERY,
    STALE_DISCARD,
    PulseEvent,
    ServicePulse,
)


def test_emit_records_latest_payload_and_count() -> None:
    pulse = ServicePulse()

    pulse.emit(STALE_DISCARD, {"generation": 1})
    pulse.emit(STALE_DISCARD, {"generation": 2})

    assert pulse.count(STALE_DISCARD) == 2
    assert pulse.latest(STALE_DISCARD) == {"generation": 2}
    assert pulse.latest(MALFORMED_QUERY) is None
    assert pulse.snapshot() == {STALE_DISCARD: {"generation": 2, "count": 2}}


def test_topic_subscription_and_unsubscribe() -> None:
    pulse = ServicePulse()
    received: list[PulseEvent] = []
    unsubscribe = pulse.subscribe(received.append, topics=[MALFORMED_QUERY])

    pulse.emit(MALFORMED_QUERY, {"fields": ["joined.title"]})
    pulse.emit(STALE_DISCARD, {"generation": 3})
    unsubscribe()
    pulse.emit(MALFORMED_QUERY, {"fields": []})

    assert [event.topic for event in received] == [MALFORMED_QUERY]
    assert received[0].as_payload() == {"fields": ["joined.title"]}


def test_broadcast_subscription_sees_every_topic() -> None:
    pulse = ServicePulse()
    topics: list[str] = []
    pulse.subscribe(lambda event: topics.append(event.topic))

    pulse.emit(MALFORMED_QUERY, {})
    pulse.emit(STALE_DISCARD, {})

    assert topics == [MALFORMED_QUERY, STALE_DISCARD]


def test_failing_listener_does_not_break_emit() -> None:
    pulse = ServicePulse()

    def _boom(event: PulseEvent) -> None:
        raise RuntimeError("listener bug")

    pulse.subscribe(_boom)

    event = pulse.emit(STALE_DISCARD, {"generation": 1})

    assert event.topic == STALE_DISCARD
    assert pulse.count(STALE_DISCARD) == 1
