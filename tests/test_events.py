import logging

import pytest

from polyglot_sandbox.events import (
    EventBus,
    EventKind,
    ExecutionCancelled,
    ExecutionEvent,
    ExecutionStarted,
    OutputChunk,
)
from polyglot_sandbox.languages import Language


def test_subscribers_receive_events_in_order() -> None:
    bus = EventBus()
    seen: list[ExecutionEvent] = []
    bus.subscribe(seen.append)

    bus.publish(ExecutionStarted("python_1_ab", Language.PYTHON))
    bus.publish(OutputChunk("python_1_ab", "hi"))

    assert [event.kind for event in seen] == [EventKind.STARTED, EventKind.OUTPUT_CHUNK]


def test_kind_filter() -> None:
    bus = EventBus()
    seen: list[ExecutionEvent] = []
    bus.subscribe(seen.append, kinds=["cancelled"])

    bus.publish(OutputChunk("python_1_ab", "hi"))
    bus.publish(ExecutionCancelled("python_1_ab"))

    assert seen == [ExecutionCancelled("python_1_ab")]


def test_unsubscribe_is_idempotent() -> None:
    bus = EventBus()
    seen: list[ExecutionEvent] = []
    sub = bus.subscribe(seen.append)
    sub.unsubscribe()
    sub.unsubscribe()

    bus.publish(ExecutionCancelled("python_1_ab"))
    assert seen == []
    assert bus.subscriber_count == 0


def test_subscription_as_context_manager() -> None:
    bus = EventBus()
    with bus.subscribe(lambda event: None):
        assert bus.subscriber_count == 1
    assert bus.subscriber_count == 0


def test_failing_subscriber_is_logged_and_skipped(caplog: pytest.LogCaptureFixture) -> None:
    bus = EventBus()
    seen: list[ExecutionEvent] = []

    def _boom(event: ExecutionEvent) -> None:
        raise RuntimeError("subscriber bug")

    bus.subscribe(_boom)
    bus.subscribe(seen.append)

    with caplog.at_level(logging.ERROR, logger="polyglot_sandbox.events"):
        bus.publish(ExecutionCancelled("python_1_ab"))

    assert seen == [ExecutionCancelled("python_1_ab")]
    assert "Event subscriber failed" in caplog.text


def test_unknown_kind_filter_is_rejected() -> None:
    bus = EventBus()
    with pytest.raises(ValueError):
        bus.subscribe(lambda event: None, kinds=["finished"])
