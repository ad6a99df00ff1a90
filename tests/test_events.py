"""
tests/test_events.py

In-process event bus.

  DELIVERY
    handlers keyed by event class; unsubscribe stops delivery
    a failing handler does not stop the others

  LOGGING
    event payloads are only rendered when debug logging is on
"""

import logging

import pytest

from ilguard.core import events
from ilguard.core.events import ClaimRejected, ClaimSettled, EventBus


@pytest.fixture
def bus():
    return EventBus()


class TestDelivery:

    def test_handlers_keyed_by_type(self, bus):
        seen = []
        bus.subscribe(ClaimRejected, seen.append)
        bus.publish(ClaimRejected("clm-1", "DeadlineExceeded"))
        bus.publish(ClaimSettled("clm-2", 270))
        assert seen == [ClaimRejected("clm-1", "DeadlineExceeded")]

    def test_unsubscribe(self, bus):
        seen = []
        unsubscribe = bus.subscribe(ClaimRejected, seen.append)
        unsubscribe()
        unsubscribe()
        bus.publish(ClaimRejected("clm-1", "x"))
        assert seen == []

    def test_failing_handler_isolated(self, bus):
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(ClaimRejected, broken)
        bus.subscribe(ClaimRejected, seen.append)
        bus.publish(ClaimRejected("clm-1", "x"))
        assert len(seen) == 1


class TestLogging:

    def test_payload_rendered_only_at_debug(self, bus, monkeypatch, caplog):
        rendered = []

        def fake_asdict(event):
            rendered.append(event)
            return {}

        monkeypatch.setattr(events, "asdict", fake_asdict)

        caplog.set_level(logging.INFO, logger="ilguard.core.events")
        bus.publish(ClaimRejected("clm-1", "x"))
        assert rendered == []

        caplog.set_level(logging.DEBUG, logger="ilguard.core.events")
        bus.publish(ClaimRejected("clm-2", "x"))
        assert rendered == [ClaimRejected("clm-2", "x")]
