import asyncio
import json

import pytest

from forgeline.audit_logger import AuditLogger
from forgeline.event_bus import EventBus, FeatureEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[FeatureEvent] = []

    def dummy_subscriber(event: FeatureEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    test_bus.emit(
        event_type="feature_created",
        feature_id="feature-1",
        project_path="/repo",
        payload={"key": "value"}
    )

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.event_type == "feature_created"
    assert event.feature_id == "feature-1"
    assert event.project_path == "/repo"
    assert event.payload == {"key": "value"}

    # Verify auto-generated fields
    assert event.event_id is not None
    assert isinstance(event.event_id, str)
    assert event.timestamp is not None


def test_failing_subscriber_does_not_stop_delivery():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("observer bug")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.emit("feature_updated", "feature-1")

    assert [e.event_type for e in received] == ["feature_updated"]


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []
    bus.subscribe(received.append)
    bus.unsubscribe(received.append)
    bus.emit("feature_updated")
    assert received == []


@pytest.mark.asyncio
async def test_full_queue_drops_the_oldest_event():
    bus = EventBus()
    queue = bus.open_queue(maxsize=2)
    for i in range(3):
        bus.emit("feature_message", payload={"n": i})

    first = await asyncio.wait_for(queue.get(), timeout=1)
    second = await asyncio.wait_for(queue.get(), timeout=1)
    assert [first.payload["n"], second.payload["n"]] == [1, 2]


def test_audit_logger_writes_jsonl(tmp_path):
    bus = EventBus()
    path = tmp_path / "logs" / "events.jsonl"
    audit = AuditLogger(path, bus)

    bus.emit("feature_created", "feature-1", payload={"title": "A"})
    audit.close()
    bus.emit("feature_deleted", "feature-1")

    lines = path.read_text().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["payload"] == {"title": "A"}
