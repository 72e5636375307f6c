"""Tests for the typed event bus."""

import pytest

from collab_onboarding.errors import ErrorKind, ErrorRecord
from collab_onboarding.events import EventBus, EventName, Progress, StepCompleted


def test_subscribe_emit_unsubscribe():
    bus = EventBus()
    received = []
    unsubscribe = bus.subscribe(EventName.DATA_SYNCED, received.append)

    assert bus.emit(EventName.DATA_SYNCED, "goals") == 1
    unsubscribe()
    bus.emit(EventName.DATA_SYNCED, "skills")

    assert received == ["goals"]
    assert bus.subscriber_count(EventName.DATA_SYNCED) == 0


def test_string_event_names_accepted():
    bus = EventBus()
    received = []
    bus.subscribe("offline-mode", received.append)
    bus.emit("offline-mode", True)
    assert received == [True]


@pytest.mark.parametrize("name, payload", [
    (EventName.PROGRESS_UPDATED, {"current_step": "profile"}),
    (EventName.STEP_COMPLETED, "profile"),
    (EventName.FLOW_COMPLETED, "done"),
    (EventName.MIGRATION_COMPLETED, "yes"),
    (EventName.OFFLINE_MODE, 1),
])
def test_payload_type_checked(name, payload):
    with pytest.raises(TypeError):
        EventBus().emit(name, payload)


def test_typed_payloads():
    bus = EventBus()
    seen = {}
    for name in EventName:
        bus.subscribe(name, lambda payload, name=name: seen.__setitem__(name, payload))

    bus.emit(EventName.PROGRESS_UPDATED, Progress(current_step="profile"))
    bus.emit(EventName.STEP_COMPLETED, StepCompleted(step_id="profile", payload={}))
    bus.emit(EventName.FLOW_COMPLETED)
    bus.emit(EventName.ERROR_OCCURRED, ErrorRecord(operation="op", error_kind=ErrorKind.NETWORK, message="x"))
    bus.emit(EventName.MIGRATION_STARTED)
    bus.emit(EventName.MIGRATION_COMPLETED, True)
    bus.emit(EventName.DATA_SYNCED, "goals")
    bus.emit(EventName.OFFLINE_MODE, False)

    assert set(seen) == set(EventName)


def test_failing_handler_does_not_stop_delivery():
    bus = EventBus()
    received = []

    def broken(payload):
        raise RuntimeError("boom")

    bus.subscribe(EventName.DATA_SYNCED, broken)
    bus.subscribe(EventName.DATA_SYNCED, received.append)

    assert bus.emit(EventName.DATA_SYNCED, "goals") == 1
    assert received == ["goals"]


def test_clear():
    bus = EventBus()
    bus.subscribe(EventName.FLOW_COMPLETED, lambda _: None)
    bus.clear()
    assert bus.subscriber_count(EventName.FLOW_COMPLETED) == 0
