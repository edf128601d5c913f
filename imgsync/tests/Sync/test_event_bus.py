# test_event_bus.py
# Description: Tests for SyncEventBus delivery order, reentrant publishing and listener isolation.
#
# Imports
#
# 3rd-party Libraries
import pytest
#
# Local Imports
from imgsync.app.core.Sync.events import (ConflictDetected, OperationApplied, SyncCompleted, SyncEventBus,
                                          SyncEventType, SyncStarted)
#
#######################################################################################################################
#
# Functions:


@pytest.fixture
def event_bus():
    return SyncEventBus()


def test_events_are_typed():
    assert SyncStarted(trigger="manual", last_applied_sequence=0).type is SyncEventType.SYNC_STARTED
    assert OperationApplied(uuid="A", action="created", sequence=1).type is SyncEventType.OPERATION_APPLIED
    with pytest.raises(AttributeError):
        SyncStarted(trigger="manual", last_applied_sequence=0).trigger = "auto"


def test_delivery_in_registration_order(event_bus):
    calls = []
    event_bus.subscribe(SyncEventType.SYNC_STARTED, lambda e: calls.append("first"))
    event_bus.subscribe(None, lambda e: calls.append("wildcard"))
    event_bus.subscribe(SyncEventType.SYNC_STARTED, lambda e: calls.append("third"))

    event_bus.publish(SyncStarted(trigger="manual", last_applied_sequence=0))

    assert calls == ["first", "wildcard", "third"]


def test_listeners_only_receive_their_type(event_bus):
    started, completed = [], []
    event_bus.subscribe(SyncEventType.SYNC_STARTED, started.append)
    event_bus.subscribe(SyncEventType.SYNC_COMPLETED, completed.append)

    event_bus.publish(SyncCompleted(operations_applied=2, current_sequence=2))

    assert started == []
    assert len(completed) == 1


def test_publish_from_listener_is_queued(event_bus):
    log = []

    def first(event):
        log.append(("first", event.type.value))
        if isinstance(event, SyncStarted):
            event_bus.publish(ConflictDetected(operations_behind=1, current_sequence=3))

    def second(event):
        log.append(("second", event.type.value))

    event_bus.subscribe(None, first)
    event_bus.subscribe(None, second)
    event_bus.publish(SyncStarted(trigger="manual", last_applied_sequence=0))

    assert log == [
        ("first", "sync_started"),
        ("second", "sync_started"),
        ("first", "conflict_detected"),
        ("second", "conflict_detected"),
    ]


def test_failing_listener_does_not_stop_delivery(event_bus):
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    event_bus.subscribe(SyncEventType.SYNC_STARTED, broken)
    event_bus.subscribe(SyncEventType.SYNC_STARTED, received.append)

    event_bus.publish(SyncStarted(trigger="manual", last_applied_sequence=0))

    assert len(received) == 1


def test_unsubscribe(event_bus):
    received = []
    unsubscribe = event_bus.subscribe(SyncEventType.OPERATION_APPLIED, received.append)
    assert event_bus.listener_count(SyncEventType.OPERATION_APPLIED) == 1

    unsubscribe()
    event_bus.publish(OperationApplied(uuid="A", action="created", sequence=1))

    assert received == []
    assert event_bus.listener_count() == 0
    assert event_bus.unsubscribe(received.append) is False


def test_subscribe_accepts_event_type_strings(event_bus):
    received = []
    event_bus.subscribe("sync_completed", received.append)
    event_bus.publish(SyncCompleted(operations_applied=0, current_sequence=0))
    assert len(received) == 1

#
# End of test_event_bus.py
#######################################################################################################################
