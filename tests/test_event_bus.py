from patchwright.event_bus import EventBus, TaskEvent


def test_event_bus_pub_sub():
    test_bus = EventBus()
    received_events: list[TaskEvent] = []

    def dummy_subscriber(event: TaskEvent):
        received_events.append(event)

    # Subscribe to the bus
    test_bus.subscribe(dummy_subscriber)

    # Emit an event
    test_bus.emit(task_id="task-1", message="Task picked up", severity="info")

    # Verify the event was received and formatted correctly
    assert len(received_events) == 1

    event = received_events[0]
    assert event.task_id == "task-1"
    assert event.message == "Task picked up"
    assert event.severity == "info"

    # Verify auto-generated fields
    assert event.event_id is None
    assert event.timestamp is not None


def test_store_id_and_timestamp_are_carried():
    event = EventBus().emit("task-1", "hello", event_id=7, timestamp="2026-01-01T00:00:00+00:00")
    assert event.event_id == 7
    assert event.timestamp == "2026-01-01T00:00:00+00:00"


def test_failing_subscriber_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("boom")

    bus.subscribe(broken)
    bus.subscribe(received.append)
    bus.emit("task-1", "still delivered")

    assert [e.message for e in received] == ["still delivered"]


def test_unsubscribe():
    bus = EventBus()
    received = []
    bus.subscribe(received.append)
    bus.unsubscribe(received.append)
    bus.emit("task-1", "nobody listening")
    assert received == []
