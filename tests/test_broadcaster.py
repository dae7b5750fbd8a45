from __future__ import annotations

import json
import threading

import allure

from mission_control.scheduler.broadcaster import (
    TASK_STATUS,
    BroadcastMessage,
    EventBroadcaster,
)

pytestmark = [
    allure.epic("Scheduling Core"),
    allure.feature("Event Broadcaster"),
]


def test_slow_subscriber_is_dropped_while_others_keep_receiving(
    broadcaster: EventBroadcaster,
) -> None:
    slow = broadcaster.subscribe(buffer_size=2)
    fast = broadcaster.subscribe(buffer_size=64)
    assert broadcaster.flush()

    for n in range(5):
        assert broadcaster.publish_task_status(f"task-{n}", "executing", n / 5)
    assert broadcaster.flush()

    assert slow.dropped
    assert slow.closed
    assert [message.payload["task_id"] for message in slow] == ["task-0", "task-1"]

    received = [fast.get(timeout=1.0) for _ in range(5)]
    assert [message.payload["task_id"] for message in received if message] == [
        f"task-{n}" for n in range(5)
    ]
    assert not fast.dropped
    assert broadcaster.subscriber_count == 1


def test_messages_published_before_subscribing_are_not_replayed(
    broadcaster: EventBroadcaster,
) -> None:
    broadcaster.publish_agent_status("alpha", "working", "task-1")
    assert broadcaster.flush()

    late = broadcaster.subscribe()
    broadcaster.publish_agent_status("alpha", "idle", None)
    assert broadcaster.flush()

    message = late.get(timeout=1.0)
    assert message is not None
    assert message.payload == {"agent_id": "alpha", "status": "idle", "current_task_id": None}
    assert late.get(timeout=0.05) is None


def test_unsubscribe_closes_the_subscription(broadcaster: EventBroadcaster) -> None:
    subscription = broadcaster.subscribe()
    subscription.close()
    assert broadcaster.flush()

    assert subscription.closed
    assert not subscription.dropped
    assert broadcaster.subscriber_count == 0


def test_stop_closes_live_subscriptions() -> None:
    hub = EventBroadcaster()
    hub.start()
    subscription = hub.subscribe()
    hub.flush()

    hub.stop()

    assert subscription.closed
    assert not hub.running
    assert not hub.publish_task_status("task-1", "done", 1.0)


def test_message_serializes_to_json() -> None:
    message = BroadcastMessage(
        type=TASK_STATUS,
        payload={"task_id": "task-1", "status": "done", "progress": 1.0},
    )

    decoded = json.loads(message.to_json())

    assert decoded["type"] == "task.status"
    assert decoded["payload"]["progress"] == 1.0
    assert decoded["timestamp"] == message.timestamp.isoformat()


def test_subscribing_to_a_stopped_hub_returns_a_closed_subscription() -> None:
    hub = EventBroadcaster()
    hub.start()
    hub.stop()

    subscription = hub.subscribe()
    received: list[BroadcastMessage] = []
    reader = threading.Thread(target=lambda: received.extend(subscription), daemon=True)
    reader.start()
    reader.join(timeout=1.0)

    assert subscription.closed
    assert not reader.is_alive()
    assert received == []


def test_subscribing_before_start_does_not_block() -> None:
    hub = EventBroadcaster(inbox_size=1)

    first = hub.subscribe()
    second = hub.subscribe()

    assert first.closed
    assert second.closed
    assert first.get(timeout=0.05) is None
    assert hub.subscriber_count == 0
