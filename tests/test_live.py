from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from models.records import AlertLevel, Reading
from services.live import CallbackSubscriber, LiveHub, QueueSubscriber

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture()
def hub() -> LiveHub:
    return LiveHub(clock=lambda: NOW)


def _reading(device_id: str = "trap7", moth_count: int = 25) -> Reading:
    return Reading(device_id=device_id, moth_count=moth_count, temperature=31.5, captured_at=NOW)


def test_snapshot_merges_status_and_location(hub: LiveHub) -> None:
    hub.publish_reading("farm-7", _reading(), AlertLevel.red)
    hub.publish_location("trap7", "farm-7", 15.5, 121.2)

    snapshot = hub.snapshot()

    assert snapshot["type"] == "initial_state"
    trap = snapshot["traps"]["trap7"]
    assert trap["farm_id"] == "farm-7"
    assert trap["moth_count"] == 25
    assert trap["alert_level"] == "Red"
    assert (trap["latitude"], trap["longitude"]) == (15.5, 121.2)


def test_subscriber_gets_snapshot_then_events(hub: LiveHub) -> None:
    hub.publish_reading("farm-7", _reading(moth_count=3), AlertLevel.green)
    received = []

    snapshot = hub.subscribe(CallbackSubscriber(received.append))
    hub.publish_reading("farm-2", _reading("trap2", 12), AlertLevel.yellow)

    assert list(snapshot["traps"]) == ["trap7"]
    assert len(received) == 1
    event = received[0]
    assert event["type"] == "reading"
    assert event["device_id"] == "trap2"
    assert event["data"]["alert_level"] == "Yellow"
    assert hub.subscriber_count == 1


def test_unsubscribed_session_receives_nothing(hub: LiveHub) -> None:
    received = []
    subscriber = CallbackSubscriber(received.append)
    hub.subscribe(subscriber)
    hub.unsubscribe(subscriber)

    hub.publish_location("trap2", "farm-2", 1.0, 2.0)

    assert received == []
    assert hub.subscriber_count == 0


def test_failing_subscriber_is_dropped_without_affecting_others(hub: LiveHub) -> None:
    def broken(event):
        raise ConnectionError("socket closed")

    received = []
    hub.subscribe(CallbackSubscriber(broken))
    hub.subscribe(CallbackSubscriber(received.append))

    hub.publish_reading("farm-7", _reading(), AlertLevel.red)

    assert len(received) == 1
    assert hub.subscriber_count == 1
    assert hub.trap("trap7").moth_count == 25


def test_queue_subscriber_bridges_threads_to_asyncio(hub: LiveHub) -> None:
    async def scenario():
        subscriber = QueueSubscriber(asyncio.get_running_loop())
        hub.subscribe(subscriber)
        await asyncio.to_thread(hub.publish_reading, "farm-7", _reading(), AlertLevel.red)
        return await asyncio.wait_for(subscriber.get(), timeout=2)

    event = asyncio.run(scenario())

    assert event["device_id"] == "trap7"
    assert event["data"]["moth_count"] == 25


def test_queue_subscriber_drops_oldest_when_full(hub: LiveHub) -> None:
    async def scenario():
        subscriber = QueueSubscriber(asyncio.get_running_loop(), maxsize=2)
        hub.subscribe(subscriber)
        for count in (1, 2, 3):
            hub.publish_reading("farm-7", _reading(moth_count=count), AlertLevel.green)
        await asyncio.sleep(0)
        return [(await subscriber.get())["data"]["moth_count"] for _ in range(2)]

    assert asyncio.run(scenario()) == [2, 3]
