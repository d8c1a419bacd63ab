from __future__ import annotations

import allure

from renewal_hub.events import EventChannel, PointsRedistributed, RenewalFailed

pytestmark = [
    allure.epic("Renewal Scheduling"),
    allure.feature("State Change Events"),
]


def test_publish_fans_out_to_every_subscriber() -> None:
    channel = EventChannel()
    first = channel.subscribe()
    second = channel.subscribe()
    event = RenewalFailed(system_id=1, task_id="t1", reason="captcha")

    assert channel.publish(event) == 2
    assert first.get_nowait() is event
    assert second.get_nowait() is event
    assert event.event_type == "system.renewal_failed"


def test_full_subscriber_drops_only_its_copy() -> None:
    channel = EventChannel(max_pending=1)
    slow = channel.subscribe()
    fast = channel.subscribe()
    first = PointsRedistributed(mode="one-per-point", systems_created=0, points_bound=1)
    second = PointsRedistributed(mode="one-per-point", systems_created=0, points_bound=2)

    channel.publish(first)
    fast.get_nowait()
    delivered = channel.publish(second)

    assert delivered == 1
    assert slow.get_nowait() is first
    assert fast.get_nowait() is second


def test_unsubscribed_queue_receives_nothing() -> None:
    channel = EventChannel()
    subscriber = channel.subscribe()
    channel.unsubscribe(subscriber)

    assert channel.publish(RenewalFailed(system_id=1, task_id="t", reason="x")) == 0
    assert subscriber.empty()
