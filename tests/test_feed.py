"""
Change broker, topic filters and the feed client.
"""
import asyncio

import pytest

from app.realtime.events import ChangeEvent, ChangeType, InvalidFilter, Topic
from app.sync.feed import ChangeFeedClient, SubscriptionStatus


def test_filter_on_unindexed_column_is_rejected():
    with pytest.raises(InvalidFilter):
        Topic.build("messages", "content=eq.hello")
    with pytest.raises(InvalidFilter):
        Topic.build("messages", "receiver_id=neq.abc")
    with pytest.raises(InvalidFilter):
        Topic.build("payments", None)


def test_topic_matches_old_row_and_event_kinds():
    topic = Topic.build("ride_requests", "passenger_id=eq.p1", ["update"])
    moved = ChangeEvent(
        table="ride_requests",
        type=ChangeType.UPDATE,
        new={"id": "r1", "passenger_id": "p2"},
        old={"id": "r1", "passenger_id": "p1"},
    )
    inserted = ChangeEvent(table="ride_requests", type=ChangeType.INSERT, new={"id": "r2", "passenger_id": "p1"})
    assert topic.matches(moved)
    assert not topic.matches(inserted)
    assert Topic.build("ride_requests", None, ["*"]).matches(inserted)


def test_backoff_is_exponential_and_capped(broker):
    feed = ChangeFeedClient(broker, reconnect_attempts=3, backoff_base=0.5, backoff_max=3)
    assert [feed.backoff_delay(n) for n in range(5)] == [0.5, 1.0, 2.0, 3, 3]


async def test_subscriber_only_sees_matching_events(broker, feed, eventually):
    received = []
    handle = await feed.subscribe("messages", "receiver_id=eq.u1", received.append, events=("insert",))
    assert handle.status is SubscriptionStatus.SUBSCRIBED

    broker.publish("messages", ChangeType.INSERT, new={"id": "m1", "receiver_id": "u2"})
    broker.publish("messages", ChangeType.UPDATE, new={"id": "m2", "receiver_id": "u1"})
    broker.publish("messages", ChangeType.INSERT, new={"id": "m3", "receiver_id": "u1"})

    await eventually(lambda: len(received) == 1)
    await asyncio.sleep(0.02)
    assert [e.row_id for e in received] == ["m3"]
    assert received[0].seq == 3


async def test_unsubscribe_is_idempotent_and_stops_delivery(broker, feed):
    received = []
    handle = await feed.subscribe("messages", None, received.append)
    assert broker.channel_count == 1

    feed.unsubscribe(handle)
    feed.unsubscribe(handle)

    assert handle.closed
    assert broker.channel_count == 0
    broker.publish("messages", ChangeType.INSERT, new={"id": "m1"})
    await asyncio.sleep(0.02)
    assert received == []


async def test_open_subscription_releases_on_error(broker, feed):
    with pytest.raises(RuntimeError):
        async with feed.open_subscription("rides", "driver_id=eq.d1", lambda e: None):
            assert broker.channel_count == 1
            raise RuntimeError("boom")
    assert broker.channel_count == 0
    assert feed.subscriptions == 0


async def test_reconnect_reports_resubscribed_and_keeps_delivering(broker, feed, eventually):
    statuses = []
    received = []
    await feed.subscribe(
        "ride_requests",
        None,
        received.append,
        on_status=lambda handle, status: statuses.append(status),
    )

    broker.disconnect_all("network blip")
    await eventually(lambda: SubscriptionStatus.RESUBSCRIBED in statuses)
    broker.publish("ride_requests", ChangeType.INSERT, new={"id": "r1"})

    await eventually(lambda: len(received) == 1)
    assert statuses == [
        SubscriptionStatus.SUBSCRIBED,
        SubscriptionStatus.RECONNECTING,
        SubscriptionStatus.RESUBSCRIBED,
    ]


async def test_reconnect_gives_up_with_failed_status(broker, feed, eventually):
    statuses = []
    handle = await feed.subscribe("messages", None, lambda e: None, on_status=lambda h, s: statuses.append(s))

    broker.set_accepting(False)
    broker.disconnect_all()

    await eventually(lambda: handle.status is SubscriptionStatus.FAILED)
    assert statuses[-2:] == [SubscriptionStatus.RECONNECTING, SubscriptionStatus.FAILED]
    assert not handle.live


async def test_failed_handshake_does_not_raise(broker, feed):
    broker.set_accepting(False)
    statuses = []

    handle = await feed.subscribe("messages", None, lambda e: None, on_status=lambda h, s: statuses.append(s))

    assert handle.status is SubscriptionStatus.FAILED
    assert statuses == [SubscriptionStatus.FAILED]
    assert feed.subscriptions == 0


async def test_listener_error_does_not_stop_the_pump(broker, feed, eventually):
    received = []

    def listener(event):
        if event.row_id == "bad":
            raise ValueError("listener bug")
        received.append(event.row_id)

    await feed.subscribe("messages", None, listener)
    broker.publish("messages", ChangeType.INSERT, new={"id": "bad"})
    broker.publish("messages", ChangeType.INSERT, new={"id": "good"})

    await eventually(lambda: received == ["good"])


async def test_redelivery_keeps_sequence_number(broker, feed, eventually):
    received = []
    await feed.subscribe("messages", None, received.append)
    event = broker.publish("messages", ChangeType.INSERT, new={"id": "m1"})
    broker.deliver(event)

    await eventually(lambda: len(received) == 2)
    assert received[0].seq == received[1].seq == event.seq
