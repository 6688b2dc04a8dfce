import asyncio
from datetime import datetime, timezone

import pytest

from app.errors import AuthenticationFailure, UpstreamFailure
from app.ws import CLOSE_GOING_AWAY, CLOSE_UNAUTHORIZED, CLOSE_UPSTREAM, ConnectionState, NotificationHub
from schemas.feed import UserRef
from schemas.notify import CommentEvent, MessageEvent, ReactionEvent


class FakeConnection:
    def __init__(self, fail_sends=False):
        self.sent = []
        self.closed_with = None
        self.fail_sends = fail_sends

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("socket gone")
        self.sent.append(data)

    async def close(self, code=1000):
        self.closed_with = code

    def data_frames(self):
        return [frame for frame in self.sent if frame["type"] == "data"]


class StalledAckConnection(FakeConnection):
    """Blocks inside the ack send until released, then fails it."""

    def __init__(self):
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def send_json(self, data):
        self.entered.set()
        await self.release.wait()
        raise RuntimeError("socket gone")


class FakeVerifier:
    def __init__(self, tokens, upstream_down=False):
        self.tokens = tokens
        self.upstream_down = upstream_down

    async def verify(self, token):
        if self.upstream_down:
            raise UpstreamFailure()
        if token not in self.tokens:
            raise AuthenticationFailure("Invalid credential")
        return self.tokens[token]


def comment_event(recipient_id, comment_id=1):
    return CommentEvent(
        recipient_id=recipient_id,
        comment_id=comment_id,
        post_id=3,
        commenter=UserRef(user_id=99, username="carol"),
        message="nice",
    )


@pytest.fixture
def hub():
    return NotificationHub(FakeVerifier({"tok-alice": 1, "tok-bob": 2}))


async def test_publish_without_subscriber_is_noop(hub):
    assert await hub.publish(comment_event(recipient_id=1)) == 0
    assert hub.online_users("new_notification") == set()


async def test_event_reaches_exactly_the_recipient(hub):
    alice, bob = FakeConnection(), FakeConnection()
    await hub.register(alice, "tok-alice", "new_notification")
    await hub.register(bob, "tok-bob", "new_notification")

    delivered = await hub.publish(comment_event(recipient_id=1))

    assert delivered == 1
    assert alice.sent[0] == {"type": "connection_ack", "channel": "new_notification"}
    [frame] = alice.data_frames()
    assert frame["channel"] == "new_notification"
    assert frame["payload"]["kind"] == "comment"
    assert frame["payload"]["recipient_id"] == 1
    assert bob.data_frames() == []


async def test_message_event_goes_to_both_channels(hub):
    on_messages, on_notifications = FakeConnection(), FakeConnection()
    await hub.register(on_messages, "tok-bob", "new_message")
    await hub.register(on_notifications, "tok-bob", "new_notification")
    event = MessageEvent(
        recipient_id=2,
        message_id=5,
        sender=UserRef(user_id=1, username="alice"),
        recipient=UserRef(user_id=2, username="bob"),
        message="hi",
        sent_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )
    assert await hub.publish(event) == 2
    assert on_messages.data_frames()[0]["payload"]["message"] == "hi"
    assert on_notifications.data_frames()[0]["channel"] == "new_notification"


async def test_reaction_event_only_on_notification_channel(hub):
    on_messages = FakeConnection()
    await hub.register(on_messages, "tok-alice", "new_message")
    event = ReactionEvent(
        recipient_id=1,
        target="post",
        target_id=4,
        post_id=4,
        reactor=UserRef(user_id=2, username="bob"),
        reaction="like",
    )
    assert await hub.publish(event) == 0
    assert on_messages.data_frames() == []


async def test_last_registration_wins(hub):
    first, second = FakeConnection(), FakeConnection()
    first_sub = await hub.register(first, "tok-alice", "new_notification")
    second_sub = await hub.register(second, "tok-alice", "new_notification")

    await hub.publish(comment_event(recipient_id=1))

    assert first.data_frames() == []
    assert len(second.data_frames()) == 1
    assert not hub.is_registered(first_sub)
    assert hub.is_registered(second_sub)

    # the replaced subscriber going away must not evict the live one
    await hub.unregister(first_sub)
    assert hub.is_registered(second_sub)


async def test_failed_ack_restores_live_previous_subscriber(hub):
    first_sub = await hub.register(FakeConnection(), "tok-alice", "new_notification")
    with pytest.raises(RuntimeError):
        await hub.register(FakeConnection(fail_sends=True), "tok-alice", "new_notification")
    assert hub.is_registered(first_sub)


async def test_failed_ack_does_not_restore_closed_previous_subscriber(hub):
    first_sub = await hub.register(FakeConnection(), "tok-alice", "new_notification")
    stalled = StalledAckConnection()
    pending = asyncio.create_task(hub.register(stalled, "tok-alice", "new_notification"))
    await stalled.entered.wait()

    # the displaced subscriber disconnects while the new ack is in flight
    await hub.unregister(first_sub)
    stalled.release.set()

    with pytest.raises(RuntimeError):
        await pending
    assert not hub.is_registered(first_sub)
    assert hub.online_users("new_notification") == set()
    assert await hub.publish(comment_event(recipient_id=1)) == 0


async def test_auth_failure_rejects_and_leaves_registry_untouched(hub):
    conn = FakeConnection()
    with pytest.raises(AuthenticationFailure):
        await hub.register(conn, "forged", "new_notification")
    assert conn.sent == [{"type": "connection_error", "error": "authentication_failure"}]
    assert conn.closed_with == CLOSE_UNAUTHORIZED
    assert hub.online_users("new_notification") == set()


async def test_upstream_failure_closes_with_1011():
    hub = NotificationHub(FakeVerifier({}, upstream_down=True))
    conn = FakeConnection()
    with pytest.raises(UpstreamFailure):
        await hub.register(conn, "tok", "new_message")
    assert conn.closed_with == CLOSE_UPSTREAM
    assert hub.online_users("new_message") == set()


async def test_unknown_channel_is_rejected(hub):
    with pytest.raises(ValueError):
        await hub.register(FakeConnection(), "tok-alice", "everything")


async def test_events_for_one_recipient_keep_publish_order(hub):
    conn = FakeConnection()
    await hub.register(conn, "tok-alice", "new_notification")
    await asyncio.gather(*(hub.publish(comment_event(1, comment_id=i)) for i in range(10)))
    assert [frame["payload"]["comment_id"] for frame in conn.data_frames()] == list(range(10))


async def test_failed_send_unregisters_subscriber(hub):
    conn = FakeConnection()
    subscriber = await hub.register(conn, "tok-alice", "new_notification")
    conn.fail_sends = True

    assert await hub.publish(comment_event(recipient_id=1)) == 0
    assert not hub.is_registered(subscriber)
    assert subscriber.state is ConnectionState.CLOSED


async def test_unregister_is_idempotent(hub):
    subscriber = await hub.register(FakeConnection(), "tok-bob", "new_message")
    await hub.unregister(subscriber)
    await hub.unregister(subscriber)
    assert hub.online_users("new_message") == set()


async def test_shutdown_closes_everyone(hub):
    alice, bob = FakeConnection(), FakeConnection()
    await hub.register(alice, "tok-alice", "new_message")
    await hub.register(bob, "tok-bob", "new_notification")
    await hub.shutdown()
    assert alice.closed_with == CLOSE_GOING_AWAY
    assert bob.closed_with == CLOSE_GOING_AWAY
    assert await hub.publish(comment_event(recipient_id=1)) == 0
