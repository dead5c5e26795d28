"""
Chat session controller: access, optimistic sends, dedupe, read receipts, revocation.
"""
import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest

from app.core.exceptions import AccessDenied, NotAuthenticated, TransientNetworkFailure
from app.realtime.events import ChangeType
from app.schema.ride_request import RequestStatus
from app.sync.chat_session import ChatSessionController, ChatState
from app.sync.unread import UnreadCounter
from app.utils.timestamps import utcnow


@pytest.fixture
async def make_chat(backend, feed):
    chats = []

    async def open_chat(request_id, user_id, **kwargs):
        chat = ChatSessionController(backend, feed, request_id, user_id, **kwargs)
        chats.append(chat)
        return await chat.open()

    yield open_chat
    for chat in chats:
        chat.close()


async def test_outsider_and_pending_request_are_denied(broker, world, make_chat, people, accepted):
    pending = world.request(people["ride"], people["second"])

    with pytest.raises(AccessDenied):
        await make_chat(accepted, people["outsider"])
    with pytest.raises(AccessDenied):
        await make_chat(pending, people["second"])
    assert broker.channel_count == 0


async def test_signed_out_user_cannot_open(make_chat, accepted):
    with pytest.raises(NotAuthenticated):
        await make_chat(accepted, None)


async def test_history_is_ordered_and_marked_read(backend, world, make_chat, people, accepted, eventually):
    now = utcnow()
    world.message(accepted, people["passenger"], people["driver"], "second", created_at=now)
    world.message(accepted, people["driver"], people["passenger"], "first", created_at=now - timedelta(minutes=1))
    world.message(accepted, people["driver"], people["passenger"], "third", created_at=now + timedelta(minutes=1))

    chat = await make_chat(accepted, people["passenger"])

    assert chat.state is ChatState.READY
    assert [m.content for m in chat.messages] == ["first", "second", "third"]
    await chat.flush()
    assert await backend.count_unread(people["passenger"]) == 0
    await eventually(lambda: chat.unread_in_view == 0)


async def test_send_shows_pending_entry_then_the_stored_row(backend, make_chat, people, accepted, eventually):
    chat = await make_chat(accepted, people["passenger"])
    snapshots = []
    chat.add_listener(lambda c: snapshots.append([(m.content, m.pending) for m in c.messages]))

    row = await chat.send("  running 5 min late ")

    assert snapshots[0] == [("running 5 min late", True)]
    assert [m.id for m in chat.messages] == [row.id]
    assert not chat.messages[0].pending
    await asyncio.sleep(0.03)
    # the feed echo does not add a second copy
    assert [m.id for m in chat.messages] == [row.id]
    assert not chat.sending


async def test_feed_echo_arriving_first_replaces_pending_entry(backend, broker, make_chat, people, accepted, eventually):
    chat = await make_chat(accepted, people["passenger"])
    original = backend.insert_message
    gate = asyncio.Event()

    async def slow_response(request_id, sender_id, content):
        row = await original(request_id, sender_id, content)
        await gate.wait()
        return row

    with patch.object(backend, "insert_message", side_effect=slow_response):
        task = asyncio.create_task(chat.send("hello"))
        await eventually(lambda: len(chat.messages) == 1 and not chat.messages[0].pending)
        gate.set()
        row = await task

    assert [m.id for m in chat.messages] == [row.id]


async def test_failed_send_rolls_back_and_keeps_draft(backend, make_chat, people, accepted):
    chat = await make_chat(accepted, people["passenger"])
    before = chat.messages

    with patch.object(backend, "insert_message", AsyncMock(side_effect=TransientNetworkFailure())):
        with pytest.raises(TransientNetworkFailure):
            await chat.send("see you at the gate")

    assert chat.messages == before
    assert chat.restored_draft == "see you at the gate"
    assert [f.content for f in chat.failed] == ["see you at the gate"]

    row = await chat.retry(chat.failed[0].id)
    assert row.content == "see you at the gate"
    assert chat.failed == []
    assert chat.restored_draft is None


async def test_whitespace_only_send_is_ignored(backend, make_chat, people, accepted):
    chat = await make_chat(accepted, people["passenger"])
    with patch.object(backend, "insert_message", AsyncMock()) as insert:
        assert await chat.send("   \n\t ") is None
    insert.assert_not_called()
    assert chat.messages == []


async def test_incoming_message_is_deduplicated_and_read_while_focused(
    backend, broker, feed, make_chat, people, accepted, eventually
):
    unread = await UnreadCounter(backend, feed, people["passenger"], recount_interval=0).start()
    chat = await make_chat(accepted, people["passenger"], unread=unread)

    row = await backend.insert_message(accepted, people["driver"], "here")
    broker.publish("messages", ChangeType.INSERT, new=row.model_dump())

    await eventually(lambda: [m.id for m in chat.messages] == [row.id])
    await eventually(lambda: chat.messages[0].is_read)
    await chat.flush()
    assert unread.total == 0
    assert len(chat.messages) == 1
    unread.close()


async def test_out_of_order_delivery_renders_by_creation_time(
    backend, broker, world, make_chat, people, accepted, eventually
):
    chat = await make_chat(accepted, people["passenger"])
    now = utcnow()
    world.message(accepted, people["driver"], people["passenger"], "m1", created_at=now)
    world.message(accepted, people["driver"], people["passenger"], "m2", created_at=now + timedelta(seconds=5))
    m1, m2 = await backend.list_messages(accepted)

    broker.publish("messages", ChangeType.INSERT, new=m2.model_dump())
    broker.publish("messages", ChangeType.INSERT, new=m1.model_dump())

    await eventually(lambda: len(chat.messages) == 2)
    assert [m.content for m in chat.messages] == ["m1", "m2"]


async def test_unfocused_chat_leaves_messages_unread(backend, make_chat, people, accepted, eventually):
    chat = await make_chat(accepted, people["passenger"])
    await chat.flush()
    chat.focus(False)

    await backend.insert_message(accepted, people["driver"], "ping")
    await eventually(lambda: len(chat.messages) == 1)
    await asyncio.sleep(0.03)
    assert chat.unread_in_view == 1

    chat.focus(True)
    await chat.flush()
    await eventually(lambda: chat.unread_in_view == 0)


async def test_cancellation_revokes_the_chat(backend, broker, make_chat, people, accepted, eventually):
    chat = await make_chat(accepted, people["driver"])

    await backend.set_request_status(accepted, RequestStatus.CANCELLED, people["passenger"])

    await eventually(lambda: chat.closed)
    assert chat.revoked
    assert broker.channel_count == 0
    with pytest.raises(AccessDenied):
        await chat.send("still there?")


async def test_send_result_after_close_is_dropped(backend, make_chat, people, accepted):
    chat = await make_chat(accepted, people["passenger"])
    original = backend.insert_message
    gate = asyncio.Event()

    async def slow(request_id, sender_id, content):
        await gate.wait()
        return await original(request_id, sender_id, content)

    with patch.object(backend, "insert_message", side_effect=slow):
        task = asyncio.create_task(chat.send("bye"))
        await asyncio.sleep(0.01)
        chat.close()
        at_close = chat.messages
        gate.set()
        await task

    assert chat.closed
    assert chat.messages == at_close
    assert chat.failed == []


async def test_unexpected_read_receipt_failure_is_logged(backend, make_chat, people, accepted, caplog, eventually):
    chat = await make_chat(accepted, people["passenger"])
    await chat.flush()
    caplog.set_level(logging.ERROR, logger="app.sync.chat_session")

    with patch.object(backend, "mark_read", AsyncMock(side_effect=RuntimeError("receipt store down"))):
        await backend.insert_message(accepted, people["driver"], "ping")
        await eventually(lambda: "Background chat task failed" in caplog.text)

    assert chat.state is ChatState.READY
    assert [m.content for m in chat.messages] == ["ping"]
