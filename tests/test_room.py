"""Tests for a user's live room view: optimistic sends, reverts and remote updates."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
import pytest_asyncio

from tunechat.chat.actions import ChatActions
from tunechat.chat.channel import ChatChannelClient
from tunechat.chat.reconciler import Author, ChatMessage
from tunechat.chat.room import RealtimeChatRoom
from tunechat.storage import Database

ROOM = "9b2f3c1e-0d5e-4a8b-9c11-2f6a7e3d4b10"
ALICE = Author("alice", "Alice")
BOB = Author("bob", "Bob")

@pytest_asyncio.fixture()
async def actions(db: Database) -> ChatActions:
    await db.upsert_profile("alice", username="Alice")
    await db.upsert_profile("bob", username="Bob")
    return ChatActions(db)

@pytest_asyncio.fixture()
async def room(transport, actions: ChatActions):
    r = RealtimeChatRoom(ROOM, ALICE, channels=ChatChannelClient(transport), actions=actions)
    await r.open()
    yield r
    await r.close()

def _broadcast_channel(transport):
    return transport.named(f"room-{ROOM}")[0]

# ---------------------------------------------------------------------------
# open / history
# ---------------------------------------------------------------------------

@pytest.mark.asyncio()
async def test_open_loads_history(transport, actions: ChatActions):
    await actions.send_message("bob", ROOM, "earlier")
    r = RealtimeChatRoom(ROOM, ALICE, channels=ChatChannelClient(transport), actions=actions)
    await r.open()
    try:
        assert [m.content for m in r.messages] == ["earlier"]
        assert r.is_connected
    finally:
        await r.close()

@pytest.mark.asyncio()
async def test_close_releases_both_channels(transport, actions: ChatActions):
    r = RealtimeChatRoom(ROOM, ALICE, channels=ChatChannelClient(transport), actions=actions)
    await r.open()
    await r.close()
    assert {c.name for c in transport.removed} == {f"room-{ROOM}", f"db-chat_messages-for-{ROOM}"}
    assert not r.is_connected

# ---------------------------------------------------------------------------
# send
# ---------------------------------------------------------------------------

@pytest.mark.asyncio()
async def test_send_confirms_and_broadcasts_twice(room: RealtimeChatRoom, transport, db: Database):
    assert await room.send("hello") is True

    [msg] = room.messages
    assert isinstance(msg.id, int)
    assert not msg.is_optimistic

    sent = [m["payload"] for m in _broadcast_channel(transport).sent]
    assert len(sent) == 2
    assert isinstance(sent[0]["id"], str)
    assert sent[1]["id"] == msg.id
    assert sent[0]["client_id"] == sent[1]["client_id"] == msg.client_id

    stored = await db.list_messages(ROOM)
    assert [m.content for m in stored] == ["hello"]

@pytest.mark.asyncio()
async def test_send_failure_discards_optimistic(transport, db: Database):
    # no profile row for "ghost": the insert fails
    r = RealtimeChatRoom(ROOM, Author("ghost"), channels=ChatChannelClient(transport), actions=ChatActions(db))
    await r.open()
    try:
        assert await r.send("hello") is False
        assert r.messages == []
        assert r.last_error == "Failed to send message."
    finally:
        await r.close()

@pytest.mark.asyncio()
async def test_send_failure_retracts_broadcast_for_other_participants(transport, actions: ChatActions, db: Database):
    bob_room = RealtimeChatRoom(ROOM, BOB, channels=ChatChannelClient(transport), actions=actions)
    ghost_room = RealtimeChatRoom(ROOM, Author("ghost"), channels=ChatChannelClient(transport), actions=ChatActions(db))
    await bob_room.open()
    await ghost_room.open()
    try:
        assert await ghost_room.send("never stored") is False
        bob_ch, ghost_ch = transport.named(f"room-{ROOM}")
        optimistic, retraction = ghost_ch.sent
        assert retraction["event"] == "retract"
        assert retraction["payload"] == {"client_id": optimistic["payload"]["client_id"], "profile_id": "ghost"}

        # relay what the failing sender put on the wire
        bob_ch.deliver("broadcast", optimistic)
        assert [m.content for m in bob_room.messages] == ["never stored"]
        bob_ch.deliver("broadcast", retraction)
        assert bob_room.messages == []
    finally:
        await ghost_room.close()
        await bob_room.close()

@pytest.mark.asyncio()
async def test_send_while_disconnected_is_dropped(room: RealtimeChatRoom, transport):
    _broadcast_channel(transport).set_status("CLOSED")
    assert await room.send("hello") is False
    assert room.messages == []

@pytest.mark.asyncio()
async def test_send_blank_is_ignored(room: RealtimeChatRoom):
    assert await room.send("   ") is False

# ---------------------------------------------------------------------------
# edit / delete
# ---------------------------------------------------------------------------

@pytest.mark.asyncio()
async def test_edit_own_message(room: RealtimeChatRoom):
    await room.send("draft")
    mid = room.messages[0].id
    assert await room.edit(mid, "final") is True
    assert room.reconciler.get(mid).content == "final"
    assert not room.reconciler.get(mid).is_edit_pending

@pytest.mark.asyncio()
async def test_edit_rejected_reverts(room: RealtimeChatRoom, actions: ChatActions):
    other = await actions.send_message("bob", ROOM, "bob's words")
    await room.load_history()

    assert await room.edit(other.data.id, "alice's words") is False
    msg = room.reconciler.get(other.data.id)
    assert msg.content == "bob's words"
    assert not msg.is_edit_pending
    assert room.last_error == "User not authorized to edit this message."

@pytest.mark.asyncio()
async def test_edit_and_delete_refuse_unconfirmed_ids(room: RealtimeChatRoom):
    assert await room.edit("tmp-id", "x") is False
    assert await room.delete("tmp-id") is False

@pytest.mark.asyncio()
async def test_delete_rejected_restores(room: RealtimeChatRoom, actions: ChatActions):
    other = await actions.send_message("bob", ROOM, "keep me")
    await room.load_history()

    assert await room.delete(other.data.id) is False
    assert [m.id for m in room.messages] == [other.data.id]

@pytest.mark.asyncio()
async def test_delete_own_message(room: RealtimeChatRoom, db: Database):
    await room.send("bye")
    mid = room.messages[0].id
    assert await room.delete(mid) is True
    assert room.messages == []
    assert await db.get_message(mid) is None

# ---------------------------------------------------------------------------
# remote updates
# ---------------------------------------------------------------------------

@pytest.mark.asyncio()
async def test_remote_broadcast_is_merged(room: RealtimeChatRoom, transport):
    incoming = ChatMessage(
        id=77,
        content="hi alice",
        created_at=datetime.now(UTC),
        profile_id=BOB.id,
        profile=BOB,
    )
    ch = _broadcast_channel(transport)
    ch.deliver("broadcast", {"event": "message", "payload": incoming.to_payload()})
    ch.deliver("broadcast", {"event": "message", "payload": {"garbage": True}})

    assert [m.id for m in room.messages] == [77]

@pytest.mark.asyncio()
async def test_record_changes_apply_edits_and_deletes(room: RealtimeChatRoom, actions: ChatActions, transport):
    other = await actions.send_message("bob", ROOM, "v1")
    await room.load_history()
    changes = transport.named(f"db-chat_messages-for-{ROOM}")[0]

    changes.deliver("postgres_changes", {"eventType": "UPDATE", "new": {"id": other.data.id, "content": "v2"}})
    assert room.reconciler.get(other.data.id).content == "v2"

    changes.deliver("postgres_changes", {"eventType": "DELETE", "old": {"id": other.data.id}})
    assert room.messages == []


# ---------------------------------------------------------------------------
# presence
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_open_announces_user_and_mirrors_presence(transport, actions: ChatActions):
    alice = Author("alice", "Alice", "https://img/alice.png")
    r = RealtimeChatRoom(ROOM, alice, channels=ChatChannelClient(transport), actions=actions)
    await r.open()
    ch = _broadcast_channel(transport)
    try:
        assert ch.presence_key == "alice"
        assert ch.tracked == [{"name": "Alice", "image": "https://img/alice.png"}]

        ch.sync_presence({**ch.presence_state(), "bob": [{"name": "Bob", "image": None}]})
        assert set(r.present_users) == {"alice", "bob"}
        assert r.present_users["bob"].name == "Bob"
    finally:
        await r.close()

    assert ch.untracked == 1
    assert r.present_users == {}


@pytest.mark.asyncio()
async def test_presence_is_announced_once_subscription_arrives(transport, actions: ChatActions):
    transport.auto_subscribe = False
    r = RealtimeChatRoom(ROOM, Author("bob"), channels=ChatChannelClient(transport), actions=actions)
    await r.open()
    ch = _broadcast_channel(transport)
    try:
        assert ch.tracked == []
        ch.set_status("SUBSCRIBED")
        await asyncio.sleep(0)
        assert ch.tracked == [{"name": "bob", "image": None}]
    finally:
        await r.close()
