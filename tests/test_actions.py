"""Tests for server-side chat actions."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

from tunechat.chat.actions import ChatActions, EditMessageInput, SendMessageInput
from tunechat.storage import Database

ROOM = "9b2f3c1e-0d5e-4a8b-9c11-2f6a7e3d4b10"


@pytest_asyncio.fixture()
async def actions(db: Database) -> ChatActions:
    await db.upsert_profile("alice", username="Alice")
    await db.upsert_profile("bob", username="Bob")
    return ChatActions(db, max_message_length=20)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def test_send_input_strips_content():
    data = SendMessageInput.model_validate({"room_id": ROOM, "content": "  hi  "})
    assert data.content == "hi"


def test_edit_input_respects_context_max_length():
    with pytest.raises(ValueError, match="exceed 3"):
        EditMessageInput.model_validate({"message_id": 1, "content": "long"}, context={"max_length": 3})


# ---------------------------------------------------------------------------
# send_message
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_send_message_persists(actions: ChatActions):
    result = await actions.send_message("alice", ROOM, "  hello  ")
    assert result.success
    assert result.data.content == "hello"
    assert result.data.profile.username == "Alice"


@pytest.mark.asyncio()
async def test_send_requires_user(actions: ChatActions):
    result = await actions.send_message(None, ROOM, "hello")
    assert not result.success
    assert result.code == "unauthenticated"


@pytest.mark.asyncio()
@pytest.mark.parametrize(
    ("room", "content", "error"),
    [
        (ROOM, "   ", "Message cannot be empty."),
        (ROOM, "x" * 21, "Message cannot exceed 20 characters."),
        ("not-a-uuid", "hello", None),
    ],
)
async def test_send_rejects_invalid_input(actions: ChatActions, room, content, error):
    result = await actions.send_message("alice", room, content)
    assert not result.success
    assert result.code == "invalid"
    if error:
        assert result.error == error


@pytest.mark.asyncio()
async def test_send_store_failure(actions: ChatActions):
    result = await actions.send_message("ghost", ROOM, "hello")
    assert not result.success
    assert result.code == "store_error"
    assert result.error == "Failed to send message."


# ---------------------------------------------------------------------------
# edit / delete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_edit_by_author(actions: ChatActions):
    sent = await actions.send_message("alice", ROOM, "hello")
    result = await actions.edit_message("alice", sent.data.id, "hello again")
    assert result.success
    assert result.data.content == "hello again"


@pytest.mark.asyncio()
async def test_edit_by_other_user_is_unauthorized(actions: ChatActions):
    sent = await actions.send_message("alice", ROOM, "hello")
    result = await actions.edit_message("bob", sent.data.id, "hijack")
    assert not result.success
    assert result.code == "unauthorized"
    assert result.error == "User not authorized to edit this message."


@pytest.mark.asyncio()
async def test_edit_missing_message(actions: ChatActions):
    result = await actions.edit_message("alice", 999, "x")
    assert result.code == "not_found"


@pytest.mark.asyncio()
async def test_edit_rejects_non_positive_id(actions: ChatActions):
    result = await actions.edit_message("alice", 0, "x")
    assert result.code == "invalid"


@pytest.mark.asyncio()
async def test_delete_by_author_and_other(actions: ChatActions):
    sent = await actions.send_message("alice", ROOM, "hello")

    denied = await actions.delete_message("bob", sent.data.id)
    assert denied.code == "unauthorized"
    assert denied.error == "User not authorized to delete this message."

    result = await actions.delete_message("alice", sent.data.id)
    assert result.success
    assert (await actions.delete_message("alice", sent.data.id)).code == "not_found"


@pytest.mark.asyncio()
async def test_lookup_failure_is_store_error():
    store = AsyncMock()
    store.get_message.side_effect = RuntimeError("db locked")
    result = await ChatActions(store).delete_message("alice", 1)
    assert result.code == "store_error"


# ---------------------------------------------------------------------------
# list_messages
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_list_messages_normalizes_room_id(actions: ChatActions):
    await actions.send_message("alice", ROOM, "one")
    await actions.send_message("bob", ROOM, "two")

    result = await actions.list_messages(ROOM.upper(), limit=10)
    assert result.success
    assert [m.content for m in result.data] == ["one", "two"]


@pytest.mark.asyncio()
async def test_list_messages_invalid_room(actions: ChatActions):
    result = await actions.list_messages("nope")
    assert result.code == "invalid"
