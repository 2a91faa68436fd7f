"""Server-side chat actions: validated, author-checked message persistence.

Every action returns an :class:`ActionResult` instead of raising, with a
``code`` that lets callers tell validation, authorization and store failures
apart.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal
from uuid import UUID

import structlog
from pydantic import BaseModel, PositiveInt, ValidationError, ValidationInfo, field_validator

from tunechat.storage.models import ChatMessageRecord

if TYPE_CHECKING:
    from tunechat.storage.database import Database

log = structlog.get_logger(__name__)

DEFAULT_MAX_LENGTH = 1000

ErrorCode = Literal["invalid", "unauthenticated", "unauthorized", "not_found", "store_error"]


class ActionResult(BaseModel):
    success: bool
    message: str | None = None
    error: str | None = None
    code: ErrorCode | None = None
    data: ChatMessageRecord | list[ChatMessageRecord] | None = None

    @classmethod
    def fail(cls, code: ErrorCode, error: str) -> ActionResult:
        return cls(success=False, error=error, code=code)


# ---------------------------------------------------------------------------
# Input schemas
# ---------------------------------------------------------------------------


def _check_content(value: str, info: ValidationInfo) -> str:
    value = value.strip()
    max_length = (info.context or {}).get("max_length", DEFAULT_MAX_LENGTH)
    if not value:
        raise ValueError("Message cannot be empty.")
    if len(value) > max_length:
        raise ValueError(f"Message cannot exceed {max_length} characters.")
    return value


class SendMessageInput(BaseModel):
    room_id: UUID
    content: str

    normalize_content = field_validator("content")(_check_content)


class EditMessageInput(BaseModel):
    message_id: PositiveInt
    content: str

    normalize_content = field_validator("content")(_check_content)


class DeleteMessageInput(BaseModel):
    message_id: PositiveInt


def _first_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    return str(err.get("msg", "Invalid input")).removeprefix("Value error, ")


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


class ChatActions:
    """Persist chat messages on behalf of an authenticated user."""

    def __init__(self, db: Database, *, max_message_length: int = DEFAULT_MAX_LENGTH) -> None:
        self._db = db
        self._max_length = max_message_length

    async def send_message(self, user_id: str | None, room_id: str, content: str) -> ActionResult:
        if not user_id:
            return ActionResult.fail("unauthenticated", "User not authenticated.")
        try:
            data = SendMessageInput.model_validate(
                {"room_id": room_id, "content": content},
                context={"max_length": self._max_length},
            )
        except ValidationError as exc:
            return ActionResult.fail("invalid", _first_error(exc))

        try:
            record = await self._db.insert_message(
                room_id=str(data.room_id),
                profile_id=user_id,
                content=data.content,
            )
        except Exception as exc:  # noqa: BLE001
            log.error("chat_send_failed", room_id=room_id, user_id=user_id, error=str(exc))
            return ActionResult.fail("store_error", "Failed to send message.")

        log.info("chat_message_sent", room_id=room_id, message_id=record.id)
        return ActionResult(success=True, message="Message sent.", data=record)

    async def edit_message(self, user_id: str | None, message_id: int, content: str) -> ActionResult:
        if not user_id:
            return ActionResult.fail("unauthenticated", "User not authenticated.")
        try:
            data = EditMessageInput.model_validate(
                {"message_id": message_id, "content": content},
                context={"max_length": self._max_length},
            )
        except ValidationError as exc:
            return ActionResult.fail("invalid", _first_error(exc))

        denied = await self._check_owner(user_id, data.message_id, "edit")
        if denied is not None:
            return denied

        try:
            record = await self._db.update_message_content(data.message_id, data.content)
        except Exception as exc:  # noqa: BLE001
            log.error("chat_edit_failed", message_id=message_id, error=str(exc))
            return ActionResult.fail("store_error", "Failed to edit message.")
        if record is None:
            return ActionResult.fail("not_found", "Message not found.")

        log.info("chat_message_edited", message_id=record.id)
        return ActionResult(success=True, message="Message updated.", data=record)

    async def delete_message(self, user_id: str | None, message_id: int) -> ActionResult:
        if not user_id:
            return ActionResult.fail("unauthenticated", "User not authenticated.")
        try:
            data = DeleteMessageInput.model_validate({"message_id": message_id})
        except ValidationError as exc:
            return ActionResult.fail("invalid", _first_error(exc))

        denied = await self._check_owner(user_id, data.message_id, "delete")
        if denied is not None:
            return denied

        try:
            deleted = await self._db.delete_message(data.message_id)
        except Exception as exc:  # noqa: BLE001
            log.error("chat_delete_failed", message_id=message_id, error=str(exc))
            return ActionResult.fail("store_error", "Failed to delete message.")
        if not deleted:
            return ActionResult.fail("not_found", "Message not found.")

        log.info("chat_message_deleted", message_id=data.message_id)
        return ActionResult(success=True, message="Message deleted.")

    async def list_messages(self, room_id: str, *, limit: int = 50) -> ActionResult:
        try:
            room = str(UUID(str(room_id)))
        except ValueError:
            return ActionResult.fail("invalid", "Invalid room id.")
        try:
            records = await self._db.list_messages(room, limit=limit)
        except Exception as exc:  # noqa: BLE001
            log.error("chat_history_failed", room_id=room_id, error=str(exc))
            return ActionResult.fail("store_error", "Failed to load messages.")
        return ActionResult(success=True, data=records)

    async def _check_owner(self, user_id: str, message_id: int, verb: str) -> ActionResult | None:
        try:
            existing = await self._db.get_message(message_id)
        except Exception as exc:  # noqa: BLE001
            log.error("chat_lookup_failed", message_id=message_id, error=str(exc))
            return ActionResult.fail("store_error", "Failed to look up message.")
        if existing is None:
            return ActionResult.fail("not_found", "Message not found.")
        if existing.profile_id != user_id:
            log.warning("chat_unauthorized", verb=verb, message_id=message_id, user_id=user_id)
            return ActionResult.fail("unauthorized", f"User not authorized to {verb} this message.")
        return None
