"""Merged, ordered view of a room's messages.

Three inputs feed one list: the persisted snapshot loaded when a room opens,
optimistic messages created locally on send (string ids), and messages
broadcast by other participants (numeric ids).  The view holds at most one
entry per id, and is ordered by ``created_at`` with arrival order breaking
ties.

Optimistic messages carry a ``client_id``.  Broadcasts include it too, so an
incoming copy of a message we already show under a different id is unified
with it instead of duplicated; the persisted (numeric) id wins.
"""

from __future__ import annotations

import itertools
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ValidationError

from tunechat.errors import MalformedPayloadError

if TYPE_CHECKING:
    from tunechat.storage.models import ChatMessageRecord

log = structlog.get_logger(__name__)

MessageId = int | str
Listener = Callable[[list["ChatMessage"]], None]


# ---------------------------------------------------------------------------
# Message type
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Author:
    id: str
    username: str | None = None
    avatar_url: str | None = None


@dataclass
class ChatMessage:
    id: MessageId
    content: str
    created_at: datetime
    profile_id: str | None = None
    profile: Author | None = None
    client_id: str | None = None
    is_edit_pending: bool = False
    is_optimistic: bool = False

    @classmethod
    def optimistic(cls, content: str, author: Author, *, now: datetime | None = None) -> ChatMessage:
        """A locally created message that has not been persisted yet."""
        token = uuid.uuid4().hex
        return cls(
            id=token,
            content=content,
            created_at=now or datetime.now(timezone.utc),
            profile_id=author.id,
            profile=author,
            client_id=token,
            is_optimistic=True,
        )

    @classmethod
    def from_record(cls, record: ChatMessageRecord, *, client_id: str | None = None) -> ChatMessage:
        author = None
        if record.profile is not None:
            author = Author(record.profile.id, record.profile.username, record.profile.avatar_url)
        return cls(
            id=record.id,
            content=record.content,
            created_at=_aware(record.created_at),
            profile_id=record.profile_id,
            profile=author,
            client_id=client_id,
        )

    @classmethod
    def from_payload(cls, payload: dict) -> ChatMessage:
        """Narrow a broadcast/record payload; raises :class:`MalformedPayloadError`."""
        try:
            wire = _MessagePayload.model_validate(payload)
        except ValidationError as exc:
            raise MalformedPayloadError("invalid chat message payload", context={"payload": payload}) from exc
        profile_id = wire.profile_id or (wire.profile.id if wire.profile else None)
        author = None
        if wire.profile is not None:
            author = Author(wire.profile.id, wire.profile.username, wire.profile.avatar_url)
        return cls(
            id=wire.id,
            content=wire.content,
            created_at=_aware(wire.created_at),
            profile_id=profile_id,
            profile=author,
            client_id=wire.client_id,
            is_optimistic=isinstance(wire.id, str),
        )

    def to_payload(self) -> dict:
        return {
            "id": self.id,
            "client_id": self.client_id,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
            "profile_id": self.profile_id,
            "profile": (
                {"id": self.profile.id, "username": self.profile.username, "avatar_url": self.profile.avatar_url}
                if self.profile
                else None
            ),
        }


class _AuthorPayload(BaseModel):
    id: str
    username: str | None = None
    avatar_url: str | None = None


class _MessagePayload(BaseModel):
    id: int | str
    content: str
    created_at: datetime
    profile_id: str | None = None
    profile: _AuthorPayload | None = None
    client_id: str | None = None


def _aware(dt: datetime) -> datetime:
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


@dataclass
class _Entry:
    seq: int
    message: ChatMessage = field(compare=False)


class MessageReconciler:
    """Keeps one room's messages deduplicated and in timestamp order."""

    def __init__(self, *, local_user_id: str | None = None) -> None:
        self.local_user_id = local_user_id
        self._entries: list[_Entry] = []
        self._seq = itertools.count()
        self._listeners: list[Listener] = []

    # -- view --

    @property
    def messages(self) -> list[ChatMessage]:
        return [e.message for e in self._entries]

    def get(self, message_id: MessageId) -> ChatMessage | None:
        entry = self._find(message_id)
        return entry.message if entry else None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; it receives the merged view after each change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -- inputs --

    def load_snapshot(self, messages: Iterable[ChatMessage]) -> None:
        """Merge a persisted snapshot.  Snapshot rows replace same-id entries."""
        changed = False
        for message in messages:
            changed |= self._merge(message, replace_existing=True)
        if changed:
            self._commit()

    def add_optimistic(self, message: ChatMessage) -> None:
        if self._merge(message, replace_existing=False):
            self._commit()

    def apply_broadcast(self, message: ChatMessage) -> bool:
        """Merge a message broadcast by another participant.

        Returns False when the message was ignored (our own echo, or an id
        already shown).
        """
        if self.local_user_id is not None and message.profile_id == self.local_user_id:
            return False
        if self._merge(message, replace_existing=False):
            self._commit()
            return True
        return False

    def restore(self, message: ChatMessage) -> None:
        """Put back a message removed by a delete that did not go through."""
        if self._merge(message, replace_existing=False):
            self._commit()

    def confirm(self, client_id: str, persisted_id: int, created_at: datetime | None = None) -> bool:
        """Remap the optimistic message *client_id* to its persisted id."""
        entry = self._find_client(client_id)
        if entry is None:
            return False
        if isinstance(entry.message.id, int):
            return False
        if self._find(persisted_id) is not None:
            # the persisted copy already arrived on another path
            self._entries.remove(entry)
        else:
            entry.message = replace(
                entry.message,
                id=persisted_id,
                created_at=_aware(created_at) if created_at else entry.message.created_at,
                is_optimistic=False,
            )
        self._commit()
        return True

    def discard(self, client_id: str) -> bool:
        """Drop the optimistic copy *client_id* (its persistence failed)."""
        entry = self._find_client(client_id)
        if entry is None or not entry.message.is_optimistic:
            return False
        self._entries.remove(entry)
        self._commit()
        return True

    def retract(self, client_id: str, profile_id: str | None) -> bool:
        """Drop another participant's unconfirmed message after its sender gave up on it.

        Only the optimistic copy is removed, and only when *profile_id* is its author.
        """
        entry = self._find_client(client_id)
        if entry is None or not entry.message.is_optimistic:
            return False
        if profile_id is None or entry.message.profile_id != profile_id:
            log.warning("message_retract_refused", client_id=client_id, profile_id=profile_id)
            return False
        self._entries.remove(entry)
        self._commit()
        return True

    # -- edits --

    def edit(self, message_id: MessageId, content: str) -> bool:
        """Replace content in place and clear the pending flag.

        Authorship is checked by the persistence layer, not here.
        """
        entry = self._find(message_id)
        if entry is None:
            return False
        if entry.message.content == content and not entry.message.is_edit_pending:
            return True
        entry.message = replace(entry.message, content=content, is_edit_pending=False)
        self._notify()
        return True

    def mark_edit_pending(self, message_id: MessageId, content: str) -> str | None:
        """Show *content* as an unconfirmed edit; returns the previous content, or None if absent."""
        entry = self._find(message_id)
        if entry is None:
            return None
        previous = entry.message.content
        entry.message = replace(entry.message, content=content, is_edit_pending=True)
        self._notify()
        return previous

    def delete(self, message_id: MessageId) -> ChatMessage | None:
        entry = self._find(message_id)
        if entry is None:
            return None
        self._entries.remove(entry)
        self._notify()
        return entry.message

    def clear(self) -> None:
        if self._entries:
            self._entries.clear()
            self._notify()

    # -- internals --

    def _merge(self, message: ChatMessage, *, replace_existing: bool) -> bool:
        if message.client_id:
            twin = self._find_client(message.client_id)
            if twin is not None and twin.message.id != message.id:
                if isinstance(message.id, int) and not isinstance(twin.message.id, int):
                    if self._find(message.id) is None:
                        twin.message = replace(message, is_optimistic=False)
                    else:
                        self._entries.remove(twin)
                    return True
                return False

        existing = self._find(message.id)
        if existing is not None:
            if replace_existing and existing.message != message:
                existing.message = message
                return True
            return False

        self._entries.append(_Entry(next(self._seq), message))
        return True

    def _commit(self) -> None:
        self._entries.sort(key=lambda e: (e.message.created_at, e.seq))
        self._notify()

    def _notify(self) -> None:
        view = self.messages
        for listener in list(self._listeners):
            try:
                listener(view)
            except Exception:
                log.exception("message_listener_failed")

    def _find(self, message_id: MessageId) -> _Entry | None:
        for entry in self._entries:
            # exact match: 1 and "1" are different ids
            if type(entry.message.id) is type(message_id) and entry.message.id == message_id:
                return entry
        return None

    def _find_client(self, client_id: str) -> _Entry | None:
        for entry in self._entries:
            if entry.message.client_id == client_id:
                return entry
        return None
