"""One user's live view of a chat room."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from tunechat.chat.channel import RETRACT_EVENT, ChannelState
from tunechat.chat.reconciler import Author, ChatMessage, Listener, MessageId, MessageReconciler
from tunechat.errors import MalformedPayloadError

if TYPE_CHECKING:
    from collections.abc import Callable

    from tunechat.chat.actions import ChatActions
    from tunechat.chat.channel import ChannelHandle, ChatChannelClient, PresentUser

log = structlog.get_logger(__name__)


class RealtimeChatRoom:
    """Ties a room's broadcast channel, its record-change feed and the chat
    actions to a :class:`MessageReconciler`.

    Local sends show up immediately as optimistic messages, are broadcast,
    then persisted; the optimistic copy is remapped to the persisted id on
    success.  On failure it is removed locally and a retraction is broadcast
    so other participants drop their copy too.  Edits and deletes are applied
    locally first and reverted if the store rejects them.

    While open, the user is announced in the room's presence state and
    :attr:`present_users` mirrors everyone currently in the room.
    """

    def __init__(
        self,
        room_id: str,
        user: Author,
        *,
        channels: ChatChannelClient,
        actions: ChatActions,
        history_page_size: int = 50,
    ) -> None:
        self.room_id = room_id
        self.user = user
        self._channels = channels
        self._actions = actions
        self._page_size = history_page_size
        self.reconciler = MessageReconciler(local_user_id=user.id)
        self._broadcast: ChannelHandle | None = None
        self._changes: ChannelHandle | None = None
        self._track_task: asyncio.Task | None = None
        self.present_users: dict[str, PresentUser] = {}
        self.last_error: str | None = None

    # -- view --

    @property
    def messages(self) -> list[ChatMessage]:
        return self.reconciler.messages

    @property
    def is_connected(self) -> bool:
        return self._broadcast is not None and self._broadcast.is_subscribed

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.reconciler.subscribe(listener)

    # -- lifecycle --

    async def open(self) -> None:
        self._broadcast = self._channels.join(self.room_id, presence_key=self.user.id)
        self._channels.on_broadcast(self._broadcast, self._on_broadcast)
        self._channels.on_broadcast(self._broadcast, self._on_retract, event=RETRACT_EVENT)
        self._channels.on_presence(self._broadcast, self._on_presence)
        self._broadcast.on_state(self._on_broadcast_state)
        self._changes = self._channels.join_changes(self.room_id)
        self._channels.on_change(self._changes, self._on_change)
        if self._broadcast.is_subscribed:
            await self._track_presence()
        await self.load_history()

    async def load_history(self) -> None:
        result = await self._actions.list_messages(self.room_id, limit=self._page_size)
        if not result.success:
            # a failed load contributes nothing; the live feed still works
            log.warning("chat_history_unavailable", room_id=self.room_id, error=result.error)
            return
        self.reconciler.load_snapshot(ChatMessage.from_record(r) for r in result.data or [])

    async def close(self) -> None:
        if self._track_task is not None and not self._track_task.done():
            self._track_task.cancel()
        self._track_task = None
        if self._broadcast is not None:
            await self._channels.untrack(self._broadcast)
        for handle in (self._broadcast, self._changes):
            if handle is not None:
                await self._channels.leave(handle)
        self._broadcast = self._changes = None
        self.present_users = {}

    async def _track_presence(self) -> None:
        if self._broadcast is None:
            return
        meta = {"name": self.user.username or self.user.id, "image": self.user.avatar_url}
        if await self._channels.track(self._broadcast, meta):
            log.debug("presence_tracked", room_id=self.room_id, user_id=self.user.id)

    def _on_broadcast_state(self, state: ChannelState) -> None:
        # re-announce after a late or renewed subscription
        if state is ChannelState.SUBSCRIBED:
            self._track_task = asyncio.ensure_future(self._track_presence())

    # -- user actions --

    async def send(self, content: str) -> bool:
        content = content.strip()
        if not content:
            return False
        if not self.is_connected:
            log.warning("chat_send_while_disconnected", room_id=self.room_id)
            return False

        message = ChatMessage.optimistic(content, self.user)
        self.reconciler.add_optimistic(message)
        await self._channels.send(self._broadcast, message.to_payload())

        result = await self._actions.send_message(self.user.id, self.room_id, content)
        if not result.success or result.data is None:
            log.warning("chat_send_rejected", room_id=self.room_id, error=result.error, code=result.code)
            self.last_error = result.error
            self.reconciler.discard(message.client_id)
            if self._broadcast is not None:
                await self._channels.send(
                    self._broadcast,
                    {"client_id": message.client_id, "profile_id": self.user.id},
                    event=RETRACT_EVENT,
                )
            return False

        record = result.data
        self.reconciler.confirm(message.client_id, record.id, record.created_at)
        # let other participants swap their optimistic copy for the persisted one
        persisted = ChatMessage.from_record(record, client_id=message.client_id)
        await self._channels.send(self._broadcast, persisted.to_payload())
        return True

    async def edit(self, message_id: MessageId, content: str) -> bool:
        if isinstance(message_id, str):
            log.warning("chat_edit_unconfirmed", message_id=message_id)
            return False
        content = content.strip()
        current = self.reconciler.get(message_id)
        if current is None or not content:
            return False
        if current.content == content:
            return True

        previous = self.reconciler.mark_edit_pending(message_id, content)
        result = await self._actions.edit_message(self.user.id, message_id, content)
        if not result.success:
            log.warning("chat_edit_rejected", message_id=message_id, error=result.error, code=result.code)
            self.last_error = result.error
            self.reconciler.edit(message_id, previous)
            return False

        self.reconciler.edit(message_id, result.data.content if result.data else content)
        return True

    async def delete(self, message_id: MessageId) -> bool:
        if isinstance(message_id, str):
            log.warning("chat_delete_unconfirmed", message_id=message_id)
            return False
        removed = self.reconciler.delete(message_id)
        if removed is None:
            return False

        result = await self._actions.delete_message(self.user.id, message_id)
        if not result.success:
            log.warning("chat_delete_rejected", message_id=message_id, error=result.error, code=result.code)
            self.last_error = result.error
            self.reconciler.restore(removed)
            return False
        return True

    # -- channel callbacks --

    def _on_broadcast(self, payload: dict) -> None:
        try:
            message = ChatMessage.from_payload(payload)
        except MalformedPayloadError as exc:
            log.warning("chat_broadcast_malformed", room_id=self.room_id, payload=repr(exc.context)[:200])
            return
        self.reconciler.apply_broadcast(message)

    def _on_retract(self, payload: dict) -> None:
        client_id = payload.get("client_id")
        profile_id = payload.get("profile_id")
        if not isinstance(client_id, str) or not isinstance(profile_id, str):
            log.warning("chat_retract_malformed", room_id=self.room_id, payload=repr(payload)[:200])
            return
        if self.reconciler.retract(client_id, profile_id):
            log.info("chat_message_retracted", room_id=self.room_id, client_id=client_id)

    def _on_presence(self, users: dict[str, PresentUser]) -> None:
        self.present_users = users

    def _on_change(self, event: dict) -> None:
        kind = event.get("eventType")
        if kind == "UPDATE":
            row = event.get("new") or {}
            if isinstance(row.get("id"), int) and isinstance(row.get("content"), str):
                self.reconciler.edit(row["id"], row["content"])
        elif kind == "DELETE":
            row = event.get("old") or {}
            if isinstance(row.get("id"), int):
                self.reconciler.delete(row["id"])
