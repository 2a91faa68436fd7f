"""Room channel subscriptions over a pub/sub transport.

The transport is any object with the shape of a realtime client::

    channel = transport.channel("room-abc", {"config": {"presence": {"key": "user-1"}}})
    channel.on("broadcast", "message", callback)
    channel.on("presence", "sync", callback)
    channel.subscribe(status_callback)
    await channel.send({"type": "broadcast", "event": "message", "payload": {...}})
    await channel.track({"name": "alice", "image": None})
    channel.presence_state()  # {"user-1": [{"name": "alice", "image": None}]}
    await transport.remove_channel(channel)

A handle starts CONNECTING, becomes SUBSCRIBED when the transport confirms
the subscription, and DISCONNECTED on any other status or on :meth:`leave`.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Protocol

import structlog

log = structlog.get_logger(__name__)

BROADCAST_EVENT = "message"
RETRACT_EVENT = "retract"
CHANGES_CHANNEL_TEMPLATE = "db-chat_messages-for-{room}"

BroadcastCallback = Callable[[dict], None]
ChangeCallback = Callable[[dict], None]
StateCallback = Callable[["ChannelState"], None]
PresenceCallback = Callable[["dict[str, PresentUser]"], None]


class RealtimeChannel(Protocol):
    def on(self, event_type: str, event: str, callback: Callable[..., None]) -> Any: ...

    def subscribe(self, status_callback: Callable[..., None]) -> Any: ...

    async def send(self, message: dict) -> Any: ...

    async def track(self, meta: dict) -> Any: ...

    async def untrack(self) -> Any: ...

    def presence_state(self) -> dict[str, list[dict]]: ...


class RealtimeTransport(Protocol):
    def channel(self, name: str, params: dict | None = None) -> RealtimeChannel: ...

    async def remove_channel(self, channel: RealtimeChannel) -> Any: ...


class ChannelState(StrEnum):
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"


@dataclass(frozen=True)
class PresentUser:
    id: str
    name: str | None = None
    image: str | None = None


def parse_presence(state: Any) -> dict[str, PresentUser]:
    """Reduce a raw presence state to one user per key; the first meta wins."""
    users: dict[str, PresentUser] = {}
    if not isinstance(state, dict):
        return users
    for key, metas in state.items():
        if not isinstance(metas, list) or not metas or not isinstance(metas[0], dict):
            continue
        meta = metas[0]
        name = meta.get("name")
        image = meta.get("image")
        users[str(key)] = PresentUser(
            id=str(key),
            name=name if isinstance(name, str) else None,
            image=image if isinstance(image, str) else None,
        )
    return users


_handle_ids = itertools.count(1)


class ChannelHandle:
    """One subscription to one named channel.  Owned by whoever called ``join``."""

    def __init__(self, room: str, name: str, channel: RealtimeChannel) -> None:
        self.id = next(_handle_ids)
        self.room = room
        self.name = name
        self.channel = channel
        self.state = ChannelState.CONNECTING
        self.closed = False
        self.presence: dict[str, PresentUser] = {}
        self._broadcast_listeners: dict[str, list[BroadcastCallback]] = {}
        self._change_listeners: list[ChangeCallback] = []
        self._state_listeners: list[StateCallback] = []
        self._presence_listeners: list[PresenceCallback] = []

    def __repr__(self) -> str:
        return f"<ChannelHandle #{self.id} {self.name} {self.state}>"

    @property
    def is_subscribed(self) -> bool:
        return self.state is ChannelState.SUBSCRIBED

    def on_state(self, callback: StateCallback) -> None:
        self._state_listeners.append(callback)

    # -- transport callbacks --

    def _on_status(self, status: str, err: object | None = None) -> None:
        if self.closed:
            return
        new_state = ChannelState.SUBSCRIBED if status == "SUBSCRIBED" else ChannelState.DISCONNECTED
        if err is not None:
            log.warning("channel_status_error", channel=self.name, status=status, error=str(err))
        self._set_state(new_state)

    def _on_broadcast(self, message: dict) -> None:
        if self.closed:
            return
        payload = message.get("payload") if isinstance(message, dict) else None
        if not isinstance(payload, dict):
            log.warning("malformed_broadcast", channel=self.name, message=repr(message)[:200])
            return
        event = message.get("event") or BROADCAST_EVENT
        for listener in list(self._broadcast_listeners.get(event, ())):
            listener(payload)

    def _on_change(self, message: dict) -> None:
        if self.closed:
            return
        for listener in list(self._change_listeners):
            listener(message)

    def _on_presence_sync(self, *_: Any) -> None:
        if self.closed:
            return
        try:
            raw = self.channel.presence_state()
        except Exception as exc:  # noqa: BLE001
            log.warning("presence_state_failed", channel=self.name, error=str(exc))
            return
        self.presence = parse_presence(raw)
        log.debug("presence_synced", channel=self.name, users=len(self.presence))
        for listener in list(self._presence_listeners):
            listener(dict(self.presence))

    def _set_state(self, state: ChannelState) -> None:
        if state is self.state:
            return
        log.info("channel_state_changed", channel=self.name, old=self.state.value, new=state.value)
        self.state = state
        for listener in list(self._state_listeners):
            listener(state)

    def _close(self) -> None:
        self._set_state(ChannelState.DISCONNECTED)
        self.closed = True
        self.presence = {}
        self._broadcast_listeners.clear()
        self._change_listeners.clear()
        self._state_listeners.clear()
        self._presence_listeners.clear()


class ChatChannelClient:
    """Joins, sends on and leaves room channels."""

    def __init__(self, transport: RealtimeTransport, *, prefix: str = "room-") -> None:
        self._transport = transport
        self._prefix = prefix

    def channel_name(self, room: str) -> str:
        return f"{self._prefix}{room}"

    def join(self, room: str, *, presence_key: str | None = None) -> ChannelHandle:
        """Open a fresh broadcast subscription for *room*.

        With *presence_key* the channel also carries presence, keyed by it.
        Joining the same room twice yields two independent handles.
        """
        name = self.channel_name(room)
        params = {"config": {"presence": {"key": presence_key}}} if presence_key else None
        channel = self._transport.channel(name, params)
        handle = ChannelHandle(room, name, channel)
        for event in (BROADCAST_EVENT, RETRACT_EVENT):
            channel.on("broadcast", event, handle._on_broadcast)
        if presence_key:
            channel.on("presence", "sync", handle._on_presence_sync)
        channel.subscribe(handle._on_status)
        log.debug("channel_joined", channel=name, handle=handle.id)
        return handle

    def join_changes(self, room: str) -> ChannelHandle:
        """Open a subscription to persisted-record changes for *room*."""
        name = CHANGES_CHANNEL_TEMPLATE.format(room=room)
        channel = self._transport.channel(name)
        handle = ChannelHandle(room, name, channel)
        channel.on("postgres_changes", "*", handle._on_change)
        channel.subscribe(handle._on_status)
        log.debug("channel_joined", channel=name, handle=handle.id)
        return handle

    def on_broadcast(self, handle: ChannelHandle, callback: BroadcastCallback, *, event: str = BROADCAST_EVENT) -> None:
        if not handle.closed:
            handle._broadcast_listeners.setdefault(event, []).append(callback)

    def on_change(self, handle: ChannelHandle, callback: ChangeCallback) -> None:
        if not handle.closed:
            handle._change_listeners.append(callback)

    def on_presence(self, handle: ChannelHandle, callback: PresenceCallback) -> None:
        if not handle.closed:
            handle._presence_listeners.append(callback)

    async def send(self, handle: ChannelHandle, payload: dict, *, event: str = BROADCAST_EVENT) -> bool:
        """Broadcast *payload*.  Returns False (and drops it) unless the handle is subscribed."""
        if not handle.is_subscribed:
            log.warning("channel_send_dropped", channel=handle.name, state=handle.state.value, event=event)
            return False
        try:
            await handle.channel.send({"type": "broadcast", "event": event, "payload": payload})
        except Exception as exc:  # noqa: BLE001
            log.warning("channel_send_failed", channel=handle.name, event=event, error=str(exc))
            return False
        return True

    async def track(self, handle: ChannelHandle, meta: dict) -> bool:
        """Announce this client in the channel's presence state."""
        if not handle.is_subscribed:
            log.warning("presence_track_dropped", channel=handle.name, state=handle.state.value)
            return False
        try:
            await handle.channel.track(meta)
        except Exception as exc:  # noqa: BLE001
            log.warning("presence_track_failed", channel=handle.name, error=str(exc))
            return False
        return True

    async def untrack(self, handle: ChannelHandle) -> None:
        if handle.closed:
            return
        try:
            await handle.channel.untrack()
        except Exception as exc:  # noqa: BLE001
            log.warning("presence_untrack_failed", channel=handle.name, error=str(exc))

    async def leave(self, handle: ChannelHandle) -> None:
        if handle.closed:
            return
        handle._close()
        await self._transport.remove_channel(handle.channel)
        log.debug("channel_left", channel=handle.name, handle=handle.id)
