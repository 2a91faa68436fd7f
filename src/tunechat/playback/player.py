"""Contract for the external media-playback client (the Web Playback SDK player)."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from tunechat.errors import MalformedPayloadError

PLAYER_EVENTS = (
    "ready",
    "not_ready",
    "player_state_changed",
    "initialization_error",
    "authentication_error",
    "account_error",
    "playback_error",
)

TokenSupplier = Callable[[], Awaitable["str | None"]]
PlayerCallback = Callable[[Any], None]


class Player(Protocol):
    def add_listener(self, event: str, callback: PlayerCallback) -> Any: ...

    async def connect(self) -> bool: ...

    async def disconnect(self) -> None: ...

    async def toggle_play(self) -> None: ...

    async def next_track(self) -> None: ...

    async def previous_track(self) -> None: ...

    async def set_volume(self, volume: float) -> None: ...

    async def get_volume(self) -> float: ...

    async def get_current_state(self) -> dict | None: ...

    async def seek(self, position_ms: int) -> None: ...


PlayerFactory = Callable[[TokenSupplier], Player]


# ---------------------------------------------------------------------------
# Player state
# ---------------------------------------------------------------------------


class _SdkArtist(BaseModel):
    name: str
    uri: str | None = None


class _SdkTrack(BaseModel):
    id: str | None = None
    uri: str | None = None
    name: str
    duration_ms: int = 0
    artists: list[_SdkArtist] = []


class _SdkTrackWindow(BaseModel):
    current_track: _SdkTrack | None = None


class _SdkContext(BaseModel):
    uri: str | None = None


class _SdkState(BaseModel):
    paused: bool = True
    shuffle: bool = False
    position: int = 0
    duration: int = 0
    context: _SdkContext | None = None
    track_window: _SdkTrackWindow | None = None


@dataclass(frozen=True)
class PlayerTrack:
    id: str | None
    uri: str | None
    name: str
    artists: tuple[str, ...] = ()
    duration_ms: int = 0


@dataclass(frozen=True)
class PlaybackState:
    track: PlayerTrack | None
    position_ms: int = 0
    duration_ms: int = 0
    paused: bool = True
    shuffle: bool = False
    context_uri: str | None = None

    @classmethod
    def from_sdk(cls, raw: dict) -> PlaybackState:
        try:
            state = _SdkState.model_validate(raw)
        except ValidationError as exc:
            raise MalformedPayloadError("invalid player state", context={"state": raw}) from exc
        current = state.track_window.current_track if state.track_window else None
        track = None
        if current is not None:
            track = PlayerTrack(
                id=current.id,
                uri=current.uri,
                name=current.name,
                artists=tuple(a.name for a in current.artists),
                duration_ms=current.duration_ms,
            )
        return cls(
            track=track,
            position_ms=state.position,
            duration_ms=state.duration,
            paused=state.paused,
            shuffle=state.shuffle,
            context_uri=state.context.uri if state.context else None,
        )

    @property
    def playlist_id(self) -> str | None:
        """Playlist id when the context is ``spotify:playlist:<id>``."""
        if not self.context_uri:
            return None
        parts = self.context_uri.split(":")
        if len(parts) >= 3 and parts[1] == "playlist":
            return parts[2]
        return None
