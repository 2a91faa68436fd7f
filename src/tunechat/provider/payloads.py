"""Typed records for Spotify Web API payloads.

Responses are narrowed into these models at the client boundary.  Entries
that do not fit (wrong ``type``, missing ids) are logged and skipped rather
than passed on as loose dicts.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import Any, Literal, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

log = structlog.get_logger(__name__)

RESTRICTION_REASONS = frozenset({"market", "product", "explicit", "payment_required"})

_M = TypeVar("_M", bound=BaseModel)


def narrow(model: type[_M], raw: Any, **context: Any) -> _M | None:
    """Validate *raw* as *model*; log and return None if it does not fit."""
    if raw is None:
        return None
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        log.warning(
            "malformed_payload",
            model=model.__name__,
            errors=exc.error_count(),
            payload=repr(raw)[:300],
            **context,
        )
        return None


class Image(BaseModel):
    url: str
    height: int | None = None
    width: int | None = None


class ArtistRef(BaseModel):
    type: Literal["artist"] = "artist"
    id: str
    name: str


class AlbumRef(BaseModel):
    type: Literal["album"] = "album"
    id: str | None = None
    name: str
    images: list[Image] = []


class Restrictions(BaseModel):
    reason: str | None = None


class LinkedFrom(BaseModel):
    id: str | None = None
    type: str | None = None
    uri: str | None = None


class TrackPayload(BaseModel):
    type: Literal["track"]
    id: str | None = None
    uri: str | None = None
    name: str
    duration_ms: int = 0
    is_playable: bool | None = None
    is_local: bool = False
    linked_from: LinkedFrom | None = None
    restrictions: Restrictions | None = None
    artists: list[ArtistRef] = []
    album: AlbumRef | None = None

    @property
    def is_restricted(self) -> bool:
        return self.restrictions is not None and self.restrictions.reason in RESTRICTION_REASONS

    @property
    def playable(self) -> bool:
        """False for local files, tracks flagged unplayable, and restricted tracks."""
        return self.is_playable is not False and not self.is_local and not self.is_restricted


class PlaylistItemsPage(BaseModel):
    items: list[Any] = []
    next: str | None = None
    total: int | None = None
    offset: int = 0
    limit: int | None = None

    def tracks(self, **context: Any) -> Iterator[tuple[int, TrackPayload]]:
        """Yield ``(playlist_position, track)`` for every well-formed track item."""
        for i, item in enumerate(self.items):
            raw = item.get("track") if isinstance(item, dict) else None
            if raw is None:
                continue
            track = narrow(TrackPayload, raw, position=self.offset + i, **context)
            if track is not None:
                yield self.offset + i, track


class TopArtistsPage(BaseModel):
    items: list[Any] = []
    next: str | None = None
    total: int | None = None

    def artists(self) -> list[ArtistRef]:
        return [a for a in (narrow(ArtistRef, raw) for raw in self.items) if a is not None]


class PlaylistOwner(BaseModel):
    id: str | None = None
    display_name: str | None = None


class PlaylistMeta(BaseModel):
    type: Literal["playlist"] = "playlist"
    id: str
    name: str
    description: str | None = None
    images: list[Image] | None = None
    owner: PlaylistOwner | None = None

    @property
    def image_url(self) -> str | None:
        return self.images[0].url if self.images else None


class CurrentUser(BaseModel):
    id: str
    display_name: str | None = None
