"""Taste profile assembly: top artists ∪ artists of the user's own playlists."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ValidationError

if TYPE_CHECKING:
    from tunechat.storage.database import Database

log = structlog.get_logger(__name__)

TasteProfile = frozenset[str]


class _AggregatedArtist(BaseModel):
    spotify_artist_id: str
    name: str | None = None
    playlist_occurrences: int = 1


class TasteProfileBuilder:
    """Builds a user's :data:`TasteProfile` from two independent sources.

    Either source may fail; the failure is logged and that source contributes
    nothing.  An empty result means no matches are possible.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    async def build(self, user_id: str) -> TasteProfile:
        top, aggregated = await asyncio.gather(
            self._top_artist_ids(user_id),
            self._aggregated_artist_ids(user_id),
        )
        profile = frozenset(top | aggregated)
        log.debug(
            "taste_profile_built",
            user_id=user_id,
            top_artists=len(top),
            aggregated_artists=len(aggregated),
            size=len(profile),
        )
        return profile

    async def _top_artist_ids(self, user_id: str) -> set[str]:
        try:
            artists = await self._db.list_top_artists(user_id)
        except Exception as exc:  # noqa: BLE001
            log.warning("taste_source_failed", source="top_artists", user_id=user_id, error=str(exc))
            return set()
        return {a.spotify_artist_id for a in artists if a.spotify_artist_id}

    async def _aggregated_artist_ids(self, user_id: str) -> set[str]:
        try:
            aggregates = await self._db.list_artist_aggregates(user_id)
        except Exception as exc:  # noqa: BLE001
            log.warning("taste_source_failed", source="playlist_aggregates", user_id=user_id, error=str(exc))
            return set()

        ids: set[str] = set()
        for aggregate in aggregates:
            for entry in aggregate.artists:
                try:
                    artist = _AggregatedArtist.model_validate(entry)
                except ValidationError:
                    log.warning(
                        "malformed_aggregate_entry",
                        user_id=user_id,
                        playlist_id=aggregate.playlist_id,
                        entry=repr(entry)[:200],
                    )
                    continue
                if artist.spotify_artist_id:
                    ids.add(artist.spotify_artist_id)
        return ids
