"""Imports taste data from Spotify into the store: top artists and submitted playlists."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from tunechat.storage.models import PlaylistRecord, PlaylistTrackRecord

if TYPE_CHECKING:
    from tunechat.provider.spotify import SpotifyClient
    from tunechat.storage.database import Database

log = structlog.get_logger(__name__)

_PLAYLIST_ID_RE = re.compile(r"^[A-Za-z0-9]{22}$")
_PLAYLIST_URL_RE = re.compile(r"(?:open\.spotify\.com/(?:[\w-]+/)?playlist/|spotify:playlist:)([A-Za-z0-9]{22})")


def parse_playlist_id(ref: str) -> str:
    """Extract a playlist id from a bare id, ``spotify:playlist:`` URI or open.spotify.com URL."""
    ref = ref.strip()
    if _PLAYLIST_ID_RE.match(ref):
        return ref
    m = _PLAYLIST_URL_RE.search(ref)
    if m:
        return m.group(1)
    msg = f"Not a Spotify playlist reference: {ref!r}"
    raise ValueError(msg)


@dataclass
class ImportSummary:
    playlist: PlaylistRecord
    tracks: int
    artists: int


class LibraryImporter:
    def __init__(self, db: Database, spotify: SpotifyClient) -> None:
        self._db = db
        self._spotify = spotify

    async def import_top_artists(self, user_id: str, *, time_range: str = "medium_term", limit: int = 50) -> int:
        artists = await self._spotify.get_top_artists(time_range=time_range, limit=limit)
        count = await self._db.replace_top_artists(
            user_id,
            [(a.id, a.name) for a in artists],
            time_range=time_range,
        )
        log.info("top_artists_imported", user_id=user_id, count=count, time_range=time_range)
        return count

    async def import_playlist(self, user_id: str, ref: str, *, page_pause: float = 0.3) -> ImportSummary:
        """Store a playlist, its tracks and its artist aggregate as submitted by *user_id*."""
        playlist_id = parse_playlist_id(ref)
        meta = await self._spotify.get_playlist(playlist_id)
        record = await self._db.upsert_playlist(
            spotify_playlist_id=meta.id,
            name=meta.name,
            description=meta.description,
            image_url=meta.image_url,
            owner_name=meta.owner.display_name if meta.owner else None,
            submitted_by_user_id=user_id,
        )

        tracks: list[PlaylistTrackRecord] = []
        occurrences: dict[str, dict] = {}
        async for page in self._spotify.iter_playlist_pages(playlist_id, pause=page_pause):
            for position, track in page.tracks(playlist_id=playlist_id):
                if not track.id or track.is_local:
                    continue
                track_artists = [{"spotify_id": a.id, "name": a.name} for a in track.artists]
                tracks.append(
                    PlaylistTrackRecord(
                        playlist_id=record.id,
                        spotify_track_id=track.id,
                        name=track.name,
                        album_name=track.album.name if track.album else None,
                        duration_ms=track.duration_ms,
                        track_order=position,
                        track_artists=track_artists,
                    )
                )
                for artist in track.artists:
                    entry = occurrences.setdefault(
                        artist.id,
                        {"spotify_artist_id": artist.id, "name": artist.name, "playlist_occurrences": 0},
                    )
                    entry["playlist_occurrences"] += 1

        await self._db.replace_playlist_tracks(record.id, tracks)
        aggregate = sorted(occurrences.values(), key=lambda e: e["playlist_occurrences"], reverse=True)
        await self._db.upsert_artist_aggregate(user_id=user_id, playlist_id=record.id, artists=aggregate)

        log.info(
            "playlist_imported",
            user_id=user_id,
            playlist_id=playlist_id,
            tracks=len(tracks),
            artists=len(aggregate),
        )
        return ImportSummary(playlist=record, tracks=len(tracks), artists=len(aggregate))
