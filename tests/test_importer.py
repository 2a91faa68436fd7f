"""Tests for importing top artists and submitted playlists into the store."""

from __future__ import annotations

import httpx
import pytest

from tunechat.provider.importer import LibraryImporter, parse_playlist_id
from tunechat.provider.spotify import SpotifyClient
from tunechat.storage import Database

PLAYLIST_ID = "37i9dQZF1DXcBWIGoYBM5M"


class _Tokens:
    async def get_token(self) -> str | None:
        return "tok"

    async def force_refresh(self) -> str | None:
        return "tok"


def _track(track_id: str, artists: list[str]) -> dict:
    return {
        "track": {
            "type": "track",
            "id": track_id,
            "name": f"Song {track_id}",
            "duration_ms": 1000,
            "artists": [{"type": "artist", "id": a, "name": a.upper()} for a in artists],
            "album": {"type": "album", "name": "LP"},
        }
    }


def _handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/v1/me/top/artists":
        return httpx.Response(
            200,
            json={
                "items": [
                    {"type": "artist", "id": "a1", "name": "One"},
                    {"type": "artist", "name": "no id"},
                    {"type": "artist", "id": "a2", "name": "Two"},
                ]
            },
        )
    if path == f"/v1/playlists/{PLAYLIST_ID}":
        return httpx.Response(
            200,
            json={
                "type": "playlist",
                "id": PLAYLIST_ID,
                "name": "Today's Top Hits",
                "images": [{"url": "http://img/1.jpg"}],
                "owner": {"id": "spotify", "display_name": "Spotify"},
            },
        )
    if path == f"/v1/playlists/{PLAYLIST_ID}/tracks":
        items = [
            _track("t1", ["a1", "a2"]),
            _track("t2", ["a2"]),
            {"track": {"type": "track", "id": None, "name": "local", "is_local": True, "artists": []}},
            _track("t3", ["a2", "a3"]),
        ]
        return httpx.Response(200, json={"items": items, "next": None, "total": len(items)})
    return httpx.Response(404, text="not found")


@pytest.fixture()
def spotify() -> SpotifyClient:
    return SpotifyClient(_Tokens(), retry_delay=0, _transport=httpx.MockTransport(_handler))


# ---------------------------------------------------------------------------
# parse_playlist_id
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "ref",
    [
        PLAYLIST_ID,
        f"spotify:playlist:{PLAYLIST_ID}",
        f"https://open.spotify.com/playlist/{PLAYLIST_ID}?si=abc123",
        f"https://open.spotify.com/intl-de/playlist/{PLAYLIST_ID}",
    ],
)
def test_parse_playlist_id(ref: str):
    assert parse_playlist_id(ref) == PLAYLIST_ID


@pytest.mark.parametrize("ref", ["", "spotify:track:37i9dQZF1DXcBWIGoYBM5M", "https://example.com/x"])
def test_parse_playlist_id_rejects(ref: str):
    with pytest.raises(ValueError, match="Not a Spotify playlist reference"):
        parse_playlist_id(ref)


# ---------------------------------------------------------------------------
# LibraryImporter
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_import_top_artists_skips_malformed(db: Database, spotify: SpotifyClient):
    async with spotify:
        count = await LibraryImporter(db, spotify).import_top_artists("u1")
    assert count == 2
    assert [a.spotify_artist_id for a in await db.list_top_artists("u1")] == ["a1", "a2"]


@pytest.mark.asyncio()
async def test_import_playlist_stores_tracks_and_aggregate(db: Database, spotify: SpotifyClient):
    async with spotify:
        summary = await LibraryImporter(db, spotify).import_playlist("u1", f"spotify:playlist:{PLAYLIST_ID}", page_pause=0)

    assert summary.playlist.name == "Today's Top Hits"
    assert summary.playlist.image_url == "http://img/1.jpg"
    assert summary.playlist.owner_name == "Spotify"
    assert summary.tracks == 3
    assert summary.artists == 3

    tracks = await db.list_playlist_tracks(summary.playlist.id)
    assert [(t.spotify_track_id, t.track_order) for t in tracks] == [("t1", 0), ("t2", 1), ("t3", 3)]
    assert tracks[0].track_artists == [{"spotify_id": "a1", "name": "A1"}, {"spotify_id": "a2", "name": "A2"}]

    [aggregate] = await db.list_artist_aggregates("u1")
    assert aggregate.artists[0] == {"spotify_artist_id": "a2", "name": "A2", "playlist_occurrences": 3}
    assert {a["spotify_artist_id"] for a in aggregate.artists} == {"a1", "a2", "a3"}


@pytest.mark.asyncio()
async def test_import_playlist_rejects_bad_reference(db: Database, spotify: SpotifyClient):
    async with spotify:
        with pytest.raises(ValueError):
            await LibraryImporter(db, spotify).import_playlist("u1", "not a playlist")
