"""Tests for the tunechat storage layer."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from tunechat.storage import Database, PlaylistTrackRecord

ROOM = "9b2f3c1e-0d5e-4a8b-9c11-2f6a7e3d4b10"


async def _seed_profiles(db: Database, *ids: str) -> None:
    for profile_id in ids:
        await db.upsert_profile(profile_id, username=f"name-{profile_id}")


# ---------------------------------------------------------------------------
# Schema / connect
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_connect_creates_tables(db: Database):
    cur = await db.conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
    tables = {row["name"] for row in await cur.fetchall()}
    assert tables >= {
        "profiles",
        "chat_messages",
        "playlists",
        "playlist_tracks",
        "user_top_artists",
        "playlist_track_artist_aggregates",
        "user_playlist_matches",
        "provider_sessions",
    }


@pytest.mark.asyncio()
async def test_foreign_keys_enabled(db: Database):
    cur = await db.conn.execute("PRAGMA foreign_keys")
    row = await cur.fetchone()
    assert row[0] == 1


@pytest.mark.asyncio()
async def test_conn_before_connect_raises(tmp_path):
    database = Database(tmp_path / "x.db")
    with pytest.raises(RuntimeError, match="not connected"):
        _ = database.conn


# ---------------------------------------------------------------------------
# profiles
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_upsert_profile_keeps_existing_fields(db: Database):
    await db.upsert_profile("u1", username="alice", avatar_url="http://a/1.png")
    updated = await db.upsert_profile("u1", spotify_user_id="sp-alice")
    assert updated.username == "alice"
    assert updated.avatar_url == "http://a/1.png"
    assert updated.spotify_user_id == "sp-alice"


@pytest.mark.asyncio()
async def test_get_profile_missing(db: Database):
    assert await db.get_profile("nobody") is None


# ---------------------------------------------------------------------------
# chat_messages
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_insert_message_joins_profile(db: Database):
    await _seed_profiles(db, "u1")
    msg = await db.insert_message(room_id=ROOM, profile_id="u1", content="hello")
    assert msg.id > 0
    assert msg.profile is not None
    assert msg.profile.username == "name-u1"


@pytest.mark.asyncio()
async def test_insert_message_requires_profile(db: Database):
    with pytest.raises(Exception):  # noqa: B017
        await db.insert_message(room_id=ROOM, profile_id="ghost", content="boo")


@pytest.mark.asyncio()
async def test_list_messages_returns_newest_n_ascending(db: Database):
    await _seed_profiles(db, "u1")
    base = datetime(2026, 1, 1, tzinfo=UTC)
    for i in range(5):
        await db.insert_message(
            room_id=ROOM, profile_id="u1", content=f"m{i}", created_at=base + timedelta(minutes=i)
        )
    msgs = await db.list_messages(ROOM, limit=3)
    assert [m.content for m in msgs] == ["m2", "m3", "m4"]


@pytest.mark.asyncio()
async def test_list_messages_scoped_to_room(db: Database):
    await _seed_profiles(db, "u1")
    await db.insert_message(room_id=ROOM, profile_id="u1", content="here")
    await db.insert_message(room_id="other", profile_id="u1", content="there")
    assert [m.content for m in await db.list_messages(ROOM)] == ["here"]


@pytest.mark.asyncio()
async def test_update_and_delete_message(db: Database):
    await _seed_profiles(db, "u1")
    msg = await db.insert_message(room_id=ROOM, profile_id="u1", content="draft")

    edited = await db.update_message_content(msg.id, "final")
    assert edited is not None
    assert edited.content == "final"
    assert edited.updated_at is not None

    assert await db.delete_message(msg.id) is True
    assert await db.get_message(msg.id) is None
    assert await db.delete_message(msg.id) is False
    assert await db.update_message_content(msg.id, "gone") is None


# ---------------------------------------------------------------------------
# playlists / tracks
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_upsert_playlist_by_spotify_id(db: Database):
    p1 = await db.upsert_playlist(spotify_playlist_id="sp1", name="Old", submitted_by_user_id="u1")
    p2 = await db.upsert_playlist(spotify_playlist_id="sp1", name="New", submitted_by_user_id="u1")
    assert p1.id == p2.id
    assert p2.name == "New"


@pytest.mark.asyncio()
async def test_list_playlists_excludes_submitter(db: Database):
    await db.upsert_playlist(spotify_playlist_id="sp1", name="Mine", submitted_by_user_id="u1")
    await db.upsert_playlist(spotify_playlist_id="sp2", name="Theirs", submitted_by_user_id="u2")
    names = [p.name for p in await db.list_playlists(exclude_user_id="u1")]
    assert names == ["Theirs"]
    assert len(await db.list_playlists()) == 2


@pytest.mark.asyncio()
async def test_replace_playlist_tracks(db: Database):
    pl = await db.upsert_playlist(spotify_playlist_id="sp1", name="P", submitted_by_user_id="u1")
    tracks = [
        PlaylistTrackRecord(
            playlist_id=pl.id,
            spotify_track_id=f"t{i}",
            name=f"Track {i}",
            track_order=i,
            track_artists=[{"spotify_id": f"a{i}", "name": f"Artist {i}"}],
        )
        for i in range(3)
    ]
    assert await db.replace_playlist_tracks(pl.id, tracks) == 3
    assert await db.replace_playlist_tracks(pl.id, tracks[:1]) == 1

    stored = await db.list_playlist_tracks(pl.id)
    assert [t.spotify_track_id for t in stored] == ["t0"]
    assert stored[0].track_artists == [{"spotify_id": "a0", "name": "Artist 0"}]


@pytest.mark.asyncio()
async def test_delete_playlist_cascades(db: Database):
    pl = await db.upsert_playlist(spotify_playlist_id="sp1", name="P", submitted_by_user_id="u1")
    keep = await db.upsert_playlist(spotify_playlist_id="sp2", name="Keep", submitted_by_user_id="u1")
    await db.replace_playlist_tracks(
        pl.id,
        [PlaylistTrackRecord(playlist_id=pl.id, spotify_track_id="t0", name="T", track_order=0, track_artists=[])],
    )
    await db.upsert_artist_aggregate(user_id="u1", playlist_id=pl.id, artists=[{"spotify_artist_id": "a1"}])
    await db.replace_playlist_matches("u2", [(pl.id, 0.4), (keep.id, 0.2)])

    assert await db.delete_playlist(pl.id) is True
    assert await db.get_playlist(pl.id) is None
    assert await db.list_playlist_tracks(pl.id) == []
    assert await db.list_artist_aggregates("u1") == []
    assert [m.playlist.id for m in await db.list_playlist_matches("u2")] == [keep.id]
    assert await db.delete_playlist(pl.id) is False


# ---------------------------------------------------------------------------
# taste data
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_replace_top_artists_ranks_in_order(db: Database):
    await db.replace_top_artists("u1", [("a1", "One"), ("a2", "Two")])
    await db.replace_top_artists("u1", [("a3", "Three"), ("a1", "One")])
    artists = await db.list_top_artists("u1")
    assert [(a.spotify_artist_id, a.rank) for a in artists] == [("a3", 1), ("a1", 2)]


@pytest.mark.asyncio()
async def test_upsert_artist_aggregate_overwrites(db: Database):
    pl = await db.upsert_playlist(spotify_playlist_id="sp1", name="P", submitted_by_user_id="u1")
    await db.upsert_artist_aggregate(user_id="u1", playlist_id=pl.id, artists=[{"spotify_artist_id": "a1"}])
    await db.upsert_artist_aggregate(user_id="u1", playlist_id=pl.id, artists=[{"spotify_artist_id": "a2"}])
    aggregates = await db.list_artist_aggregates("u1")
    assert len(aggregates) == 1
    assert aggregates[0].artists == [{"spotify_artist_id": "a2"}]


@pytest.mark.asyncio()
async def test_playlist_matches_sorted_by_score(db: Database):
    p1 = await db.upsert_playlist(spotify_playlist_id="sp1", name="Low", submitted_by_user_id="u2")
    p2 = await db.upsert_playlist(spotify_playlist_id="sp2", name="High", submitted_by_user_id="u2")
    await db.replace_playlist_matches("u1", [(p1.id, 0.1), (p2.id, 0.6)])

    matches = await db.list_playlist_matches("u1")
    assert [m.playlist.name for m in matches] == ["High", "Low"]
    assert matches[0].score == pytest.approx(0.6)

    await db.replace_playlist_matches("u1", [])
    assert await db.list_playlist_matches("u1") == []


# ---------------------------------------------------------------------------
# provider_sessions
# ---------------------------------------------------------------------------


@pytest.mark.asyncio()
async def test_provider_session_keeps_refresh_token(db: Database):
    await db.upsert_provider_session(
        "u1", access_token="a1", expires_at=100, refresh_token="r1", provider_user_id="sp-u1"
    )
    session = await db.upsert_provider_session("u1", access_token="a2", expires_at=200)
    assert session.access_token == "a2"
    assert session.expires_at == 200
    assert session.refresh_token == "r1"
    assert session.provider_user_id == "sp-u1"


@pytest.mark.asyncio()
async def test_get_provider_session_missing(db: Database):
    assert await db.get_provider_session("nobody") is None
