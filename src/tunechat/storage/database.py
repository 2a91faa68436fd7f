"""Async SQLite database for the tunechat storage layer."""

from __future__ import annotations

import json
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from tunechat.storage.models import (
    ChatMessageRecord,
    PlaylistArtistAggregate,
    PlaylistMatch,
    PlaylistRecord,
    PlaylistTrackRecord,
    Profile,
    ProviderSession,
    TopArtist,
)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS profiles (
    id TEXT PRIMARY KEY,
    username TEXT,
    avatar_url TEXT,
    spotify_user_id TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS chat_messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    room_id TEXT NOT NULL,
    profile_id TEXT NOT NULL REFERENCES profiles(id),
    content TEXT NOT NULL CHECK(length(content) > 0),
    created_at TEXT NOT NULL,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS ix_chat_messages_room
    ON chat_messages(room_id, created_at);

CREATE TABLE IF NOT EXISTS playlists (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    spotify_playlist_id TEXT NOT NULL UNIQUE,
    name TEXT NOT NULL,
    description TEXT,
    image_url TEXT,
    owner_name TEXT,
    submitted_by_user_id TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS playlist_tracks (
    playlist_id INTEGER NOT NULL REFERENCES playlists(id) ON DELETE CASCADE,
    spotify_track_id TEXT NOT NULL,
    name TEXT NOT NULL,
    album_name TEXT,
    duration_ms INTEGER,
    track_order INTEGER NOT NULL,
    track_artists TEXT NOT NULL DEFAULT '[]',
    UNIQUE(playlist_id, track_order)
);

CREATE TABLE IF NOT EXISTS user_top_artists (
    user_id TEXT NOT NULL,
    spotify_artist_id TEXT NOT NULL,
    name TEXT NOT NULL,
    rank INTEGER NOT NULL,
    time_range TEXT NOT NULL DEFAULT 'medium_term',
    UNIQUE(user_id, spotify_artist_id, time_range)
);

CREATE TABLE IF NOT EXISTS playlist_track_artist_aggregates (
    user_id TEXT NOT NULL,
    playlist_id INTEGER NOT NULL REFERENCES playlists(id) ON DELETE CASCADE,
    artists_json TEXT NOT NULL DEFAULT '[]',
    updated_at TEXT NOT NULL,
    UNIQUE(user_id, playlist_id)
);

CREATE TABLE IF NOT EXISTS user_playlist_matches (
    user_id TEXT NOT NULL,
    playlist_id INTEGER NOT NULL REFERENCES playlists(id) ON DELETE CASCADE,
    score REAL NOT NULL CHECK(score >= 0 AND score <= 1),
    matched_at TEXT NOT NULL,
    UNIQUE(user_id, playlist_id)
);

CREATE TABLE IF NOT EXISTS provider_sessions (
    user_id TEXT PRIMARY KEY,
    provider_user_id TEXT,
    access_token TEXT,
    expires_at INTEGER,
    refresh_token TEXT,
    updated_at TEXT NOT NULL
);
"""

_MESSAGE_SELECT = """
    SELECT m.*, p.username AS p_username, p.avatar_url AS p_avatar_url,
           p.spotify_user_id AS p_spotify_user_id
    FROM chat_messages m
    LEFT JOIN profiles p ON p.id = m.profile_id
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Database:
    """Async SQLite database wrapper for tunechat."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._conn: aiosqlite.Connection | None = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Database not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    async def connect(self) -> None:
        self._conn = await aiosqlite.connect(self.path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(_SCHEMA)
        await self._conn.commit()

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> Database:
        await self.connect()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()

    # -- profiles -------------------------------------------------------------

    async def upsert_profile(
        self,
        profile_id: str,
        *,
        username: str | None = None,
        avatar_url: str | None = None,
        spotify_user_id: str | None = None,
    ) -> Profile:
        cur = await self.conn.execute(
            """
            INSERT INTO profiles (id, username, avatar_url, spotify_user_id, created_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                username = COALESCE(excluded.username, profiles.username),
                avatar_url = COALESCE(excluded.avatar_url, profiles.avatar_url),
                spotify_user_id = COALESCE(excluded.spotify_user_id, profiles.spotify_user_id)
            RETURNING *
            """,
            (profile_id, username, avatar_url, spotify_user_id, _now_iso()),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_profile(row)

    async def get_profile(self, profile_id: str) -> Profile | None:
        cur = await self.conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,))
        row = await cur.fetchone()
        return self._row_to_profile(row) if row else None

    # -- chat_messages --------------------------------------------------------

    async def insert_message(
        self,
        *,
        room_id: str,
        profile_id: str,
        content: str,
        created_at: datetime | None = None,
    ) -> ChatMessageRecord:
        stamp = created_at.isoformat() if created_at else _now_iso()
        cur = await self.conn.execute(
            """
            INSERT INTO chat_messages (room_id, profile_id, content, created_at)
            VALUES (?, ?, ?, ?)
            RETURNING id
            """,
            (room_id, profile_id, content, stamp),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        message = await self.get_message(row["id"])
        assert message is not None  # noqa: S101
        return message

    async def get_message(self, message_id: int) -> ChatMessageRecord | None:
        cur = await self.conn.execute(f"{_MESSAGE_SELECT} WHERE m.id = ?", (message_id,))  # noqa: S608
        row = await cur.fetchone()
        return self._row_to_message(row) if row else None

    async def update_message_content(self, message_id: int, content: str) -> ChatMessageRecord | None:
        cur = await self.conn.execute(
            "UPDATE chat_messages SET content = ?, updated_at = ? WHERE id = ? RETURNING id",
            (content, _now_iso(), message_id),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        if row is None:
            return None
        return await self.get_message(message_id)

    async def delete_message(self, message_id: int) -> bool:
        cur = await self.conn.execute("DELETE FROM chat_messages WHERE id = ?", (message_id,))
        await self.conn.commit()
        return cur.rowcount > 0

    async def list_messages(self, room_id: str, *, limit: int = 50) -> list[ChatMessageRecord]:
        """Return the newest *limit* messages of a room, oldest first."""
        cur = await self.conn.execute(
            f"""
            SELECT * FROM ({_MESSAGE_SELECT}
                WHERE m.room_id = ?
                ORDER BY m.created_at DESC, m.id DESC
                LIMIT ?)
            ORDER BY created_at, id
            """,  # noqa: S608
            (room_id, limit),
        )
        rows = await cur.fetchall()
        return [self._row_to_message(r) for r in rows]

    # -- playlists ------------------------------------------------------------

    async def upsert_playlist(
        self,
        *,
        spotify_playlist_id: str,
        name: str,
        submitted_by_user_id: str,
        description: str | None = None,
        image_url: str | None = None,
        owner_name: str | None = None,
    ) -> PlaylistRecord:
        cur = await self.conn.execute(
            """
            INSERT INTO playlists (spotify_playlist_id, name, description, image_url, owner_name,
                                   submitted_by_user_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (spotify_playlist_id) DO UPDATE SET
                name = excluded.name,
                description = excluded.description,
                image_url = excluded.image_url,
                owner_name = excluded.owner_name
            RETURNING *
            """,
            (spotify_playlist_id, name, description, image_url, owner_name, submitted_by_user_id, _now_iso()),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_playlist(row)

    async def get_playlist(self, playlist_id: int) -> PlaylistRecord | None:
        cur = await self.conn.execute("SELECT * FROM playlists WHERE id = ?", (playlist_id,))
        row = await cur.fetchone()
        return self._row_to_playlist(row) if row else None

    async def delete_playlist(self, playlist_id: int) -> bool:
        """Remove a playlist; its tracks, artist aggregates and matches cascade with it."""
        cur = await self.conn.execute("DELETE FROM playlists WHERE id = ?", (playlist_id,))
        await self.conn.commit()
        return cur.rowcount > 0

    async def list_playlists(self, *, exclude_user_id: str | None = None) -> list[PlaylistRecord]:
        if exclude_user_id:
            cur = await self.conn.execute(
                "SELECT * FROM playlists WHERE submitted_by_user_id != ? ORDER BY id",
                (exclude_user_id,),
            )
        else:
            cur = await self.conn.execute("SELECT * FROM playlists ORDER BY id")
        rows = await cur.fetchall()
        return [self._row_to_playlist(r) for r in rows]

    # -- playlist_tracks ------------------------------------------------------

    async def replace_playlist_tracks(
        self,
        playlist_id: int,
        tracks: Iterable[PlaylistTrackRecord],
    ) -> int:
        await self.conn.execute("DELETE FROM playlist_tracks WHERE playlist_id = ?", (playlist_id,))
        rows = [
            (
                playlist_id,
                t.spotify_track_id,
                t.name,
                t.album_name,
                t.duration_ms,
                t.track_order,
                json.dumps(t.track_artists),
            )
            for t in tracks
        ]
        await self.conn.executemany(
            """
            INSERT INTO playlist_tracks (playlist_id, spotify_track_id, name, album_name, duration_ms,
                                         track_order, track_artists)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            rows,
        )
        await self.conn.commit()
        return len(rows)

    async def list_playlist_tracks(self, playlist_id: int) -> list[PlaylistTrackRecord]:
        cur = await self.conn.execute(
            "SELECT * FROM playlist_tracks WHERE playlist_id = ? ORDER BY track_order",
            (playlist_id,),
        )
        rows = await cur.fetchall()
        return [self._row_to_playlist_track(r) for r in rows]

    # -- user_top_artists -----------------------------------------------------

    async def replace_top_artists(
        self,
        user_id: str,
        artists: Iterable[tuple[str, str]],
        *,
        time_range: str = "medium_term",
    ) -> int:
        """Replace a user's top artists with ``(spotify_artist_id, name)`` pairs, in rank order."""
        await self.conn.execute(
            "DELETE FROM user_top_artists WHERE user_id = ? AND time_range = ?",
            (user_id, time_range),
        )
        rows = [(user_id, artist_id, name, rank, time_range) for rank, (artist_id, name) in enumerate(artists, 1)]
        await self.conn.executemany(
            """
            INSERT INTO user_top_artists (user_id, spotify_artist_id, name, rank, time_range)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT (user_id, spotify_artist_id, time_range) DO NOTHING
            """,
            rows,
        )
        await self.conn.commit()
        return len(rows)

    async def list_top_artists(self, user_id: str) -> list[TopArtist]:
        cur = await self.conn.execute(
            "SELECT * FROM user_top_artists WHERE user_id = ? ORDER BY time_range, rank",
            (user_id,),
        )
        rows = await cur.fetchall()
        return [self._row_to_top_artist(r) for r in rows]

    # -- playlist_track_artist_aggregates -------------------------------------

    async def upsert_artist_aggregate(
        self,
        *,
        user_id: str,
        playlist_id: int,
        artists: list[dict],
    ) -> PlaylistArtistAggregate:
        cur = await self.conn.execute(
            """
            INSERT INTO playlist_track_artist_aggregates (user_id, playlist_id, artists_json, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (user_id, playlist_id) DO UPDATE SET
                artists_json = excluded.artists_json,
                updated_at = excluded.updated_at
            RETURNING *
            """,
            (user_id, playlist_id, json.dumps(artists), _now_iso()),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_aggregate(row)

    async def list_artist_aggregates(self, user_id: str) -> list[PlaylistArtistAggregate]:
        cur = await self.conn.execute(
            "SELECT * FROM playlist_track_artist_aggregates WHERE user_id = ? ORDER BY playlist_id",
            (user_id,),
        )
        rows = await cur.fetchall()
        return [self._row_to_aggregate(r) for r in rows]

    # -- user_playlist_matches ------------------------------------------------

    async def replace_playlist_matches(
        self,
        user_id: str,
        matches: Iterable[tuple[int, float]],
    ) -> int:
        now = _now_iso()
        await self.conn.execute("DELETE FROM user_playlist_matches WHERE user_id = ?", (user_id,))
        rows = [(user_id, playlist_id, score, now) for playlist_id, score in matches]
        await self.conn.executemany(
            "INSERT INTO user_playlist_matches (user_id, playlist_id, score, matched_at) VALUES (?, ?, ?, ?)",
            rows,
        )
        await self.conn.commit()
        return len(rows)

    async def list_playlist_matches(self, user_id: str) -> list[PlaylistMatch]:
        cur = await self.conn.execute(
            """
            SELECT m.user_id, m.score, m.matched_at, p.*
            FROM user_playlist_matches m
            JOIN playlists p ON p.id = m.playlist_id
            WHERE m.user_id = ?
            ORDER BY m.score DESC, p.id
            """,
            (user_id,),
        )
        rows = await cur.fetchall()
        return [
            PlaylistMatch(
                user_id=r["user_id"],
                playlist=self._row_to_playlist(r),
                score=r["score"],
                matched_at=r["matched_at"],
            )
            for r in rows
        ]

    # -- provider_sessions ----------------------------------------------------

    async def upsert_provider_session(
        self,
        user_id: str,
        *,
        access_token: str | None,
        expires_at: int | None,
        refresh_token: str | None = None,
        provider_user_id: str | None = None,
    ) -> ProviderSession:
        """Store fresh provider tokens; a ``None`` refresh token keeps the stored one."""
        cur = await self.conn.execute(
            """
            INSERT INTO provider_sessions (user_id, provider_user_id, access_token, expires_at,
                                           refresh_token, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (user_id) DO UPDATE SET
                provider_user_id = COALESCE(excluded.provider_user_id, provider_sessions.provider_user_id),
                access_token = excluded.access_token,
                expires_at = excluded.expires_at,
                refresh_token = COALESCE(excluded.refresh_token, provider_sessions.refresh_token),
                updated_at = excluded.updated_at
            RETURNING *
            """,
            (user_id, provider_user_id, access_token, expires_at, refresh_token, _now_iso()),
        )
        row = await cur.fetchone()
        await self.conn.commit()
        return self._row_to_provider_session(row)

    async def get_provider_session(self, user_id: str) -> ProviderSession | None:
        cur = await self.conn.execute("SELECT * FROM provider_sessions WHERE user_id = ?", (user_id,))
        row = await cur.fetchone()
        return self._row_to_provider_session(row) if row else None

    # -- row → model helpers --------------------------------------------------

    @staticmethod
    def _row_to_profile(row: aiosqlite.Row) -> Profile:
        return Profile(
            id=row["id"],
            username=row["username"],
            avatar_url=row["avatar_url"],
            spotify_user_id=row["spotify_user_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_message(row: aiosqlite.Row) -> ChatMessageRecord:
        return ChatMessageRecord(
            id=row["id"],
            room_id=row["room_id"],
            profile_id=row["profile_id"],
            content=row["content"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            profile=Profile(
                id=row["profile_id"],
                username=row["p_username"],
                avatar_url=row["p_avatar_url"],
                spotify_user_id=row["p_spotify_user_id"],
            ),
        )

    @staticmethod
    def _row_to_playlist(row: aiosqlite.Row) -> PlaylistRecord:
        return PlaylistRecord(
            id=row["id"],
            spotify_playlist_id=row["spotify_playlist_id"],
            name=row["name"],
            description=row["description"],
            image_url=row["image_url"],
            owner_name=row["owner_name"],
            submitted_by_user_id=row["submitted_by_user_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_playlist_track(row: aiosqlite.Row) -> PlaylistTrackRecord:
        return PlaylistTrackRecord(
            playlist_id=row["playlist_id"],
            spotify_track_id=row["spotify_track_id"],
            name=row["name"],
            album_name=row["album_name"],
            duration_ms=row["duration_ms"],
            track_order=row["track_order"],
            track_artists=json.loads(row["track_artists"] or "[]"),
        )

    @staticmethod
    def _row_to_top_artist(row: aiosqlite.Row) -> TopArtist:
        return TopArtist(
            user_id=row["user_id"],
            spotify_artist_id=row["spotify_artist_id"],
            name=row["name"],
            rank=row["rank"],
            time_range=row["time_range"],
        )

    @staticmethod
    def _row_to_aggregate(row: aiosqlite.Row) -> PlaylistArtistAggregate:
        return PlaylistArtistAggregate(
            user_id=row["user_id"],
            playlist_id=row["playlist_id"],
            artists=json.loads(row["artists_json"] or "[]"),
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_provider_session(row: aiosqlite.Row) -> ProviderSession:
        return ProviderSession(
            user_id=row["user_id"],
            provider_user_id=row["provider_user_id"],
            access_token=row["access_token"],
            expires_at=row["expires_at"],
            refresh_token=row["refresh_token"],
            updated_at=row["updated_at"],
        )
