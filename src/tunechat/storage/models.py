"""Pydantic models for the tunechat storage layer."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class Profile(BaseModel):
    """A chat participant / playlist submitter."""

    id: str
    username: str | None = None
    avatar_url: str | None = None
    spotify_user_id: str | None = None
    created_at: datetime | None = None


class ChatMessageRecord(BaseModel):
    """A persisted chat message, with its author's profile joined in."""

    id: int
    room_id: str
    profile_id: str
    content: str
    created_at: datetime
    updated_at: datetime | None = None
    profile: Profile | None = None


class PlaylistRecord(BaseModel):
    """A playlist submitted to the catalogue."""

    id: int
    spotify_playlist_id: str
    name: str
    description: str | None = None
    image_url: str | None = None
    owner_name: str | None = None
    submitted_by_user_id: str
    created_at: datetime | None = None


class PlaylistTrackRecord(BaseModel):
    """One track of a stored playlist.

    ``track_artists`` is kept as the raw list stored in the database
    (``[{"spotify_id": ..., "name": ...}, ...]``); readers narrow it.
    """

    playlist_id: int
    spotify_track_id: str
    name: str
    album_name: str | None = None
    duration_ms: int | None = None
    track_order: int
    track_artists: list = Field(default_factory=list)


class TopArtist(BaseModel):
    """One of a user's top artists as reported by the provider."""

    user_id: str
    spotify_artist_id: str
    name: str
    rank: int
    time_range: str = "medium_term"


class PlaylistArtistAggregate(BaseModel):
    """Artist counts aggregated over one playlist submitted by a user.

    ``artists`` is the raw stored list of
    ``{"spotify_artist_id", "name", "playlist_occurrences"}`` objects.
    """

    user_id: str
    playlist_id: int
    artists: list = Field(default_factory=list)
    updated_at: datetime | None = None


class PlaylistMatch(BaseModel):
    """A persisted ranking result for a user."""

    user_id: str
    playlist: PlaylistRecord
    score: float = Field(ge=0.0, le=1.0)
    matched_at: datetime | None = None


class ProviderSession(BaseModel):
    """Provider (Spotify) tokens stored for a user."""

    user_id: str
    provider_user_id: str | None = None
    access_token: str | None = None
    expires_at: int | None = None  # epoch seconds
    refresh_token: str | None = None
    updated_at: datetime | None = None
