"""tunechat storage layer: async SQLite store for chat history, playlists and taste data."""

from tunechat.storage.database import Database
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

__all__ = [
    "ChatMessageRecord",
    "Database",
    "PlaylistArtistAggregate",
    "PlaylistMatch",
    "PlaylistRecord",
    "PlaylistTrackRecord",
    "Profile",
    "ProviderSession",
    "TopArtist",
]
