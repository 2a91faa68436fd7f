"""Spotify provider: Web API client, payload records, token exchange and importers."""

from tunechat.provider.auth import RefreshTokenClient, TokenExchanger, TokenExchangeError, TokenGrant
from tunechat.provider.importer import LibraryImporter, parse_playlist_id
from tunechat.provider.spotify import SpotifyAPIError, SpotifyAuthError, SpotifyClient

__all__ = [
    "LibraryImporter",
    "RefreshTokenClient",
    "SpotifyAPIError",
    "SpotifyAuthError",
    "SpotifyClient",
    "TokenExchangeError",
    "TokenExchanger",
    "TokenGrant",
    "parse_playlist_id",
]
