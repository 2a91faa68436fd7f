"""Async Spotify Web API client using httpx.

Endpoints:
- GET /me, GET /me/top/artists
- GET /tracks/{id} (``market=from_token`` to get relinking/restriction info)
- GET /playlists/{id}, GET /playlists/{id}/tracks
- GET /me/tracks/contains, PUT/DELETE /me/tracks
- GET /playlists/{id}/followers/contains, PUT/DELETE /playlists/{id}/followers
- PUT /me/player/play, PUT /me/player/shuffle
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx
import structlog

from tunechat.errors import AuthorizationError, MalformedPayloadError
from tunechat.provider.payloads import (
    ArtistRef,
    CurrentUser,
    PlaylistItemsPage,
    PlaylistMeta,
    TopArtistsPage,
    TrackPayload,
    narrow,
)

log = structlog.get_logger(__name__)

API_BASE = "https://api.spotify.com/v1"
_BATCH_SIZE = 50
_MAX_RETRIES = 3
_BODY_LIMIT = 500

_PLAYLIST_ITEM_FIELDS = (
    "items(track(id,uri,name,type,is_playable,is_local,linked_from(id,type,uri),"
    "artists(name,id,type),album(name,id,type,images),duration_ms,restrictions)),"
    "next,total,limit,offset"
)


class TokenSource(Protocol):
    async def get_token(self) -> str | None: ...

    async def force_refresh(self) -> str | None: ...


class SpotifyAuthError(AuthorizationError):
    """Raised when no usable token is available or Spotify keeps rejecting it."""


class SpotifyAPIError(Exception):
    """Raised for non-retryable Spotify API errors."""

    def __init__(self, status: int | None, method: str, endpoint: str, body: str = "") -> None:
        self.status = status
        self.method = method
        self.endpoint = endpoint
        self.body = body[:_BODY_LIMIT]
        label = status if status is not None else "network"
        super().__init__(f"Spotify API Error ({label}) for {method} {endpoint}: Body: {self.body}")

    @property
    def is_restriction(self) -> bool:
        """True for 403s caused by market/product/rights restrictions."""
        return self.status == 403 and "restriction" in self.body.lower()


class SpotifyClient:
    """Async Spotify Web API client; tokens come from a :class:`TokenSource`."""

    def __init__(
        self,
        tokens: TokenSource,
        *,
        retry_delay: float = 1.0,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._tokens = tokens
        self._retry_delay = retry_delay
        self._transport = _transport
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> SpotifyClient:
        kw: dict = {"timeout": 30.0}
        if self._transport is not None:
            kw["transport"] = self._transport
        self._client = httpx.AsyncClient(**kw)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -- request helper --

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json: dict | list | None = None,
        params: dict | None = None,
    ) -> Any:
        """Issue an authenticated call and return the decoded JSON body (None for 204/empty)."""
        assert self._client is not None  # noqa: S101
        endpoint = url.removeprefix(API_BASE)
        refreshed = False

        attempt = 0
        while attempt < _MAX_RETRIES:
            token = await self._tokens.get_token()
            if not token:
                raise SpotifyAuthError("No Spotify access token available. Sign in with Spotify again.")
            headers = {"Authorization": f"Bearer {token}"}

            try:
                resp = await self._client.request(method, url, headers=headers, json=json, params=params)
            except httpx.TransportError as exc:
                if attempt >= _MAX_RETRIES - 1:
                    raise SpotifyAPIError(None, method, endpoint, str(exc)) from exc
                wait = self._retry_delay * 2**attempt
                log.warning("spotify_network_error", error=str(exc), retry_in=wait, attempt=attempt)
                await asyncio.sleep(wait)
                attempt += 1
                continue

            if resp.status_code == 401:
                if refreshed:
                    raise SpotifyAuthError(
                        "Spotify authentication failed after token refresh. Sign in with Spotify again."
                    )
                # token expired mid-request: refresh once and replay without spending an attempt
                refreshed = True
                await self._tokens.force_refresh()
                continue

            if resp.status_code == 429:
                retry_after = int(resp.headers.get("Retry-After", "1"))
                log.warning("spotify_rate_limited", retry_after=retry_after, attempt=attempt)
                await asyncio.sleep(retry_after)
                attempt += 1
                continue

            if resp.status_code >= 400:
                raise SpotifyAPIError(resp.status_code, method, endpoint, resp.text)

            if resp.status_code == 204 or not resp.content:
                return None
            try:
                return resp.json()
            except ValueError as exc:
                raise MalformedPayloadError(
                    f"Non-JSON response from {method} {endpoint}",
                    context={"body": resp.text[:_BODY_LIMIT]},
                ) from exc

        raise SpotifyAPIError(None, method, endpoint, f"Max retries ({_MAX_RETRIES}) exceeded")

    # -- catalogue --

    async def get_current_user(self) -> CurrentUser:
        data = await self._request("GET", f"{API_BASE}/me")
        user = narrow(CurrentUser, data, endpoint="/me")
        if user is None:
            raise MalformedPayloadError("Unexpected /me payload", context={"payload": data})
        return user

    async def get_track(self, track_id: str) -> TrackPayload | None:
        """Full track object as seen from the user's market."""
        data = await self._request("GET", f"{API_BASE}/tracks/{track_id}", params={"market": "from_token"})
        return narrow(TrackPayload, data, track_id=track_id)

    async def get_top_artists(self, *, time_range: str = "medium_term", limit: int = 50) -> list[ArtistRef]:
        data = await self._request(
            "GET",
            f"{API_BASE}/me/top/artists",
            params={"time_range": time_range, "limit": limit},
        )
        page = narrow(TopArtistsPage, data, endpoint="/me/top/artists")
        return page.artists() if page else []

    async def get_playlist(self, playlist_id: str) -> PlaylistMeta:
        data = await self._request(
            "GET",
            f"{API_BASE}/playlists/{playlist_id}",
            params={"fields": "id,name,description,images,owner(id,display_name),type"},
        )
        meta = narrow(PlaylistMeta, data, playlist_id=playlist_id)
        if meta is None:
            raise MalformedPayloadError("Unexpected playlist payload", context={"playlist_id": playlist_id})
        return meta

    async def get_playlist_items(
        self,
        playlist_id: str,
        *,
        offset: int = 0,
        limit: int = 50,
    ) -> PlaylistItemsPage | None:
        """One page of a playlist's items; None if the page is malformed."""
        data = await self._request(
            "GET",
            f"{API_BASE}/playlists/{playlist_id}/tracks",
            params={"offset": offset, "limit": limit, "market": "from_token", "fields": _PLAYLIST_ITEM_FIELDS},
        )
        page = narrow(PlaylistItemsPage, data, playlist_id=playlist_id, offset=offset)
        if page is not None:
            page.offset = offset
        return page

    async def iter_playlist_pages(
        self,
        playlist_id: str,
        *,
        page_size: int = 100,
        pause: float = 0.3,
    ) -> AsyncIterator[PlaylistItemsPage]:
        """Walk every page of a playlist; stops early on a malformed page."""
        offset = 0
        while True:
            page = await self.get_playlist_items(playlist_id, offset=offset, limit=page_size)
            if page is None:
                log.warning("playlist_paging_halted", playlist_id=playlist_id, offset=offset)
                return
            yield page
            if not page.next or not page.items:
                return
            offset += len(page.items)
            if pause:
                await asyncio.sleep(pause)

    async def get_playable_playlist_tracks(
        self,
        playlist_id: str,
        *,
        page_size: int = 50,
        pause: float = 0.3,
    ) -> list[TrackPayload]:
        """Every track of a playlist the user can play, substituting relinked originals.

        Local files are skipped.  An unplayable item that carries ``linked_from``
        is looked up again by its original id and kept if that copy plays.
        """
        playable: list[TrackPayload] = []
        async for page in self.iter_playlist_pages(playlist_id, page_size=page_size, pause=pause):
            for _, track in page.tracks(playlist_id=playlist_id):
                if track.is_local:
                    continue
                if track.playable and track.uri:
                    playable.append(track)
                    continue
                linked = track.linked_from
                if linked is None or not linked.id or linked.type != "track":
                    continue
                try:
                    original = await self.get_track(linked.id)
                except (SpotifyAPIError, MalformedPayloadError) as exc:
                    log.warning("track_relink_failed", track_id=linked.id, error=str(exc))
                    continue
                if original is not None and original.playable and original.uri:
                    playable.append(original)
        return playable

    # -- library --

    async def is_track_saved(self, track_id: str) -> bool:
        data = await self._request("GET", f"{API_BASE}/me/tracks/contains", params={"ids": track_id})
        if not isinstance(data, list) or not data or not isinstance(data[0], bool):
            raise MalformedPayloadError("Unexpected /me/tracks/contains payload", context={"payload": data})
        return data[0]

    async def save_tracks(self, track_ids: list[str]) -> None:
        """Save tracks to the user's library in batches of 50."""
        for i in range(0, len(track_ids), _BATCH_SIZE):
            batch = track_ids[i : i + _BATCH_SIZE]
            await self._request("PUT", f"{API_BASE}/me/tracks", json={"ids": batch})

    async def remove_tracks(self, track_ids: list[str]) -> None:
        """Remove tracks from the user's library in batches of 50."""
        for i in range(0, len(track_ids), _BATCH_SIZE):
            batch = track_ids[i : i + _BATCH_SIZE]
            await self._request("DELETE", f"{API_BASE}/me/tracks", json={"ids": batch})

    async def is_following_playlist(self, playlist_id: str, user_id: str | None = None) -> bool:
        params = {"ids": user_id} if user_id else None
        data = await self._request("GET", f"{API_BASE}/playlists/{playlist_id}/followers/contains", params=params)
        if not isinstance(data, list) or not data or not isinstance(data[0], bool):
            raise MalformedPayloadError("Unexpected followers/contains payload", context={"payload": data})
        return data[0]

    async def follow_playlist(self, playlist_id: str) -> None:
        await self._request("PUT", f"{API_BASE}/playlists/{playlist_id}/followers", json={"public": False})

    async def unfollow_playlist(self, playlist_id: str) -> None:
        await self._request("DELETE", f"{API_BASE}/playlists/{playlist_id}/followers")

    # -- player --

    async def play(
        self,
        device_id: str,
        *,
        context_uri: str | None = None,
        position: int | None = None,
        uris: list[str] | None = None,
    ) -> None:
        body: dict = {}
        if context_uri:
            body["context_uri"] = context_uri
            if position is not None:
                body["offset"] = {"position": position}
        elif uris:
            body["uris"] = uris
        await self._request("PUT", f"{API_BASE}/me/player/play", params={"device_id": device_id}, json=body)

    async def set_shuffle(self, device_id: str, state: bool) -> None:
        await self._request(
            "PUT",
            f"{API_BASE}/me/player/shuffle",
            params={"state": "true" if state else "false", "device_id": device_id},
        )
