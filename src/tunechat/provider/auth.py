"""Provider token exchange.

:class:`TokenExchanger` runs server-side: it owns the client secret and the
stored refresh tokens, and swaps a refresh token for a fresh access token.
:class:`RefreshTokenClient` is the client-side counterpart that calls the
HTTP endpoint wrapping it, and is what a :class:`~tunechat.session.SessionManager`
uses as its refresher.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import TYPE_CHECKING

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from tunechat.errors import (
    AuthorizationError,
    ConfigurationError,
    MalformedPayloadError,
    ReauthenticationRequired,
    TuneChatError,
)

if TYPE_CHECKING:
    from tunechat.config import SpotifyConfig
    from tunechat.storage.database import Database

log = structlog.get_logger(__name__)

TOKEN_URL = "https://accounts.spotify.com/api/token"  # noqa: S105


class TokenGrant(BaseModel):
    """An access token and its absolute expiry (epoch seconds)."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    expires_at: int = Field(alias="expiresAt")


class TokenExchangeError(TuneChatError):
    """The accounts service refused or failed the exchange for a non-auth reason."""

    def __init__(self, message: str, *, status: int = 502) -> None:
        super().__init__(message)
        self.status = status


class _TokenResponse(BaseModel):
    access_token: str
    expires_in: int = 3600
    refresh_token: str | None = None


class TokenExchanger:
    """Returns a valid provider access token for a user, exchanging the stored
    refresh token when the stored access token is close to expiry."""

    def __init__(
        self,
        db: Database,
        config: SpotifyConfig,
        *,
        buffer_seconds: int = 300,
        clock: Callable[[], float] = time.time,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._db = db
        self._config = config
        self._buffer = buffer_seconds
        self._clock = clock
        self._transport = _transport

    async def refresh_for_user(self, user_id: str | None) -> TokenGrant:
        if not user_id:
            raise AuthorizationError("User not authenticated.")

        session = await self._db.get_provider_session(user_id)
        now = self._clock()
        if session and session.access_token and session.expires_at and session.expires_at > now + self._buffer:
            return TokenGrant(access_token=session.access_token, expires_at=session.expires_at)

        if session is None or not session.refresh_token:
            log.warning("refresh_token_missing", user_id=user_id)
            raise ReauthenticationRequired("No refresh token available. Please re-authenticate.")

        client_secret = self._config.client_secret.get_secret_value()
        if not self._config.client_id or not client_secret:
            log.error("spotify_credentials_missing")
            raise ConfigurationError("Spotify client credentials are not configured.")

        kw: dict = {"timeout": 15.0}
        if self._transport is not None:
            kw["transport"] = self._transport
        try:
            async with httpx.AsyncClient(**kw) as client:
                resp = await client.post(
                    TOKEN_URL,
                    auth=(self._config.client_id, client_secret),
                    data={"grant_type": "refresh_token", "refresh_token": session.refresh_token},
                )
        except httpx.TransportError as exc:
            log.warning("token_exchange_network_error", user_id=user_id, error=str(exc))
            raise TokenExchangeError(f"Could not reach Spotify accounts service: {exc}") from exc

        if resp.status_code != 200:
            error = _error_code(resp)
            log.warning("token_exchange_failed", user_id=user_id, status=resp.status_code, error=error)
            if error == "invalid_grant":
                raise ReauthenticationRequired("Invalid refresh token. Please re-authenticate.")
            raise TokenExchangeError(f"Failed to refresh token: {error or resp.status_code}", status=resp.status_code)

        try:
            body = _TokenResponse.model_validate(resp.json())
        except (ValueError, ValidationError) as exc:
            raise MalformedPayloadError("Unexpected token response", context={"body": resp.text[:500]}) from exc

        expires_at = int(now + body.expires_in)
        await self._db.upsert_provider_session(
            user_id,
            access_token=body.access_token,
            expires_at=expires_at,
            refresh_token=body.refresh_token,
        )
        log.info("provider_token_refreshed", user_id=user_id, expires_at=expires_at, rotated=bool(body.refresh_token))
        return TokenGrant(access_token=body.access_token, expires_at=expires_at)


def _error_code(resp: httpx.Response) -> str | None:
    try:
        data = resp.json()
    except ValueError:
        return None
    return data.get("error") if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------


class RefreshTokenClient:
    """Calls ``POST /api/spotify/refresh-token`` on a tunechat API server.

    Instances are awaitable callables returning a :class:`TokenGrant`, which
    is the refresher shape :class:`~tunechat.session.SessionManager` expects.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        *,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._user_id = user_id
        self._transport = _transport

    async def __call__(self) -> TokenGrant:
        kw: dict = {"timeout": 15.0, "base_url": self._base_url}
        if self._transport is not None:
            kw["transport"] = self._transport
        async with httpx.AsyncClient(**kw) as client:
            resp = await client.post("/api/spotify/refresh-token", headers={"X-User-Id": self._user_id})

        if resp.status_code == 200:
            return TokenGrant.model_validate(resp.json())

        detail = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else {}
        message = detail.get("error") or f"refresh endpoint returned {resp.status_code}"
        if detail.get("code") == "reauthenticate" or resp.status_code == 401:
            raise ReauthenticationRequired(message)
        if detail.get("code") == "configuration":
            raise ConfigurationError(message)
        raise TokenExchangeError(message, status=resp.status_code)
