"""User session state and the provider access-token cache.

One :class:`SessionManager` is created by the application's composition root
and handed to everything that needs the signed-in user or a provider token.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

import structlog

from tunechat.errors import ReauthenticationRequired

if TYPE_CHECKING:
    from tunechat.provider.auth import TokenGrant

log = structlog.get_logger(__name__)

TokenRefresher = Callable[[], Awaitable["TokenGrant"]]
SessionListener = Callable[["UserSession"], None]


@dataclass(frozen=True)
class UserSession:
    user_id: str | None = None
    provider_user_id: str | None = None
    is_loading: bool = True
    error: str | None = None
    needs_reauth: bool = False

    @property
    def signed_in(self) -> bool:
        return self.user_id is not None


class SessionManager:
    """Holds the signed-in user and a cached provider token.

    ``get_token()`` refreshes through *refresher* when the cached token has
    ``buffer_seconds`` or less left.  Concurrent callers share one in-flight
    refresh.
    """

    def __init__(
        self,
        refresher: TokenRefresher,
        *,
        buffer_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._refresher = refresher
        self._buffer = buffer_seconds
        self._clock = clock
        self._state = UserSession()
        self._listeners: list[SessionListener] = []
        self._access_token: str | None = None
        self._expires_at: float = 0.0
        self._refresh: asyncio.Future[str | None] | None = None
        self._generation = 0

    # -- state --

    @property
    def state(self) -> UserSession:
        return self._state

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register *listener* and call it right away with the current state."""
        self._listeners.append(listener)
        listener(self._state)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _update(self, **changes: object) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                log.exception("session_listener_failed")

    # -- auth provider events --

    def sign_in(
        self,
        user_id: str,
        *,
        provider_user_id: str | None = None,
        access_token: str | None = None,
        expires_at: float | None = None,
    ) -> None:
        if user_id != self._state.user_id:
            self._generation += 1
        if access_token:
            self._access_token = access_token
            self._expires_at = expires_at or 0.0
        log.info("session_signed_in", user_id=user_id)
        self._update(
            user_id=user_id,
            provider_user_id=provider_user_id,
            is_loading=False,
            error=None,
            needs_reauth=False,
        )

    def token_rotated(self, access_token: str, expires_at: float) -> None:
        self._access_token = access_token
        self._expires_at = expires_at
        if self._state.error or self._state.needs_reauth:
            self._update(error=None, needs_reauth=False)

    def sign_out(self) -> None:
        self._generation += 1
        self._clear_token()
        log.info("session_signed_out", user_id=self._state.user_id)
        self._update(user_id=None, provider_user_id=None, is_loading=False, error=None, needs_reauth=False)

    def set_loading(self, loading: bool = True) -> None:
        self._update(is_loading=loading)

    # -- token cache --

    def is_token_valid(self) -> bool:
        return bool(self._access_token) and self._expires_at > self._clock() + self._buffer

    def invalidate_token(self) -> None:
        self._clear_token()

    async def get_token(self) -> str | None:
        """Return a usable access token, refreshing it if needed.

        Returns None when nobody is signed in or the refresh failed; the
        failure is recorded on :attr:`state`.
        """
        if not self._state.signed_in:
            return None
        if self.is_token_valid():
            return self._access_token
        if self._refresh is None:
            self._refresh = asyncio.ensure_future(self._run_refresh(self._generation))
        return await asyncio.shield(self._refresh)

    async def force_refresh(self) -> str | None:
        """Drop the cached token and fetch a new one (used after a 401)."""
        if self._refresh is None:
            self._clear_token()
        return await self.get_token()

    async def _run_refresh(self, generation: int) -> str | None:
        try:
            grant = await self._refresher()
        except ReauthenticationRequired as exc:
            log.warning("token_refresh_rejected", error=str(exc))
            if generation == self._generation:
                self._clear_token()
                self._update(error=str(exc), needs_reauth=True)
            return None
        except Exception as exc:  # noqa: BLE001
            log.warning("token_refresh_failed", error=str(exc))
            if generation == self._generation:
                self._clear_token()
                self._update(error=f"Token refresh failed: {exc}")
            return None
        finally:
            self._refresh = None

        if generation != self._generation:
            # signed out (or switched user) while the refresh was in flight
            log.debug("token_refresh_discarded")
            return None
        self._access_token = grant.access_token
        self._expires_at = grant.expires_at
        log.debug("token_refreshed", expires_at=grant.expires_at)
        if self._state.error:
            self._update(error=None)
        return self._access_token

    def _clear_token(self) -> None:
        self._access_token = None
        self._expires_at = 0.0
