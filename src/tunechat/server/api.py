"""HTTP API for tunechat: provider token refresh, chat/match views and playlist removal."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

import httpx
import structlog
from fastapi import Depends, FastAPI, Header
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from tunechat.chat.actions import ChatActions
from tunechat.errors import (
    AuthorizationError,
    ConfigurationError,
    MalformedPayloadError,
    ReauthenticationRequired,
)
from tunechat.matching.actions import PlaylistActions
from tunechat.matching.ranker import TasteMatcher
from tunechat.provider.auth import TokenExchanger, TokenExchangeError, TokenGrant
from tunechat.storage.database import Database

if TYPE_CHECKING:
    from tunechat.config import AppConfig

log = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Wire models
# ---------------------------------------------------------------------------


class ApiResponse(BaseModel):
    ok: bool = True
    data: dict = {}
    error: str | None = None


class ErrorBody(BaseModel):
    error: str
    code: str


_ACTION_STATUS = {
    "invalid": 400,
    "unauthenticated": 401,
    "unauthorized": 403,
    "not_found": 404,
    "store_error": 500,
}


def _error(status: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status, content=ErrorBody(error=message, code=code).model_dump())


# ---------------------------------------------------------------------------
# Runtime state
# ---------------------------------------------------------------------------


class ApiState:
    """Owns the database connection and the services built on it."""

    def __init__(
        self,
        config: AppConfig,
        *,
        db_path: Path | None = None,
        _transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.started_at = datetime.now(timezone.utc)
        self.db = Database(db_path or config.db_path)
        self._transport = _transport
        self.exchanger: TokenExchanger | None = None
        self.actions: ChatActions | None = None
        self.matcher: TasteMatcher | None = None
        self.playlists: PlaylistActions | None = None

    async def open(self) -> None:
        self.db.path.parent.mkdir(parents=True, exist_ok=True)
        await self.db.connect()
        self.exchanger = TokenExchanger(
            self.db,
            self.config.spotify,
            buffer_seconds=self.config.provider.server_token_buffer_seconds,
            _transport=self._transport,
        )
        self.actions = ChatActions(self.db, max_message_length=self.config.chat.max_message_length)
        self.matcher = TasteMatcher(self.db, threshold=self.config.matching.similarity_threshold)
        self.playlists = PlaylistActions(self.db)
        log.info("api_state_opened", db=str(self.db.path))

    async def close(self) -> None:
        await self.db.close()

    def uptime(self) -> float:
        return round((datetime.now(timezone.utc) - self.started_at).total_seconds(), 2)


def current_user_id(x_user_id: str | None = Header(default=None)) -> str | None:
    """Resolve the signed-in user.  Deployments behind an auth proxy override this dependency."""
    return x_user_id or None


# ---------------------------------------------------------------------------
# FastAPI application factory
# ---------------------------------------------------------------------------


def create_api_app(state: ApiState) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await state.open()
        try:
            yield
        finally:
            await state.close()

    app = FastAPI(title="tunechat-api", docs_url=None, redoc_url=None, lifespan=lifespan)

    @app.post("/api/spotify/refresh-token", response_model=TokenGrant)
    async def refresh_token(user_id: str | None = Depends(current_user_id)) -> TokenGrant | JSONResponse:
        assert state.exchanger is not None  # noqa: S101
        try:
            return await state.exchanger.refresh_for_user(user_id)
        except ReauthenticationRequired as exc:
            return _error(400, str(exc), "reauthenticate")
        except AuthorizationError as exc:
            return _error(401, str(exc), "unauthenticated")
        except ConfigurationError as exc:
            return _error(500, str(exc), "configuration")
        except TokenExchangeError as exc:
            return _error(exc.status if exc.status >= 400 else 502, str(exc), "provider_error")
        except MalformedPayloadError as exc:
            return _error(502, str(exc), "provider_error")

    @app.get("/api/rooms/{room_id}/messages", response_model=ApiResponse)
    async def room_messages(room_id: str, limit: int | None = None) -> ApiResponse | JSONResponse:
        assert state.actions is not None  # noqa: S101
        result = await state.actions.list_messages(room_id, limit=limit or state.config.chat.history_page_size)
        if not result.success:
            return _error(400 if result.code == "invalid" else 500, result.error or "error", result.code or "error")
        messages = [m.model_dump(mode="json") for m in result.data or []]
        return ApiResponse(data={"messages": messages})

    @app.get("/api/matches", response_model=ApiResponse)
    async def matches(user_id: str | None = Depends(current_user_id)) -> ApiResponse | JSONResponse:
        assert state.matcher is not None  # noqa: S101
        if not user_id:
            return _error(401, "User not authenticated.", "unauthenticated")
        ranked = await state.matcher.matched_playlists(user_id)
        return ApiResponse(
            data={
                "playlists": [
                    {"id": c.id, "spotify_id": c.spotify_id, "name": c.name, "similarity": c.similarity}
                    for c in ranked
                ]
            }
        )

    @app.delete("/api/playlists/{playlist_id}", response_model=ApiResponse)
    async def delete_playlist(
        playlist_id: int, user_id: str | None = Depends(current_user_id)
    ) -> ApiResponse | JSONResponse:
        assert state.playlists is not None  # noqa: S101
        result = await state.playlists.delete_playlist(user_id, playlist_id)
        if not result.success:
            code = result.code or "error"
            return _error(_ACTION_STATUS.get(code, 500), result.error or "error", code)
        return ApiResponse(data={"deleted": playlist_id})

    @app.get("/health", response_model=ApiResponse)
    async def health_endpoint() -> ApiResponse:
        return ApiResponse(data={"uptime_seconds": state.uptime()})

    return app
