"""Server-side playlist catalogue actions, checked against the submitting user."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, PositiveInt, ValidationError

from tunechat.chat.actions import ActionResult

if TYPE_CHECKING:
    from tunechat.storage.database import Database

log = structlog.get_logger(__name__)


class DeletePlaylistInput(BaseModel):
    playlist_id: PositiveInt


class PlaylistActions:
    """Manage playlists on behalf of the user who submitted them."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def delete_playlist(self, user_id: str | None, playlist_id: int) -> ActionResult:
        """Delete a submitted playlist together with its tracks, aggregates and matches.

        Only the submitter may delete it.
        """
        if not user_id:
            return ActionResult.fail("unauthenticated", "User not authenticated. Please log in again.")
        try:
            data = DeletePlaylistInput.model_validate({"playlist_id": playlist_id})
        except ValidationError:
            return ActionResult.fail("invalid", "Playlist ID is required.")

        try:
            existing = await self._db.get_playlist(data.playlist_id)
        except Exception as exc:  # noqa: BLE001
            log.error("playlist_lookup_failed", playlist_id=playlist_id, error=str(exc))
            return ActionResult.fail("store_error", "Error verifying playlist.")
        if existing is None:
            return ActionResult.fail("not_found", "Playlist not found.")
        if existing.submitted_by_user_id != user_id:
            log.warning(
                "playlist_delete_unauthorized",
                playlist_id=data.playlist_id,
                user_id=user_id,
                owner=existing.submitted_by_user_id,
            )
            return ActionResult.fail("unauthorized", "You are not authorized to delete this playlist.")

        try:
            deleted = await self._db.delete_playlist(data.playlist_id)
        except Exception as exc:  # noqa: BLE001
            log.error("playlist_delete_failed", playlist_id=data.playlist_id, error=str(exc))
            return ActionResult.fail("store_error", "Failed to delete playlist.")
        if not deleted:
            # gone between the lookup and the delete
            return ActionResult.fail("not_found", "Playlist not found.")

        log.info("playlist_deleted", playlist_id=data.playlist_id, user_id=user_id)
        return ActionResult(success=True, message="Playlist deleted.")
