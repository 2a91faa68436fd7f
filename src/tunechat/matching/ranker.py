"""Candidate playlist scoring, filtering and ranking."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

import structlog
from pydantic import BaseModel, ValidationError

from tunechat.matching.profile import TasteProfile, TasteProfileBuilder
from tunechat.matching.similarity import SIMILARITY_THRESHOLD, jaccard

if TYPE_CHECKING:
    from tunechat.storage.database import Database
    from tunechat.storage.models import PlaylistRecord, PlaylistTrackRecord

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CandidatePlaylist:
    """A playlist considered for a user's queue, with its similarity score."""

    id: int
    spotify_id: str
    name: str
    submitted_by: str
    image_url: str | None = None
    artist_ids: frozenset[str] = field(default_factory=frozenset)
    similarity: float = 0.0

    @property
    def uri(self) -> str:
        return f"spotify:playlist:{self.spotify_id}"


class _TrackArtist(BaseModel):
    spotify_id: str
    name: str | None = None


def candidate_artist_ids(tracks: Iterable[PlaylistTrackRecord]) -> frozenset[str]:
    """Distinct artist ids referenced by *tracks*; malformed artist entries are skipped."""
    ids: set[str] = set()
    for track in tracks:
        for entry in track.track_artists:
            try:
                artist = _TrackArtist.model_validate(entry)
            except ValidationError:
                log.debug("malformed_track_artist", track_id=track.spotify_track_id, entry=repr(entry)[:200])
                continue
            if artist.spotify_id:
                ids.add(artist.spotify_id)
    return frozenset(ids)


def to_candidate(playlist: PlaylistRecord, tracks: Iterable[PlaylistTrackRecord] = ()) -> CandidatePlaylist:
    return CandidatePlaylist(
        id=playlist.id,
        spotify_id=playlist.spotify_playlist_id,
        name=playlist.name,
        submitted_by=playlist.submitted_by_user_id,
        image_url=playlist.image_url,
        artist_ids=candidate_artist_ids(tracks),
    )


class CandidateRanker:
    """Scores candidates against a taste profile and keeps those at or above *threshold*."""

    def __init__(self, threshold: float = SIMILARITY_THRESHOLD) -> None:
        self.threshold = threshold

    def rank(
        self,
        profile: TasteProfile,
        candidates: Iterable[CandidatePlaylist],
        current_user_id: str,
    ) -> list[CandidatePlaylist]:
        if not profile:
            return []

        scored: list[CandidatePlaylist] = []
        for candidate in candidates:
            if candidate.submitted_by == current_user_id:
                continue
            score = jaccard(profile, candidate.artist_ids)
            if score >= self.threshold:
                scored.append(replace(candidate, similarity=score))

        # list.sort is stable: equal scores keep their input order
        scored.sort(key=lambda c: c.similarity, reverse=True)
        return scored


# ---------------------------------------------------------------------------
# Store-backed matching service
# ---------------------------------------------------------------------------


class TasteMatcher:
    """Builds a user's profile, ranks stored playlists against it and persists the result."""

    def __init__(
        self,
        db: Database,
        *,
        threshold: float = SIMILARITY_THRESHOLD,
        builder: TasteProfileBuilder | None = None,
        ranker: CandidateRanker | None = None,
    ) -> None:
        self._db = db
        self._builder = builder or TasteProfileBuilder(db)
        self._ranker = ranker or CandidateRanker(threshold)

    async def match_for_user(self, user_id: str, *, persist: bool = True) -> list[CandidatePlaylist]:
        profile = await self._builder.build(user_id)
        if not profile:
            log.info("taste_profile_empty", user_id=user_id)
            return []

        candidates = await self._load_candidates(user_id)
        ranked = self._ranker.rank(profile, candidates, user_id)
        log.info(
            "playlists_ranked",
            user_id=user_id,
            candidates=len(candidates),
            matched=len(ranked),
            threshold=self._ranker.threshold,
        )

        if persist:
            await self._db.replace_playlist_matches(user_id, [(c.id, c.similarity) for c in ranked])
        return ranked

    async def matched_playlists(self, user_id: str) -> list[CandidatePlaylist]:
        """Previously persisted matches for *user_id*, best first."""
        matches = await self._db.list_playlist_matches(user_id)
        return [replace(to_candidate(m.playlist), similarity=m.score) for m in matches]

    async def _load_candidates(self, user_id: str) -> Sequence[CandidatePlaylist]:
        try:
            playlists = await self._db.list_playlists(exclude_user_id=user_id)
        except Exception as exc:  # noqa: BLE001
            log.warning("candidate_fetch_failed", user_id=user_id, error=str(exc))
            return []

        candidates: list[CandidatePlaylist] = []
        for playlist in playlists:
            try:
                tracks = await self._db.list_playlist_tracks(playlist.id)
            except Exception as exc:  # noqa: BLE001
                # this playlist scores against an empty artist set
                log.warning("candidate_tracks_failed", playlist_id=playlist.id, error=str(exc))
                tracks = []
            candidates.append(to_candidate(playlist, tracks))
        return candidates
