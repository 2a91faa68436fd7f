"""Taste matching: Jaccard similarity, profile building, playlist ranking and catalogue actions."""

from tunechat.matching.actions import PlaylistActions
from tunechat.matching.profile import TasteProfile, TasteProfileBuilder
from tunechat.matching.ranker import CandidatePlaylist, CandidateRanker, TasteMatcher
from tunechat.matching.similarity import (
    SIMILARITY_THRESHOLD,
    calculate_taste_similarity,
    is_taste_similar_logic,
    jaccard,
)

__all__ = [
    "SIMILARITY_THRESHOLD",
    "CandidatePlaylist",
    "CandidateRanker",
    "PlaylistActions",
    "TasteMatcher",
    "TasteProfile",
    "TasteProfileBuilder",
    "calculate_taste_similarity",
    "is_taste_similar_logic",
    "jaccard",
]
