"""Set similarity between taste profiles.

The Jaccard index is the single similarity measure used throughout tunechat:
``|A ∩ B| / |A ∪ B|``, defined as 0 when either side is empty.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from tunechat.storage.database import Database

log = structlog.get_logger(__name__)

# Authoritative default threshold for both playlist ranking (inclusive) and
# user-to-user comparison (exclusive).  Overridable via matching.similarity_threshold.
SIMILARITY_THRESHOLD = 0.05

SimilarityFn = Callable[[str, str], Awaitable[float]]


def jaccard(a: Iterable[str], b: Iterable[str]) -> float:
    """Return the Jaccard index of two collections of identifiers."""
    set_a = a if isinstance(a, (set, frozenset)) else set(a)
    set_b = b if isinstance(b, (set, frozenset)) else set(b)
    if not set_a or not set_b:
        return 0.0
    inter = len(set_a & set_b)
    return inter / (len(set_a) + len(set_b) - inter)


async def is_taste_similar_logic(
    user_a: str,
    user_b: str,
    similarity_fn: SimilarityFn,
    threshold: float = SIMILARITY_THRESHOLD,
) -> bool:
    """Decide whether two users have similar taste.

    A user compared with themselves is similar for any threshold below 1.0;
    *similarity_fn* is not consulted in that case.  Otherwise the score must
    be strictly above *threshold*.  A failing *similarity_fn* counts as
    "not similar".
    """
    if user_a == user_b:
        return threshold < 1.0
    try:
        score = await similarity_fn(user_a, user_b)
    except Exception as exc:  # noqa: BLE001
        log.warning("taste_similarity_failed", user_a=user_a, user_b=user_b, error=str(exc))
        return False
    return score > threshold


async def calculate_taste_similarity(db: Database, user_a: str, user_b: str) -> float:
    """Jaccard similarity of two users' top-artist sets, read from *db*."""
    if user_a == user_b:
        return 1.0
    try:
        artists_a = await db.list_top_artists(user_a)
        artists_b = await db.list_top_artists(user_b)
    except Exception as exc:  # noqa: BLE001
        log.warning("top_artists_fetch_failed", user_a=user_a, user_b=user_b, error=str(exc))
        return 0.0
    return jaccard(
        {a.spotify_artist_id for a in artists_a},
        {a.spotify_artist_id for a in artists_b},
    )
