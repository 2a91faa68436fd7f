"""Playback: player contract and the session controller driving it."""

from tunechat.playback.controller import PlaybackPhase, PlaybackRestrictedError, PlaybackSessionController
from tunechat.playback.player import PLAYER_EVENTS, PlaybackState, Player, PlayerTrack

__all__ = [
    "PLAYER_EVENTS",
    "PlaybackPhase",
    "PlaybackRestrictedError",
    "PlaybackSessionController",
    "PlaybackState",
    "Player",
    "PlayerTrack",
]
