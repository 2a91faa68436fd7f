"""Playback session controller.

Drives an external player through a small state machine::

    UNINITIALIZED → CONNECTING → READY → DEGRADED / DISCONNECTED

Raw player callbacks are never handled inline: they are queued as named
events and applied one at a time by a single pump task.  Every queued event
carries the session generation it was produced in; a reset (sign-out,
authentication failure) bumps the generation so stale events and late API
results are dropped.
"""

from __future__ import annotations

import asyncio
import math
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import structlog

from tunechat.errors import MalformedPayloadError, TuneChatError
from tunechat.playback.player import PLAYER_EVENTS, PlaybackState
from tunechat.provider.spotify import SpotifyAPIError, SpotifyAuthError

if TYPE_CHECKING:
    from tunechat.matching.ranker import CandidatePlaylist
    from tunechat.playback.player import Player, PlayerFactory
    from tunechat.provider.spotify import SpotifyClient
    from tunechat.session import SessionManager, UserSession

log = structlog.get_logger(__name__)

DEFAULT_UNMUTE_VOLUME = 0.5
_FALLBACK_PAGE_SIZE = 50

Notifier = Callable[[str, str], None]
QueueSource = Callable[[], Awaitable["list[CandidatePlaylist]"]]


class PlaybackPhase(StrEnum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    DEGRADED = "degraded"
    DISCONNECTED = "disconnected"


class PlaybackRestrictedError(TuneChatError):
    """No item near the requested offset of a playlist could be played."""

    def __init__(self, playlist_name: str, offset: int) -> None:
        super().__init__(
            f'Could not play "{playlist_name}" from position {offset}: '
            "every track nearby is restricted or unavailable."
        )
        self.playlist_name = playlist_name
        self.offset = offset


@dataclass
class _Event:
    name: str
    payload: Any
    generation: int


def _log_notifier(level: str, message: str) -> None:
    log.info("playback_notice", level=level, message=message)


class PlaybackSessionController:
    def __init__(
        self,
        session: SessionManager,
        spotify: SpotifyClient,
        player_factory: PlayerFactory,
        *,
        queue_source: QueueSource | None = None,
        notifier: Notifier | None = None,
        autoplay: bool = True,
        rng: random.Random | None = None,
    ) -> None:
        self._session = session
        self._spotify = spotify
        self._player_factory = player_factory
        self._queue_source = queue_source
        self._notify = notifier or _log_notifier
        self._autoplay_enabled = autoplay
        self._rng = rng or random.Random()

        self.phase = PlaybackPhase.UNINITIALIZED
        self.device_id: str | None = None
        self.playback: PlaybackState | None = None
        self.volume: float = DEFAULT_UNMUTE_VOLUME
        self.queue: list[CandidatePlaylist] = []
        self.index: int | None = None
        self.current_playlist_name: str | None = None
        self.is_track_saved: bool | None = None
        self.is_playlist_followed: bool | None = None
        self.error: str | None = None

        self._player: Player | None = None
        self._pre_mute_volume: float | None = None
        self._last_track_id: str | None = None
        self._autoplayed = False
        self._generation = 0
        self._events: asyncio.Queue[_Event] = asyncio.Queue()
        self._pump: asyncio.Task | None = None

        self._unsubscribe = session.subscribe(self._on_session)

    # -- status --

    @property
    def is_ready(self) -> bool:
        return self.phase is PlaybackPhase.READY and self.device_id is not None and self._player is not None

    def get_status(self) -> dict:
        track = self.playback.track if self.playback else None
        return {
            "phase": self.phase.value,
            "device_id": self.device_id,
            "track": track.name if track else None,
            "playlist": self.current_playlist_name,
            "index": self.index,
            "queue_length": len(self.queue),
            "volume": self.volume,
            "error": self.error,
        }

    # -- lifecycle --

    async def start(self) -> bool:
        """Create and connect the player.  Returns False if there is no usable session."""
        if self.phase in (PlaybackPhase.CONNECTING, PlaybackPhase.READY):
            return True
        token = await self._session.get_token()
        if not token:
            self._fail("Cannot start player: no Spotify session.")
            return False

        if self._player is not None:
            # a failed earlier attempt; its callbacks must not reach the new player
            await self._discard_player()

        self._ensure_pump()
        self._set_phase(PlaybackPhase.CONNECTING)
        player = self._player_factory(self._session.get_token)
        generation = self._generation
        for name in PLAYER_EVENTS:
            player.add_listener(name, self._listener(name, generation))
        self._player = player

        try:
            connected = await player.connect()
        except Exception as exc:  # noqa: BLE001
            log.warning("player_connect_failed", error=str(exc))
            connected = False
        if not connected:
            self._fail("Failed to connect the Spotify player.")
            self._set_phase(PlaybackPhase.DEGRADED)
        return connected

    async def close(self) -> None:
        self._unsubscribe()
        await self._teardown(PlaybackPhase.DISCONNECTED)
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None

    async def drain(self) -> None:
        """Wait until every queued player event has been applied."""
        await self._events.join()

    # -- event plumbing --

    def _listener(self, name: str, generation: int) -> Callable[[Any], None]:
        # bound to the generation the player was created in
        def enqueue(payload: Any = None) -> None:
            self._events.put_nowait(_Event(name, payload, generation))

        return enqueue

    def _ensure_pump(self) -> None:
        if self._pump is None or self._pump.done():
            self._pump = asyncio.ensure_future(self._run_pump())

    async def _run_pump(self) -> None:
        while True:
            event = await self._events.get()
            try:
                if event.generation == self._generation:
                    await self._handle(event)
                else:
                    log.debug("player_event_stale", event=event.name)
            except Exception:
                log.exception("player_event_failed", event=event.name)
            finally:
                self._events.task_done()

    async def _handle(self, event: _Event) -> None:
        payload = event.payload if isinstance(event.payload, dict) else {}
        name = event.name

        if name == "ready":
            await self._on_ready(payload.get("device_id"))
        elif name == "not_ready":
            log.info("player_not_ready", device_id=payload.get("device_id"))
            self.device_id = None
            self._last_track_id = None
            if self.phase is PlaybackPhase.READY:
                self._set_phase(PlaybackPhase.CONNECTING)
        elif name == "player_state_changed":
            await self._apply_state(event.payload)
        elif name == "initialization_error":
            self._fail(f"Player initialization failed: {payload.get('message', 'unknown error')}", notify=True)
            self._set_phase(PlaybackPhase.DEGRADED)
        elif name == "authentication_error":
            self._fail(f"Spotify authentication failed: {payload.get('message', 'unknown error')}", notify=True)
            await self._teardown(PlaybackPhase.DEGRADED)
        elif name == "account_error":
            self._fail(f"Spotify account error: {payload.get('message', 'Premium required')}", notify=True)
        elif name == "playback_error":
            self._fail(f"Playback error: {payload.get('message', 'unknown error')}", notify=True)
        elif name == "session_lost":
            await self._teardown(PlaybackPhase.DISCONNECTED)

    def _on_session(self, state: UserSession) -> None:
        lost = not state.signed_in or state.needs_reauth
        if not lost or self.phase in (PlaybackPhase.UNINITIALIZED, PlaybackPhase.DISCONNECTED):
            return
        log.info("playback_session_lost", phase=self.phase.value)
        # invalidate everything in flight, then tear down through the pump
        self._generation += 1
        self._events.put_nowait(_Event("session_lost", None, self._generation))

    async def _on_ready(self, device_id: str | None) -> None:
        if not device_id or self._player is None:
            log.warning("player_ready_ignored", device_id=device_id)
            return
        if not await self._session.get_token():
            self._fail("Player ready but the Spotify session has no valid token.")
            self._set_phase(PlaybackPhase.DEGRADED)
            return
        self.device_id = device_id
        self.error = None
        self._set_phase(PlaybackPhase.READY)

        player = self._player
        try:
            self.volume = await player.get_volume()
            raw = await player.get_current_state()
        except Exception as exc:  # noqa: BLE001
            log.warning("player_state_read_failed", error=str(exc))
            raw = None
        if raw:
            await self._apply_state(raw)

        if not self.queue and self._queue_source is not None:
            await self.load_queue()
        else:
            await self._autoplay()

    async def _discard_player(self) -> None:
        """Detach the current player and invalidate every event it may still emit."""
        self._generation += 1
        player, self._player = self._player, None
        self.device_id = None
        self._last_track_id = None
        if player is not None:
            try:
                await player.disconnect()
            except Exception as exc:  # noqa: BLE001
                log.warning("player_disconnect_failed", error=str(exc))

    async def _teardown(self, phase: PlaybackPhase) -> None:
        await self._discard_player()
        self.playback = None
        self.queue = []
        self.index = None
        self.current_playlist_name = None
        self.is_track_saved = None
        self.is_playlist_followed = None
        self._autoplayed = False
        self._set_phase(phase)

    def _set_phase(self, phase: PlaybackPhase) -> None:
        if phase is not self.phase:
            log.info("playback_phase_changed", old=self.phase.value, new=phase.value)
            self.phase = phase

    def _fail(self, message: str, *, notify: bool = False) -> None:
        self.error = message
        log.warning("playback_failure", error=message)
        if notify:
            self._notify("error", message)

    def _require_ready(self, action: str) -> bool:
        if self.is_ready:
            return True
        self.error = f"Cannot {action}: player not ready."
        log.warning("playback_not_ready", action=action, phase=self.phase.value, device_id=self.device_id)
        return False

    # -- track change reconciliation --

    async def _apply_state(self, raw: Any) -> None:
        if not raw:
            self.playback = None
            return
        try:
            state = PlaybackState.from_sdk(raw)
        except MalformedPayloadError:
            log.warning("player_state_malformed", state=repr(raw)[:300])
            return

        previous_context = self.playback.context_uri if self.playback else None
        self.playback = state

        track = state.track
        if track is not None and track.id and track.id != self._last_track_id:
            self._last_track_id = track.id
            await self.check_track_saved(track.id)
            await self._resolve_track(track.id)

        if state.context_uri != previous_context:
            playlist_id = state.playlist_id
            if playlist_id:
                await self.check_playlist_followed(playlist_id)
            else:
                self.is_playlist_followed = None

    async def _resolve_track(self, track_id: str) -> None:
        generation = self._generation
        try:
            full = await self._spotify.get_track(track_id)
        except (SpotifyAPIError, SpotifyAuthError, MalformedPayloadError) as exc:
            log.warning("track_resolve_failed", track_id=track_id, error=str(exc))
            return
        if generation != self._generation or self._last_track_id != track_id:
            log.debug("track_resolve_discarded", track_id=track_id)
            return
        if full is not None and not full.playable:
            self._notify("error", f"“{full.name}” is not playable here, skipping.")
            await self.next_track()

    # -- transport controls --

    async def toggle_play(self) -> bool:
        if not self._require_ready("toggle playback"):
            return False
        return await self._player_call("toggle playback", self._player.toggle_play())

    async def next_track(self) -> bool:
        if not self._require_ready("skip to next track"):
            return False
        return await self._player_call("skip to next track", self._player.next_track())

    async def previous_track(self) -> bool:
        if not self._require_ready("skip to previous track"):
            return False
        return await self._player_call("skip to previous track", self._player.previous_track())

    async def seek(self, position_ms: float) -> bool:
        if not self._require_ready("seek"):
            return False
        duration = self.playback.duration_ms if self.playback else 0
        position = int(min(max(0, position_ms), duration))
        return await self._player_call("seek", self._player.seek(position))

    async def set_volume(self, fraction: float) -> bool:
        if not self._require_ready("set volume"):
            return False
        volume = min(1.0, max(0.0, fraction))
        if not await self._player_call("set volume", self._player.set_volume(volume)):
            return False
        self.volume = volume
        if volume > 0:
            self._pre_mute_volume = volume
        return True

    async def toggle_mute(self) -> bool:
        if not self._require_ready("toggle mute"):
            return False
        try:
            current = await self._player.get_volume()
        except Exception as exc:  # noqa: BLE001
            self._fail(f"Error reading volume: {exc}")
            return False
        if current > 0:
            self._pre_mute_volume = current
            target = 0.0
        else:
            target = self._pre_mute_volume or DEFAULT_UNMUTE_VOLUME
        if not await self._player_call("toggle mute", self._player.set_volume(target)):
            return False
        self.volume = target
        return True

    async def toggle_shuffle(self) -> bool:
        """Ask the provider to flip shuffle; local state follows the next player update."""
        if not self._require_ready("toggle shuffle"):
            return False
        if self.playback is None:
            self._fail("Cannot toggle shuffle: nothing is playing.")
            return False
        try:
            await self._spotify.set_shuffle(self.device_id, not self.playback.shuffle)
        except (SpotifyAPIError, SpotifyAuthError) as exc:
            self._fail(f"Error toggling shuffle: {exc}", notify=True)
            return False
        self.error = None
        return True

    async def _player_call(self, action: str, call: Awaitable[Any]) -> bool:
        try:
            await call
        except Exception as exc:  # noqa: BLE001
            self._fail(f"Error trying to {action}: {exc}")
            return False
        self.error = None
        return True

    # -- playlists --

    async def load_queue(self) -> list[CandidatePlaylist]:
        if self._queue_source is None:
            return self.queue
        generation = self._generation
        try:
            queue = await self._queue_source()
        except Exception as exc:  # noqa: BLE001
            log.warning("playlist_queue_failed", error=str(exc))
            self._fail("Could not load matched playlists.")
            return self.queue
        if generation != self._generation:
            return self.queue
        self.set_queue(queue)
        await self._autoplay()
        return self.queue

    def set_queue(self, queue: list[CandidatePlaylist]) -> None:
        self.queue = list(queue)
        self.index = None
        self._autoplayed = False
        log.info("playlist_queue_loaded", size=len(self.queue))

    async def _autoplay(self) -> None:
        if not self._autoplay_enabled or self._autoplayed or not self.queue or not self.is_ready:
            return
        self._autoplayed = True
        await self.play_playlist(self.queue[0])

    async def play_playlist(self, candidate: CandidatePlaylist, start_index: float = 0) -> bool:
        if not self._require_ready("play playlist"):
            return False
        offset = max(0, math.floor(start_index))
        generation = self._generation
        try:
            await self._spotify.play(self.device_id, context_uri=candidate.uri, position=offset)
        except SpotifyAPIError as exc:
            if not exc.is_restriction:
                self._fail(f'Error playing playlist "{candidate.name}": {exc}', notify=True)
                return False
            log.info("playlist_restricted", playlist=candidate.spotify_id, offset=offset)
            try:
                await self._play_from_first_playable(candidate, offset)
            except PlaybackRestrictedError as restricted:
                self._fail(str(restricted), notify=True)
                return False
            except (SpotifyAPIError, SpotifyAuthError) as fallback_exc:
                self._fail(f'Error playing playlist "{candidate.name}": {fallback_exc}', notify=True)
                return False
        except SpotifyAuthError as exc:
            self._fail(f'Error playing playlist "{candidate.name}": {exc}', notify=True)
            return False

        if generation != self._generation:
            return False
        self.index = next((i for i, p in enumerate(self.queue) if p.spotify_id == candidate.spotify_id), None)
        self.current_playlist_name = candidate.name
        self.error = None
        return True

    async def play_playlist_shuffled(self, candidate: CandidatePlaylist) -> bool:
        """Play every playable track of *candidate* in a locally shuffled order."""
        if not self._require_ready("shuffle playlist"):
            return False
        generation = self._generation
        try:
            tracks = await self._spotify.get_playable_playlist_tracks(candidate.spotify_id)
            if not tracks:
                self._fail(f'No playable tracks found in playlist "{candidate.name}".', notify=True)
                return False
            uris = [t.uri for t in tracks]
            self._rng.shuffle(uris)
            if generation != self._generation or self.device_id is None:
                return False
            await self._spotify.play(self.device_id, uris=uris)
        except (SpotifyAPIError, SpotifyAuthError, MalformedPayloadError) as exc:
            self._fail(f'Error shuffling playlist "{candidate.name}": {exc}', notify=True)
            return False

        if generation != self._generation:
            return False
        log.info("playlist_shuffled", playlist=candidate.spotify_id, tracks=len(uris))
        self.index = next((i for i, p in enumerate(self.queue) if p.spotify_id == candidate.spotify_id), None)
        self.current_playlist_name = candidate.name
        self.error = None
        return True

    async def _play_from_first_playable(self, candidate: CandidatePlaylist, offset: int) -> int:
        """Try a context play anchored at each playable item of the page starting at *offset*."""
        page = await self._spotify.get_playlist_items(candidate.spotify_id, offset=offset, limit=_FALLBACK_PAGE_SIZE)
        if page is None:
            raise PlaybackRestrictedError(candidate.name, offset)

        generation = self._generation
        for position, track in page.tracks(playlist_id=candidate.spotify_id):
            if not track.playable:
                continue
            if generation != self._generation or self.device_id is None:
                break
            try:
                await self._spotify.play(self.device_id, context_uri=candidate.uri, position=position)
            except SpotifyAPIError as exc:
                log.debug("playlist_fallback_attempt_failed", position=position, status=exc.status)
                continue
            log.info("playlist_fallback_succeeded", playlist=candidate.spotify_id, position=position)
            return position
        raise PlaybackRestrictedError(candidate.name, offset)

    async def next_playlist(self) -> bool:
        if not self.queue:
            self._fail("No playlists available.")
            return False
        current = -1 if self.index is None else self.index
        return await self.play_playlist(self.queue[(current + 1) % len(self.queue)])

    async def previous_playlist(self) -> bool:
        if not self.queue:
            self._fail("No playlists available.")
            return False
        current = 0 if self.index is None else self.index
        n = len(self.queue)
        return await self.play_playlist(self.queue[(current - 1 + n) % n])

    # -- library: save / follow --

    async def check_track_saved(self, track_id: str) -> bool | None:
        try:
            saved = await self._spotify.is_track_saved(track_id)
        except (SpotifyAPIError, SpotifyAuthError, MalformedPayloadError) as exc:
            log.warning("track_saved_check_failed", track_id=track_id, error=str(exc))
            saved = None
        if self._last_track_id not in (None, track_id):
            return None
        self.is_track_saved = saved
        return saved

    async def check_playlist_followed(self, playlist_id: str) -> bool | None:
        try:
            followed = await self._spotify.is_following_playlist(
                playlist_id, self._session.state.provider_user_id
            )
        except (SpotifyAPIError, SpotifyAuthError, MalformedPayloadError) as exc:
            log.warning("playlist_follow_check_failed", playlist_id=playlist_id, error=str(exc))
            followed = None
        current = self.playback.playlist_id if self.playback else None
        if current not in (None, playlist_id):
            return None
        self.is_playlist_followed = followed
        return followed

    async def save_current_track(self) -> bool:
        return await self._toggle_saved(True)

    async def unsave_current_track(self) -> bool:
        return await self._toggle_saved(False)

    async def follow_current_playlist(self) -> bool:
        return await self._toggle_followed(True)

    async def unfollow_current_playlist(self) -> bool:
        return await self._toggle_followed(False)

    async def _toggle_saved(self, save: bool) -> bool:
        action = "save track" if save else "remove track"
        if not self._require_ready(action):
            return False
        track = self.playback.track if self.playback else None
        if track is None or not track.id:
            self._fail(f"Cannot {action}: no track is playing.")
            return False

        previous = self.is_track_saved
        self.is_track_saved = save
        try:
            if save:
                await self._spotify.save_tracks([track.id])
            else:
                await self._spotify.remove_tracks([track.id])
        except (SpotifyAPIError, SpotifyAuthError) as exc:
            self.is_track_saved = previous
            self._fail(f"Could not {action}: {exc}", notify=True)
            return False
        self._notify("success", "Saved to your library." if save else "Removed from your library.")
        return True

    async def _toggle_followed(self, follow: bool) -> bool:
        action = "follow playlist" if follow else "unfollow playlist"
        if not self._require_ready(action):
            return False
        playlist_id = self.playback.playlist_id if self.playback else None
        if playlist_id is None and self.index is not None:
            playlist_id = self.queue[self.index].spotify_id
        if playlist_id is None:
            self._fail(f"Cannot {action}: no playlist is playing.")
            return False

        previous = self.is_playlist_followed
        self.is_playlist_followed = follow
        try:
            if follow:
                await self._spotify.follow_playlist(playlist_id)
            else:
                await self._spotify.unfollow_playlist(playlist_id)
        except (SpotifyAPIError, SpotifyAuthError) as exc:
            self.is_playlist_followed = previous
            self._fail(f"Could not {action}: {exc}", notify=True)
            return False
        self._notify("success", "Playlist followed." if follow else "Playlist unfollowed.")
        return True
