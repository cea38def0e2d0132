"""Playback coordinator - serializes every command and backend event.

The coordinator replaces a free-for-all of threads poking at shared player
state. It runs one control loop thread that exclusively owns the PlayState.
Everything else talks to it by message:

1. Callers (REST handlers, the CLI, embedding code) hand a callback to the
   loop and wait until it has run against the state.
2. Backend events (playing/paused/stopped) arrive on the same inbox, so
   commands and events are interleaved strictly by arrival.
3. Slow work (stream resolution, the prefetch delay) runs in short-lived
   background threads that never touch the state. Their results re-enter
   through the inbox and are dropped if the track they were for is no
   longer wanted.

A ContractViolation anywhere in the loop is fatal: the loop stops, the event
bus is closed and every later call is silently ignored.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import TYPE_CHECKING, Callable

from tubecast.player.errors import BackendError, ContractViolation
from tubecast.player.state import (
    ACTIVE_STATES,
    POSITIONED_STATES,
    PlayState,
    State,
    StateChange,
    clamp_volume,
)

if TYPE_CHECKING:
    from tubecast.server.backend import Backend
    from tubecast.server.events import EventBus
    from tubecast.server.resolver import StreamResolver

logger = logging.getLogger(__name__)

PREFETCH_DELAY = 10.0  # Seconds a track must play before the next one is resolved

_ACCESS = "access"
_EVENT = "event"
_CLOSED = "closed"


def offer(slot: queue.Queue, value):
    """Put value into a single-slot reply queue, replacing any unread answer.

    Never blocks, so the control loop cannot be held up by a slow reader.
    Only one writer per slot may exist at a time; the loop guarantees that
    for its own replies.
    """
    try:
        slot.get_nowait()
    except queue.Empty:
        pass
    try:
        slot.put_nowait(value)
    except queue.Full:
        logger.warning("Reply slot refilled by another writer, answer dropped")


class Player:
    """Coordinates playback of a playlist on a single backend.

    Usage:
        player = Player(MPVBackend(config), StreamResolver(config), EventBus())
        player.start()
        player.set_playlist(["dQw4w9WgXcQ", "9bZkp7q19f0"], 0)
        volume = queue.Queue(maxsize=1)
        player.change_volume(-10, volume)
        print(volume.get())
        player.quit()
    """

    def __init__(
        self,
        backend: "Backend",
        resolver: "StreamResolver",
        events: "EventBus",
        prefetch_delay: float = PREFETCH_DELAY,
    ):
        self.backend = backend
        self.resolver = resolver
        self.events = events
        self.prefetch_delay = prefetch_delay
        self._inbox: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._fatal_error: Exception | None = None
        self._thread: threading.Thread | None = None
        # Only ever read or written on the control loop thread.
        self._state: PlayState | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and not self._closed

    @property
    def fatal_error(self) -> Exception | None:
        """The error that stopped the loop, if it did not stop normally."""
        return self._fatal_error

    def start(self):
        """Start the backend and the control loop."""
        if self._thread is not None:
            return
        backend_events, initial_volume = self.backend.initialize()
        self._state = PlayState(volume=clamp_volume(initial_volume))
        self._thread = threading.Thread(target=self._run, daemon=True, name="player-loop")
        threading.Thread(
            target=self._forward_events, args=(backend_events,),
            daemon=True, name="backend-events",
        ).start()
        self._thread.start()
        logger.info("Player started (volume %d)", self._state.volume)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the control loop to finish. Returns True if it has."""
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _forward_events(self, backend_events: queue.Queue):
        while True:
            event = backend_events.get()
            if event is None:
                self._inbox.put((_CLOSED, None, None))
                return
            self._inbox.put((_EVENT, event, None))

    def _run(self):
        ps = self._state
        try:
            while True:
                kind, payload, done = self._inbox.get()
                try:
                    if kind == _CLOSED:
                        logger.info("Backend terminated, stopping player loop")
                        return
                    try:
                        if kind == _ACCESS:
                            payload(ps)
                        else:
                            self._handle_event(ps, payload)
                    except BackendError as e:
                        logger.warning("Backend command failed: %s", e)
                    ps.check()
                finally:
                    if done is not None:
                        done.set()
        except ContractViolation as e:
            self._fatal_error = e
            logger.critical("Player stopped on contract violation: %s", e)
            self._abort()
        except Exception as e:
            self._fatal_error = e
            logger.exception("Player loop crashed: %s", e)
            self._abort()
        finally:
            self._shutdown()

    def _abort(self):
        """Take the collaborators down after a fatal error."""
        for name, stop in (("resolver", self.resolver.quit), ("backend", self.backend.quit)):
            try:
                stop()
            except Exception as e:
                logger.warning("Failed to stop %s: %s", name, e)

    def _shutdown(self):
        with self._lock:
            self._closed = True
        self.events.close()
        # Release callers whose requests will never run.
        while True:
            try:
                _, _, done = self._inbox.get_nowait()
            except queue.Empty:
                break
            if done is not None:
                done.set()
        logger.info("Player stopped")

    def _access(self, callback: Callable[[PlayState], None], wait: bool = True):
        """Run callback against the play state on the control loop.

        With wait=True the caller blocks until the callback has run. After
        shutdown the callback is dropped without error.
        """
        if threading.current_thread() is self._thread:
            callback(self._state)
            return
        done = threading.Event() if wait else None
        with self._lock:
            if self._closed or self._thread is None:
                logger.debug("Player not running, ignoring request")
                return
            self._inbox.put((_ACCESS, callback, done))
        if done is not None:
            done.wait()

    def _spawn(self, name: str, target, *args):
        threading.Thread(target=target, args=args, daemon=True, name=name).start()

    # ------------------------------------------------------------------
    # State machine helpers (control loop only)
    # ------------------------------------------------------------------

    def _position(self, ps: PlayState) -> float:
        if ps.state is State.STOPPED:
            return 0.0
        if ps.state in POSITIONED_STATES:
            return ps.buffering_position
        try:
            position = self.backend.get_position()
        except BackendError as e:
            raise ContractViolation(f"no position while {ps.state.value}: {e}") from e
        if position < 0:
            raise ContractViolation(f"backend reported negative position {position}")
        return position

    def _set_play_state(self, ps: PlayState, state: State, position: float | None = None):
        """Finalize a transition and publish it.

        position None means "ask the backend" once the new state is set.
        Leaving a seek reports the position that was sought to.
        """
        if ps.state is State.SEEKING and position is None:
            position = ps.buffering_position
        ps.transition(state, position)
        if position is None:
            position = self._position(ps)
        self.events.emit("state", StateChange(state, position).to_dict())
        logger.debug("State: %s at %.1fs", state.value, position)

    def _start_playing(self, ps: PlayState, position: float):
        if ps.state is State.PLAYING:
            # Stop right away: the user expects the old video to go, and a
            # slow machine should not decode while yt-dlp is resolving.
            self.backend.stop()
        self._set_play_state(ps, State.BUFFERING, position)
        video_id = ps.video()
        self._spawn(f"resolve-{video_id}", self._resolve_and_play, video_id, position)

    def _resolve_and_play(self, video_id: str, position: float):
        stream_url = self.resolver.resolve(video_id)

        def apply(ps: PlayState):
            # Another video may have been requested while this one resolved.
            if ps.video() != video_id:
                logger.info("Video %s isn't needed anymore", video_id)
                return

            if not stream_url:
                logger.warning("No stream URL for %s, skipping to next video", video_id)
                self.events.emit("error", {
                    "video_id": video_id,
                    "detail": "stream could not be resolved",
                })
                self._next_video(ps)
                return

            volume = None
            if ps.pending_volume:
                ps.pending_volume = False
                volume = ps.volume
            self.backend.play(stream_url, position, volume)
            self._schedule_prefetch(ps.next_video())

        self._access(apply)

    def _next_video(self, ps: PlayState):
        if ps.index + 1 < len(ps.playlist):
            ps.index += 1
            # Nothing is playing any more, so _start_playing must not stop
            # the backend. No event: BUFFERING is published right after.
            ps.transition(State.STOPPED)
            self._start_playing(ps, 0.0)
        else:
            # End of the playlist: reset the position, keep the playlist.
            self._set_play_state(ps, State.STOPPED, 0.0)

    def _schedule_prefetch(self, video_id: str):
        if video_id:
            self._spawn(f"prefetch-{video_id}", self._prefetch, video_id)

    def _prefetch(self, video_id: str):
        # Tracks that are skipped quickly never get their successor resolved.
        time.sleep(self.prefetch_delay)

        def check(ps: PlayState):
            if ps.next_video() != video_id:
                logger.debug("Prefetch of %s is stale, playlist changed", video_id)
                return
            logger.debug("Prefetching stream for %s", video_id)
            self._spawn(f"resolve-{video_id}", self.resolver.resolve, video_id)

        self._access(check)

    def _update_playlist(self, ps: PlayState, playlist: list[str]):
        next_video = ps.next_video()

        if not ps.playlist:
            if ps.state is not State.STOPPED:
                raise ContractViolation(f"empty playlist while {ps.state.value}")
            ps.playlist = playlist
            if playlist:
                # Out of range means "the last one", as on YouTube.
                ps.index = min(max(ps.index, 0), len(playlist) - 1)
        elif ps.state is State.STOPPED and ps.video() not in playlist:
            # Finished playlist, nothing active to keep track of.
            logger.warning("Stopped video %s is gone from new playlist", ps.video())
            ps.playlist = playlist
            if playlist:
                ps.index = min(ps.index, len(playlist) - 1)
        else:
            video_id = ps.video()
            ps.playlist = playlist
            ps.locate(video_id)

        if ps.next_video() != next_video:
            self._schedule_prefetch(ps.next_video())

    def _stop(self, ps: PlayState):
        # Keep the index: a stop may be followed by update_playlist when the
        # playing video is removed from the playlist.
        ps.playlist = []
        self.backend.stop()
        if ps.state is not State.STOPPED:
            self._set_play_state(ps, State.STOPPED, 0.0)

    def _apply_volume(self, ps: PlayState, reply: queue.Queue | None):
        if ps.state in ACTIVE_STATES:
            self.backend.set_volume(ps.volume)
        else:
            ps.pending_volume = True
        if reply is not None:
            offer(reply, ps.volume)

    def _handle_event(self, ps: PlayState, event: State):
        if event is State.PLAYING:
            if ps.state is State.STOPPED:
                logger.warning("Backend started playing while stopped - ignoring")
                return

            if ps.pending_volume:
                ps.pending_volume = False
                self.backend.set_volume(ps.volume)

            if ps.state is State.SEEKING:
                seek = ps.seek
                if seek.queued is not None and seek.queued is not seek.previous:
                    # The backend confirms the queued target with its own
                    # event, which is when we publish it.
                    ps.restore(seek.previous)
                    if seek.queued is State.PLAYING:
                        self.backend.resume()
                    else:
                        self.backend.pause()
                else:
                    self._set_play_state(ps, seek.previous)
                return

            self._set_play_state(ps, State.PLAYING)

        elif event is State.PAUSED:
            if ps.state is State.BUFFERING:
                # Paused while the stream for the next video is being loaded.
                return
            if ps.state is State.STOPPED:
                logger.warning("Backend paused while stopped - ignoring")
                return
            self._set_play_state(ps, State.PAUSED)

        elif event is State.STOPPED:
            if ps.state in (State.BUFFERING, State.STOPPED):
                # Loading a new stream stops the old one; that is expected.
                return
            # The video ended. There may be more.
            self._next_video(ps)

        else:
            raise ContractViolation(f"unknown backend event {event!r}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def set_playlist(self, playlist: list[str], index: int = 0, position: float = 0.0):
        """Replace the playlist and start playing index at position.

        An empty playlist stops playback.
        """
        playlist = list(playlist)
        position = max(0.0, float(position))

        def callback(ps: PlayState):
            if playlist and not 0 <= index < len(playlist):
                logger.warning("Playlist index %d out of range (%d videos) - ignoring",
                               index, len(playlist))
                return
            if (ps.state is State.BUFFERING and ps.buffering_position == position
                    and playlist and ps.video() == playlist[index]):
                # Already loading exactly this; just take the new playlist.
                self._update_playlist(ps, playlist)
                return

            ps.playlist = playlist
            ps.index = index
            if playlist:
                self._start_playing(ps, position)
            else:
                self._stop(ps)

        self._access(callback)

    def update_playlist(self, playlist: list[str]):
        """Replace the playlist without interrupting the current video.

        The current video must still be in the new playlist.
        """
        playlist = list(playlist)
        self._access(lambda ps: self._update_playlist(ps, playlist))

    def try_update_playlist(self, playlist: list[str]) -> bool:
        """Like update_playlist, but refuse a playlist without the active video.

        The check and the update run in one step on the control loop, so a
        track change in between cannot turn a refusal into a fatal error.
        Returns False (and changes nothing) when refused or not running.
        """
        playlist = list(playlist)
        accepted = []

        def callback(ps: PlayState):
            if ps.state is not State.STOPPED and ps.video() not in playlist:
                logger.warning("Refusing playlist without current video %s", ps.video())
                return
            self._update_playlist(ps, playlist)
            accepted.append(True)

        self._access(callback)
        return bool(accepted)

    def set_current_track(self, video_id: str, position: float = 0.0):
        """Jump to video_id (which must be in the playlist) at position."""
        position = max(0.0, float(position))

        def callback(ps: PlayState):
            ps.locate(video_id)
            self._start_playing(ps, position)

        self._access(callback)

    def play(self):
        """Resume when paused, restart from the beginning when stopped."""
        def callback(ps: PlayState):
            if ps.state is State.STOPPED:
                if not ps.video():
                    logger.warning("Play with empty playlist - ignoring")
                    return
                self._start_playing(ps, 0.0)
            elif ps.state is State.SEEKING:
                ps.seek.queued = State.PLAYING
            elif ps.state is State.PAUSED:
                self.backend.resume()
            else:
                logger.warning("Resume while %s - ignoring", ps.state.value)

        self._access(callback)

    def pause(self):
        def callback(ps: PlayState):
            if ps.state is State.SEEKING:
                ps.seek.queued = State.PAUSED
            elif ps.state is State.PLAYING:
                self.backend.pause()
            else:
                logger.warning("Pause while %s - ignoring", ps.state.value)

        self._access(callback)

    def seek(self, position: float):
        """Jump to position (seconds) in the current video."""
        position = max(0.0, float(position))

        def callback(ps: PlayState):
            if ps.state is State.STOPPED:
                if not ps.video():
                    logger.warning("Seek with empty playlist - ignoring")
                    return
                self._start_playing(ps, position)
            elif ps.state in ACTIVE_STATES:
                self._set_play_state(ps, State.SEEKING, position)
                self.backend.set_position(position)
            else:
                logger.warning("Seek while %s - ignoring", ps.state.value)

        self._access(callback)

    def stop(self):
        """Stop playback and clear the playlist."""
        self._access(self._stop)

    def set_volume(self, volume: int, reply: queue.Queue | None = None):
        """Set the volume (clamped to 0-100); the result is put into reply."""
        volume = int(volume)

        def callback(ps: PlayState):
            ps.volume = clamp_volume(volume)
            self._apply_volume(ps, reply)

        self._access(callback)

    def change_volume(self, delta: int, reply: queue.Queue | None = None):
        """Change the volume by delta.

        Holding volume up/down keeps sending deltas; the result stays in
        range and is put into reply.
        """
        delta = int(delta)

        def callback(ps: PlayState):
            ps.volume = clamp_volume(ps.volume + delta)
            self._apply_volume(ps, reply)

        self._access(callback)

    def query_playlist(self, reply: queue.Queue):
        """Asynchronously put a PlaylistSnapshot into the single-slot reply.

        Returns immediately. A stale unread answer in reply is replaced, so
        the reader always gets the latest one. Do not share reply between
        concurrent queries.
        """
        self._access(lambda ps: offer(reply, ps.snapshot(self._position(ps))), wait=False)

    def query_volume(self, reply: queue.Queue):
        """Asynchronously put the current volume into reply (see query_playlist)."""
        self._access(lambda ps: offer(reply, ps.volume), wait=False)

    def quit(self):
        """Stop the backend and resolver; the loop ends once the backend is gone.

        Every call after this is ignored.
        """
        def callback(ps: PlayState):
            self.resolver.quit()
            self.backend.quit()

        self._access(callback)
