"""Play state owned by the coordinator's control loop.

A PlayState is only ever touched from inside a callback running on the
control loop (see Player._access). Nothing here is thread-safe on its
own, and nothing needs to be.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import asdict, dataclass, field

from tubecast.player.errors import ContractViolation

logger = logging.getLogger(__name__)

MIN_VOLUME = 0
MAX_VOLUME = 100


class State(enum.Enum):
    STOPPED = "stopped"
    PLAYING = "playing"
    PAUSED = "paused"
    BUFFERING = "buffering"
    SEEKING = "seeking"


# States in which buffering_position carries the position to resume at.
POSITIONED_STATES = (State.BUFFERING, State.SEEKING)

# States in which the backend has a loaded stream and can report a position.
ACTIVE_STATES = (State.PLAYING, State.PAUSED)


def clamp_volume(volume: int) -> int:
    return max(MIN_VOLUME, min(MAX_VOLUME, int(volume)))


@dataclass
class Seek:
    """An in-flight seek.

    previous is the state held before the seek started and is restored when
    the backend reports the seek as complete. queued is a play/pause request
    that arrived while the seek was still running.
    """

    previous: State
    queued: State | None = None


@dataclass(frozen=True)
class StateChange:
    """A finalized transition, as published to subscribers."""

    state: State
    position: float

    def to_dict(self) -> dict:
        return {"state": self.state.value, "position": self.position}


@dataclass(frozen=True)
class PlaylistSnapshot:
    """Point-in-time copy of the playlist, answered to playlist queries."""

    playlist: tuple[str, ...]
    index: int
    position: float
    state: State

    def to_dict(self) -> dict:
        data = asdict(self)
        data["playlist"] = list(self.playlist)
        data["state"] = self.state.value
        return data


@dataclass
class PlayState:
    """What should currently be happening."""

    playlist: list[str] = field(default_factory=list)
    index: int = 0
    state: State = State.STOPPED
    volume: int = 80
    pending_volume: bool = False
    buffering_position: float | None = None
    seek: Seek | None = None

    def video(self) -> str:
        """Return the wanted video id, or "" if there is none."""
        if 0 <= self.index < len(self.playlist):
            return self.playlist[self.index]
        return ""

    def next_video(self) -> str:
        """Return the video id after the current one, or ""."""
        if 0 <= self.index + 1 < len(self.playlist):
            return self.playlist[self.index + 1]
        return ""

    def transition(self, state: State, position: float | None = None):
        """Move to a new state, keeping the positional invariants.

        position is required when entering BUFFERING or SEEKING. Entering
        SEEKING remembers the state we came from so it can be restored.
        """
        if state in POSITIONED_STATES:
            if position is None or position < 0:
                raise ContractViolation(f"{state.value} requires a position, got {position!r}")
            self.buffering_position = position
        else:
            self.buffering_position = None

        if state is State.SEEKING:
            self.seek = Seek(previous=self.state)
        else:
            self.seek = None

        self.state = state

    def restore(self, state: State):
        """Silently leave SEEKING for a state the backend is about to confirm."""
        if state not in ACTIVE_STATES:
            raise ContractViolation(f"cannot restore to {state.value}")
        self.state = state
        self.buffering_position = None
        self.seek = None

    def locate(self, video_id: str):
        """Point index at video_id inside the current playlist.

        The first occurrence wins. A missing id means the caller dropped the
        active track from the playlist, which we cannot recover from.
        """
        try:
            index = self.playlist.index(video_id)
        except ValueError:
            raise ContractViolation(
                f"current video {video_id!r} does not exist in new playlist"
            ) from None
        if video_id in self.playlist[index + 1:]:
            logger.warning("Video %s exists twice in playlist, using first", video_id)
        self.index = index

    def snapshot(self, position: float) -> PlaylistSnapshot:
        return PlaylistSnapshot(tuple(self.playlist), self.index, position, self.state)

    def check(self):
        """Raise ContractViolation if any invariant does not hold."""
        if not isinstance(self.state, State):
            raise ContractViolation(f"unknown state {self.state!r}")
        if (self.buffering_position is not None) != (self.state in POSITIONED_STATES):
            raise ContractViolation(
                f"buffering position {self.buffering_position!r} in state {self.state.value}"
            )
        if (self.seek is not None) != (self.state is State.SEEKING):
            raise ContractViolation(f"seek record {self.seek!r} in state {self.state.value}")
        if self.playlist and not 0 <= self.index < len(self.playlist):
            raise ContractViolation(
                f"index {self.index} outside playlist of {len(self.playlist)}"
            )
        if not MIN_VOLUME <= self.volume <= MAX_VOLUME:
            raise ContractViolation(f"volume {self.volume} out of range")
