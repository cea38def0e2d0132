"""Playback coordination for tubecast.

The Player owns the play state on a single control loop; the REST server,
the CLI and embedding applications drive it through its public methods.
"""

from tubecast.player.coordinator import Player, offer
from tubecast.player.errors import BackendError, ContractViolation, PlayerError
from tubecast.player.state import PlaylistSnapshot, PlayState, State, StateChange

__all__ = [
    "Player",
    "offer",
    "PlayerError",
    "ContractViolation",
    "BackendError",
    "PlayState",
    "PlaylistSnapshot",
    "State",
    "StateChange",
]
