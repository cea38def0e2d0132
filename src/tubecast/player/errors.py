"""Exceptions for the playback coordinator."""


class PlayerError(Exception):
    """Top-level error raised by the player subsystem."""


class ContractViolation(PlayerError):
    """The coordinator reached a configuration it cannot continue from.

    Raised when a caller breaks the API contract (e.g. the active track is
    missing from a replacement playlist) or the state machine hits an
    impossible state. Fatal: the control loop shuts down when it sees one.
    """


class BackendError(PlayerError):
    """The playback backend failed to carry out a command or query."""
