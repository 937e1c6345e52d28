from __future__ import annotations


class LobbyAdapterError(RuntimeError):
    pass


class TransportError(LobbyAdapterError):
    """Connecting to or identifying with the master server failed."""


class JoinRejected(LobbyAdapterError):
    """The room refused us (full, already started, or unknown code)."""


class JoinAttemptsExhausted(LobbyAdapterError):
    pass


class SyncTimeout(LobbyAdapterError, TimeoutError):
    """Spawn or settings synchronization did not complete in time."""


class ProtocolDecodeError(LobbyAdapterError):
    pass


class StateInconsistency(LobbyAdapterError):
    """A message referenced a player or component we have not seen spawn yet.

    This is a race between spawn and data messages; callers ignore the message.
    """
