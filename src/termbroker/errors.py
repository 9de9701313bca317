"""Broker error kinds.

Every error a connection can receive derives from ``BrokerError`` and
carries a stable ``kind`` string that is sent to the client alongside the
message text.
"""

from __future__ import annotations


class BrokerError(Exception):
    """Base class for errors surfaced to a requesting connection."""

    kind: str = "broker_error"


class ProcessSpawnError(BrokerError):
    """The shell could not be started (missing binary, bad workspace)."""

    kind = "process_spawn"


class InvalidWorkspaceError(ProcessSpawnError):
    """A workspace reference resolved outside the workspace root."""

    kind = "invalid_workspace"


class SessionNotFoundError(BrokerError):
    kind = "session_not_found"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionDeadError(BrokerError):
    kind = "session_dead"

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session has exited: {session_id}")
        self.session_id = session_id


class SessionLimitError(BrokerError):
    kind = "session_limit"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Max sessions reached (limit: {limit})")
        self.limit = limit


class AuthenticationError(BrokerError):
    kind = "authentication"


class GeometryError(BrokerError):
    """Malformed terminal geometry in a resize or attach payload."""

    kind = "geometry"


class NotAttachedError(BrokerError):
    kind = "not_attached"

    def __init__(self, message: str = "Connection is not attached to a session") -> None:
        super().__init__(message)


class ProtocolError(BrokerError):
    """A client message could not be parsed or is not valid in this state."""

    kind = "protocol"
