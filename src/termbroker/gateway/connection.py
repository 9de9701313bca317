"""Per-connection state for the terminal gateway."""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import TYPE_CHECKING

from termbroker.wire import EventType, WireEvent

if TYPE_CHECKING:
    from termbroker.gateway.auth import Identity
    from termbroker.pty.session import Session

logger = logging.getLogger(__name__)

CLOSE_NORMAL = 1000
CLOSE_POLICY = 1008
CLOSE_AUTH_FAILED = 4401


class ConnectionState(enum.Enum):
    UNAUTHENTICATED = "unauthenticated"
    IDLE = "authenticated-idle"
    ATTACHED = "authenticated-attached"


class Connection:
    """One client connection: identity, attachment, and outbound queue.

    Events are delivered into a bounded queue drained by the transport.
    A client that lets the queue fill up is closed, which the gateway then
    treats exactly like a network drop.
    """

    def __init__(self, queue_size: int = 1024, connection_id: str | None = None) -> None:
        self.id = connection_id or uuid.uuid4().hex[:8]
        self.identity: Identity | None = None
        self.session: Session | None = None
        self._outbound: asyncio.Queue[WireEvent | None] = asyncio.Queue(maxsize=queue_size)
        self.closed: bool = False
        self.close_code: int = CLOSE_NORMAL
        self.close_reason: str = ""

    @property
    def state(self) -> ConnectionState:
        if self.identity is None:
            return ConnectionState.UNAUTHENTICATED
        if self.session is None:
            return ConnectionState.IDLE
        return ConnectionState.ATTACHED

    @property
    def attached_session_id(self) -> str | None:
        return self.session.id if self.session is not None else None

    def deliver(self, event: WireEvent) -> None:
        """Queue an event for the client. Dropped once the connection is closed."""
        if self.closed:
            return
        if (
            event.type is EventType.SESSION_EXITED
            and self.session is not None
            and event.data.get("id") == self.session.id
        ):
            # The session clears its viewers after this broadcast.
            self.session = None
        try:
            self._outbound.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Connection %s is not keeping up with output, closing", self.id)
            self.close(CLOSE_POLICY, "outbound queue overflow")

    def close(self, code: int = CLOSE_NORMAL, reason: str = "") -> None:
        """Mark closed and wake the sender.

        Queued events are still sent first, unless the queue overflowed.
        """
        if self.closed:
            return
        self.closed = True
        self.close_code = code
        self.close_reason = reason
        if self._outbound.full():
            # Nothing queued is worth keeping for a client that fell behind.
            while not self._outbound.empty():
                self._outbound.get_nowait()
        self._outbound.put_nowait(None)

    async def next_event(self) -> WireEvent | None:
        """Next event to send, or None once the connection is closed."""
        return await self._outbound.get()

    def __repr__(self) -> str:
        return f"Connection(id={self.id!r}, state={self.state.value!r})"
