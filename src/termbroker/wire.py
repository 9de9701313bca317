"""Wire events: what the broker tells its observers.

A ``WireEvent`` is the unit delivered to an attached connection (output
chunks, lifecycle notices, replies) and the unit published on the
registry's ``Wire`` for server-side observers.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    OUTPUT = "output"
    AUTHENTICATED = "authenticated"
    SESSION_CREATED = "session-created"
    SESSION_ATTACHED = "session-attached"
    SESSION_DETACHED = "session-detached"
    SESSION_EXITED = "session-exited"
    SESSION_KILLED = "session-killed"
    SESSION_RENAMED = "session-renamed"
    SESSION_REAPED = "session-reaped"
    SESSIONS = "sessions"
    ERROR = "error"


@dataclass
class WireEvent:
    """An event on the wire.

    ``OUTPUT`` events carry their bytes in ``data["data"]``.
    """

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def output(cls, chunk: bytes) -> WireEvent:
        return cls(type=EventType.OUTPUT, data={"data": chunk})

    @classmethod
    def error(cls, message: str, kind: str, ref: str | None = None) -> WireEvent:
        data: dict[str, Any] = {"error": message, "kind": kind}
        if ref is not None:
            data["ref"] = ref
        return cls(type=EventType.ERROR, data=data)


class Wire:
    """Async message bus: broker -> server-side subscribers.

    Single-producer, multi-consumer broadcast of session lifecycle
    events (created, exited, reaped).
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_session_created(self, session_id: str, workspace_dir: str) -> None:
        self.send(
            WireEvent(
                type=EventType.SESSION_CREATED,
                data={"id": session_id, "workspace_dir": workspace_dir},
            )
        )

    def send_session_exited(
        self, session_id: str, exit_code: int | None, last_output: bytes = b""
    ) -> None:
        """Notify subscribers that a session's process ended."""
        self.send(
            WireEvent(
                type=EventType.SESSION_EXITED,
                data={
                    "id": session_id,
                    "exit_code": exit_code,
                    "last_output": last_output[-500:],
                },
            )
        )

    def send_session_reaped(self, session_id: str, reason: str) -> None:
        self.send(
            WireEvent(
                type=EventType.SESSION_REAPED,
                data={"id": session_id, "reason": reason},
            )
        )

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        if self._closed:
            return
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)


async def log_lifecycle(queue: asyncio.Queue[WireEvent | None]) -> None:
    """Log each event from a ``Wire`` subscription until the wire closes."""
    while True:
        event = await queue.get()
        if event is None:
            return
        details = {k: v for k, v in event.data.items() if k != "last_output"}
        logger.info("Session event %s: %s", event.type.value, details)
