"""Terminal session: a PTY process, its scrollback, and its viewers."""

from __future__ import annotations

import asyncio
import enum
import logging
import time
import uuid
from typing import TYPE_CHECKING, Any, Callable, Protocol

from termbroker.errors import GeometryError, NotAttachedError, SessionDeadError
from termbroker.pty.buffer import ScrollbackBuffer
from termbroker.wire import EventType, WireEvent

if TYPE_CHECKING:
    from termbroker.pty.process import PTYProcess

logger = logging.getLogger(__name__)

MAX_DIMENSION = 1000


class Subscriber(Protocol):
    """Anything that can receive session events (a gateway connection)."""

    def deliver(self, event: WireEvent) -> None: ...


class SessionState(enum.Enum):
    RUNNING = "running"
    EXITED = "exited"


def validate_geometry(cols: Any, rows: Any) -> tuple[int, int]:
    """Check a terminal size and return it as ints.

    Raises:
        GeometryError: Non-integer or out-of-range dimensions.
    """
    for name, value in (("cols", cols), ("rows", rows)):
        if isinstance(value, bool) or not isinstance(value, int):
            raise GeometryError(f"{name} must be an integer, got {value!r}")
        if not 1 <= value <= MAX_DIMENSION:
            raise GeometryError(f"{name} must be between 1 and {MAX_DIMENSION}, got {value}")
    return cols, rows


class Session:
    """A named, long-lived shell with any number of attached viewers.

    Owns exactly one PTY process and one scrollback buffer; both live and
    die together. Connections come and go through ``attach()`` /
    ``detach()`` without ever touching the process.

    Output is coalesced for ``flush_interval`` seconds (or until
    ``flush_size`` bytes are pending), then appended to the buffer and
    broadcast, in that order. A connection that attaches with replay gets
    the buffer snapshot and joins the attached set in one step, so it sees
    every later flush exactly once.
    """

    def __init__(
        self,
        process: PTYProcess,
        workspace_dir: str,
        *,
        buffer: ScrollbackBuffer | None = None,
        title: str = "",
        project_id: str = "",
        cols: int = 120,
        rows: int = 30,
        flush_interval: float = 0.0,
        flush_size: int = 32 * 1024,
        session_id: str | None = None,
    ) -> None:
        self.id = session_id or uuid.uuid4().hex[:12]
        self.workspace_dir = workspace_dir
        self.title = title or f"Terminal {self.id[:6]}"
        self.project_id = project_id
        self.cols = cols
        self.rows = rows
        self.created_at = time.time()
        self.last_activity_at = self.created_at

        self.process = process
        self.buffer = buffer or ScrollbackBuffer()
        self._attached: set[Subscriber] = set()
        self._state = SessionState.RUNNING
        self._exit_code: int | None = None

        self._flush_interval = flush_interval
        self._flush_size = flush_size
        self._pending = bytearray()
        self._flush_timer: asyncio.TimerHandle | None = None
        self._on_exit: Callable[[Session], None] | None = None

        process.set_on_output(self._handle_output)
        process.set_on_exit(self._handle_exit)

    def set_on_exit(self, callback: Callable[[Session], None]) -> None:
        """Set a callback invoked after the exit has been broadcast."""
        self._on_exit = callback

    async def start(self) -> None:
        """Spawn the underlying process at the session's geometry."""
        await self.process.spawn(self.cols, self.rows)
        logger.info(
            "Session %s started in %s (%dx%d)",
            self.id,
            self.workspace_dir,
            self.cols,
            self.rows,
        )

    # ------------------------------------------------------------------
    # Attach / detach
    # ------------------------------------------------------------------

    def attach(self, conn: Subscriber, replay: bool = False) -> None:
        """Subscribe ``conn`` to live output, optionally replaying scrollback first.

        Raises:
            SessionDeadError: The session's process has exited.
        """
        if self._state is SessionState.EXITED:
            raise SessionDeadError(self.id)
        if replay:
            snapshot = self.buffer.snapshot()
            if snapshot:
                conn.deliver(WireEvent.output(snapshot))
        self._attached.add(conn)
        logger.debug(
            "Connection attached to session %s (replay=%s, viewers=%d)",
            self.id,
            replay,
            len(self._attached),
        )

    def detach(self, conn: Subscriber) -> None:
        """Unsubscribe ``conn``. Idempotent; the process is unaffected."""
        if conn in self._attached:
            self._attached.discard(conn)
            logger.debug(
                "Connection detached from session %s (viewers=%d)",
                self.id,
                len(self._attached),
            )

    def is_attached(self, conn: Subscriber) -> bool:
        return conn in self._attached

    # ------------------------------------------------------------------
    # Input / resize
    # ------------------------------------------------------------------

    async def handle_input(self, conn: Subscriber, data: bytes) -> None:
        """Forward keystrokes from an attached connection to the process."""
        if conn not in self._attached:
            raise NotAttachedError(f"Connection is not attached to session {self.id}")
        if self._state is SessionState.EXITED:
            return
        self.last_activity_at = time.time()
        await self.process.write(data)

    async def handle_resize(self, conn: Subscriber, cols: Any, rows: Any) -> None:
        """Apply a geometry change requested by an attached connection."""
        if conn not in self._attached:
            raise NotAttachedError(f"Connection is not attached to session {self.id}")
        cols, rows = validate_geometry(cols, rows)
        if self._state is SessionState.EXITED:
            return
        self.cols, self.rows = cols, rows
        await self.process.resize(cols, rows)

    # ------------------------------------------------------------------
    # Output fan-out
    # ------------------------------------------------------------------

    def _handle_output(self, chunk: bytes) -> None:
        self.last_activity_at = time.time()
        self._pending += chunk

        if self._flush_interval <= 0 or len(self._pending) >= self._flush_size:
            self._flush()
        elif self._flush_timer is None:
            loop = asyncio.get_running_loop()
            self._flush_timer = loop.call_later(self._flush_interval, self._flush)

    def _flush(self) -> None:
        if self._flush_timer is not None:
            self._flush_timer.cancel()
            self._flush_timer = None
        if not self._pending:
            return

        chunk = bytes(self._pending)
        self._pending.clear()
        self.buffer.append(chunk)
        self._broadcast(WireEvent.output(chunk))

    def _broadcast(self, event: WireEvent) -> None:
        for conn in list(self._attached):
            try:
                conn.deliver(event)
            except Exception:
                logger.exception("Delivery to a viewer of session %s failed", self.id)
                self._attached.discard(conn)

    def _handle_exit(self, exit_code: int | None) -> None:
        self._flush()
        self._state = SessionState.EXITED
        self._exit_code = exit_code
        logger.info("Session %s exited (code=%s)", self.id, exit_code)

        self._broadcast(
            WireEvent(
                type=EventType.SESSION_EXITED,
                data={"id": self.id, "exit_code": exit_code},
            )
        )
        self._attached.clear()

        if self._on_exit:
            try:
                self._on_exit(self)
            except Exception:
                logger.exception("Error in on_exit callback for session %s", self.id)

    # ------------------------------------------------------------------
    # Lifecycle / info
    # ------------------------------------------------------------------

    def terminate(self) -> None:
        """Kill the process. Exit propagation runs when it is gone."""
        self.process.kill()

    async def wait(self) -> int | None:
        """Wait until the process has exited and the exit has been broadcast."""
        return await self.process.wait()

    def rename(self, title: str) -> None:
        if title:
            self.title = title

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def alive(self) -> bool:
        return self._state is SessionState.RUNNING

    @property
    def exit_code(self) -> int | None:
        return self._exit_code

    @property
    def attached_count(self) -> int:
        return len(self._attached)

    def idle_for(self, now: float | None = None) -> float:
        """Seconds since the last input or output."""
        return (now if now is not None else time.time()) - self.last_activity_at

    def info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "project_id": self.project_id,
            "workspace_dir": self.workspace_dir,
            "created_at": self.created_at,
            "last_activity_at": self.last_activity_at,
            "cols": self.cols,
            "rows": self.rows,
            "state": self._state.value,
            "exit_code": self._exit_code,
            "attached": len(self._attached),
        }
