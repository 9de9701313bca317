"""Session registry: the authoritative map of live terminal sessions."""

from __future__ import annotations

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Any

from termbroker.config import SessionConfig
from termbroker.errors import ProcessSpawnError, SessionLimitError, SessionNotFoundError
from termbroker.pty.buffer import ScrollbackBuffer
from termbroker.pty.process import KILL_GRACE_SECONDS, PTYProcess
from termbroker.pty.session import Session, validate_geometry
from termbroker.wire import Wire

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Creates, looks up, and reaps terminal sessions.

    One instance per running broker, passed explicitly to whoever needs
    it. ``create``, ``reap``, ``terminate`` and ``sweep`` are serialized by
    a single writer lock. ``lookup`` takes no lock: the map is only
    mutated between awaits on the event loop, and a session is inserted
    only after its process has spawned, so readers never observe a
    half-built entry.

    Sessions are never removed because their last viewer left. They go
    away when explicitly terminated, or when the reaper finds them
    exited, or unattended and idle past ``idle_timeout`` (in which case
    the process is killed first).
    """

    def __init__(self, config: SessionConfig | None = None, wire: Wire | None = None) -> None:
        self._config = config or SessionConfig()
        self._wire = wire
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        self._reaper_task: asyncio.Task | None = None

    def _shell_command(self) -> list[str]:
        shell = self._config.shell or os.environ.get("SHELL") or "/bin/bash"
        return [shell, *self._config.shell_args]

    async def create(
        self,
        workspace_dir: str | Path,
        cols: int | None = None,
        rows: int | None = None,
        title: str | None = None,
        project_id: str = "",
    ) -> Session:
        """Spawn a new shell session rooted at ``workspace_dir``.

        Raises:
            ProcessSpawnError: The directory is missing or the shell failed to start.
            SessionLimitError: ``max_sessions`` sessions are already running.
            GeometryError: ``cols``/``rows`` are malformed.
        """
        cols, rows = validate_geometry(
            cols if cols is not None else self._config.default_cols,
            rows if rows is not None else self._config.default_rows,
        )
        path = Path(workspace_dir).expanduser()
        if not path.is_dir():
            raise ProcessSpawnError(f"Workspace directory does not exist: {path}")
        path = path.resolve()

        async with self._lock:
            running = sum(1 for s in self._sessions.values() if s.alive)
            if running >= self._config.max_sessions:
                logger.warning("Session limit reached (%d)", self._config.max_sessions)
                raise SessionLimitError(self._config.max_sessions)

            process = PTYProcess(
                command=self._shell_command(),
                cwd=str(path),
                term=self._config.term,
            )
            session = Session(
                process,
                str(path),
                buffer=ScrollbackBuffer(self._config.scrollback_bytes),
                title=title or f"Terminal {len(self._sessions) + 1}",
                project_id=project_id,
                cols=cols,
                rows=rows,
                flush_interval=self._config.flush_interval,
                flush_size=self._config.flush_size,
            )

            if self._wire:
                wire = self._wire

                def _on_exit(s: Session) -> None:
                    wire.send_session_exited(s.id, s.exit_code, s.buffer.read_tail(500))

                session.set_on_exit(_on_exit)

            await session.start()
            self._sessions[session.id] = session

        if self._wire:
            self._wire.send_session_created(session.id, session.workspace_dir)
        return session

    def lookup(self, session_id: str) -> Session | None:
        """Get a session by ID. No side effects."""
        return self._sessions.get(session_id)

    def require(self, session_id: str) -> Session:
        """Get a session by ID or raise ``SessionNotFoundError``."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def is_alive(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        return session is not None and session.alive

    async def reap(self, session_id: str) -> bool:
        """Remove an exited session's bookkeeping.

        Returns False if the session is unknown.

        Raises:
            RuntimeError: The session's process is still running.
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return False
            if session.alive:
                raise RuntimeError(f"Cannot reap running session {session_id}")
            del self._sessions[session_id]
        self._notify_reaped(session_id, "exited")
        return True

    async def terminate(self, session_id: str) -> Session:
        """Kill a session's process and remove it from the registry."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.terminate()
        self._notify_reaped(session_id, "terminated")
        return session

    async def sweep(self, now: float | None = None) -> list[str]:
        """Reap exited sessions and kill unattended sessions idle past the timeout.

        Sessions with at least one attached connection are always kept.
        Returns the IDs removed.
        """
        now = now if now is not None else time.time()
        removed: list[tuple[str, str]] = []
        async with self._lock:
            for session_id, session in list(self._sessions.items()):
                if session.attached_count > 0:
                    continue
                if not session.alive:
                    removed.append((session_id, "exited"))
                elif session.idle_for(now) > self._config.idle_timeout:
                    logger.info(
                        "Session %s idle for %.0fs, terminating",
                        session_id,
                        session.idle_for(now),
                    )
                    session.terminate()
                    removed.append((session_id, "idle"))
                else:
                    continue
                del self._sessions[session_id]

        for session_id, reason in removed:
            self._notify_reaped(session_id, reason)
        return [session_id for session_id, _ in removed]

    def _notify_reaped(self, session_id: str, reason: str) -> None:
        logger.info("Session %s removed from registry (%s)", session_id, reason)
        if self._wire:
            self._wire.send_session_reaped(session_id, reason)

    def start_reaper(self) -> None:
        """Run ``sweep()`` every ``reap_interval`` seconds until shutdown."""
        if self._reaper_task is None:
            self._reaper_task = asyncio.create_task(self._reap_loop())

    async def _reap_loop(self) -> None:
        while True:
            await asyncio.sleep(self._config.reap_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Idle-session sweep failed")

    def list_sessions(self, project_id: str | None = None) -> list[dict[str, Any]]:
        """Describe tracked sessions, optionally only one project's."""
        return [
            s.info()
            for s in self._sessions.values()
            if project_id is None or s.project_id == project_id
        ]

    async def shutdown(self) -> None:
        """Stop the reaper and kill all sessions. Called on broker shutdown."""
        if self._reaper_task is not None:
            self._reaper_task.cancel()
            try:
                await self._reaper_task
            except asyncio.CancelledError:
                pass
            self._reaper_task = None

        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.terminate()
        if sessions:
            waiters = [asyncio.ensure_future(s.wait()) for s in sessions]
            _, pending = await asyncio.wait(waiters, timeout=KILL_GRACE_SECONDS + 1)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning("%d session(s) did not exit before shutdown", len(pending))
        if self._wire:
            self._wire.close()
        logger.info("All terminal sessions cleaned up")

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions
