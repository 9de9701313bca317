"""Terminal gateway: the per-connection protocol state machine.

States: ``unauthenticated -> authenticated-idle <-> authenticated-attached``.

* Unauthenticated connections may only ``authenticate``; anything else, or
  a bad token, closes the connection with an authentication error.
* ``create-session`` and ``attach-session`` move a connection to attached,
  implicitly detaching it from any previous session first. A failed
  create/attach leaves the connection where it was.
* ``input`` and ``resize`` require an attached connection. ``detach-session``
  on an idle connection is a no-op.
* ``detach-session`` and a dropped transport both go through ``_detach``;
  neither ever affects the session's process.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from termbroker.errors import (
    AuthenticationError,
    BrokerError,
    NotAttachedError,
    ProtocolError,
    SessionDeadError,
)
from termbroker.gateway.connection import CLOSE_AUTH_FAILED, Connection, ConnectionState
from termbroker.gateway.protocol import (
    AttachSessionMessage,
    AuthenticateMessage,
    ClientMessage,
    CreateSessionMessage,
    DetachSessionMessage,
    InputMessage,
    KillSessionMessage,
    ListSessionsMessage,
    RenameSessionMessage,
    ResizeMessage,
)
from termbroker.pty.session import validate_geometry
from termbroker.wire import EventType, WireEvent

if TYPE_CHECKING:
    from termbroker.gateway.auth import Authenticator
    from termbroker.pty.registry import SessionRegistry
    from termbroker.pty.session import Session
    from termbroker.workspace import WorkspaceResolver

logger = logging.getLogger(__name__)


def _reply(event_type: EventType, ref: str | None, **data: Any) -> WireEvent:
    if ref is not None:
        data["ref"] = ref
    return WireEvent(type=event_type, data=data)


class Gateway:
    """Routes protocol messages from connections to the session registry."""

    def __init__(
        self,
        registry: SessionRegistry,
        authenticator: Authenticator,
        workspaces: WorkspaceResolver,
    ) -> None:
        self._registry = registry
        self._authenticator = authenticator
        self._workspaces = workspaces

    def authenticate(self, conn: Connection, token: str | None, ref: str | None = None) -> None:
        """Verify ``token`` and move ``conn`` to authenticated-idle.

        Raises:
            AuthenticationError: The token is missing or invalid.
        """
        if conn.state is not ConnectionState.UNAUTHENTICATED:
            raise ProtocolError("Connection is already authenticated")
        conn.identity = self._authenticator.authenticate(token)
        logger.info("Connection %s authenticated as %s", conn.id, conn.identity.subject)
        conn.deliver(_reply(EventType.AUTHENTICATED, ref, subject=conn.identity.subject))

    def reject(self, conn: Connection, error: AuthenticationError, ref: str | None = None) -> None:
        """Send an authentication error and close the connection."""
        logger.info("Connection %s rejected: %s", conn.id, error)
        conn.deliver(WireEvent.error(str(error), error.kind, ref))
        conn.close(CLOSE_AUTH_FAILED, str(error))

    async def handle(self, conn: Connection, message: ClientMessage) -> None:
        """Apply one client message. Errors are reported to the client, not raised."""
        try:
            await self._dispatch(conn, message)
        except AuthenticationError as e:
            self.reject(conn, e, message.ref)
        except BrokerError as e:
            logger.debug("Connection %s: %s failed: %s", conn.id, message.type, e)
            conn.deliver(WireEvent.error(str(e), e.kind, message.ref))

    def report(self, conn: Connection, error: BrokerError) -> None:
        """Report an error that happened before a message could be dispatched."""
        if isinstance(error, AuthenticationError) or conn.state is ConnectionState.UNAUTHENTICATED:
            self.reject(conn, AuthenticationError(str(error)))
            return
        conn.deliver(WireEvent.error(str(error), error.kind))

    def disconnect(self, conn: Connection) -> None:
        """Transport-level disconnect: an implicit detach, never a kill."""
        session = self._detach(conn)
        if session is not None:
            logger.info("Connection %s dropped while attached to %s", conn.id, session.id)
        conn.close()

    async def _dispatch(self, conn: Connection, message: ClientMessage) -> None:
        if conn.state is ConnectionState.UNAUTHENTICATED and not isinstance(
            message, AuthenticateMessage
        ):
            raise AuthenticationError("Authentication required")

        match message:
            case AuthenticateMessage(token=token, ref=ref):
                self.authenticate(conn, token, ref)
            case CreateSessionMessage():
                await self._create(conn, message)
            case AttachSessionMessage():
                await self._attach(conn, message)
            case InputMessage(data=data):
                await self._attached_session(conn).handle_input(conn, data)
            case ResizeMessage(cols=cols, rows=rows):
                await self._attached_session(conn).handle_resize(conn, cols, rows)
            case DetachSessionMessage(ref=ref):
                # A detach racing the session's exit finds the connection idle.
                session = self._detach(conn)
                if ref is not None:
                    session_id = session.id if session is not None else None
                    conn.deliver(_reply(EventType.SESSION_DETACHED, ref, id=session_id))
            case ListSessionsMessage(project_id=project_id, ref=ref):
                sessions = self._registry.list_sessions(project_id)
                conn.deliver(_reply(EventType.SESSIONS, ref, sessions=sessions))
            case KillSessionMessage(id=session_id, ref=ref):
                if conn.attached_session_id == session_id:
                    self._detach(conn)
                await self._registry.terminate(session_id)
                conn.deliver(_reply(EventType.SESSION_KILLED, ref, id=session_id))
            case RenameSessionMessage(id=session_id, title=title, ref=ref):
                session = self._registry.require(session_id)
                session.rename(title)
                conn.deliver(_reply(EventType.SESSION_RENAMED, ref, session=session.info()))
            case _:
                raise ProtocolError(f"Unsupported message: {message.type}")

    async def _create(self, conn: Connection, message: CreateSessionMessage) -> None:
        cols = rows = None
        if message.cols is not None or message.rows is not None:
            cols, rows = validate_geometry(message.cols, message.rows)
        workspace_dir = self._workspaces.resolve(message.workspace_ref)
        session = await self._registry.create(
            workspace_dir,
            cols=cols,
            rows=rows,
            title=message.title,
            project_id=message.workspace_ref,
        )
        self._detach(conn)
        session.attach(conn, replay=False)
        conn.session = session
        logger.info("Connection %s created session %s", conn.id, session.id)
        conn.deliver(
            _reply(EventType.SESSION_CREATED, message.ref, id=session.id, session=session.info())
        )

    async def _attach(self, conn: Connection, message: AttachSessionMessage) -> None:
        geometry = None
        if message.cols is not None or message.rows is not None:
            geometry = validate_geometry(message.cols, message.rows)
        session = self._registry.require(message.id)
        if not session.alive:
            raise SessionDeadError(session.id)

        self._detach(conn)
        session.attach(conn, replay=message.replay)
        conn.session = session
        logger.info(
            "Connection %s attached to session %s (replay=%s)",
            conn.id,
            session.id,
            message.replay,
        )
        conn.deliver(
            _reply(EventType.SESSION_ATTACHED, message.ref, id=session.id, session=session.info())
        )
        if geometry is not None:
            await session.handle_resize(conn, *geometry)

    def _attached_session(self, conn: Connection) -> Session:
        if conn.session is None:
            raise NotAttachedError()
        return conn.session

    def _detach(self, conn: Connection) -> Session | None:
        """The single detach path: explicit message, implicit switch, or disconnect."""
        session = conn.session
        conn.session = None
        if session is not None:
            session.detach(conn)
        return session
