"""termbroker: FastAPI application.

Wires together:
- WebSocket endpoint at /terminal (terminal session protocol)
- Session management HTTP API at /api/sessions
- Tab ledger HTTP API at /api/terminal-tabs
- Health check at /health

Authentication:
- WebSocket: JWT via ``?token=``, ``Authorization: Bearer``, or a first
  ``authenticate`` message
- HTTP: JWT via ``Authorization: Bearer``
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from termbroker.config import BrokerConfig
from termbroker.errors import AuthenticationError, BrokerError
from termbroker.gateway.auth import Authenticator, JWTAuthenticator, bearer_token
from termbroker.gateway.connection import Connection
from termbroker.gateway.gateway import Gateway
from termbroker.gateway.protocol import encode_event, input_from_binary, parse_message
from termbroker.gateway.routes import create_sessions_router
from termbroker.pty.registry import SessionRegistry
from termbroker.tabs import TabLedger
from termbroker.tabs.router import create_tabs_router
from termbroker.wire import Wire, log_lifecycle
from termbroker.workspace import DirectoryWorkspaceResolver, WorkspaceResolver

logger = logging.getLogger(__name__)


async def _pump(websocket: WebSocket, conn: Connection) -> None:
    """Drain the connection's outbound queue onto the socket, then close it."""
    try:
        while True:
            event = await conn.next_event()
            if event is None:
                break
            frame = encode_event(event)
            if isinstance(frame, bytes):
                await websocket.send_bytes(frame)
            else:
                await websocket.send_text(frame)
        await websocket.close(code=conn.close_code, reason=conn.close_reason)
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        # The client went away first; the receive side handles the detach.
        logger.debug("Sender for connection %s stopped: %s", conn.id, e)


def create_app(
    config: BrokerConfig | None = None,
    *,
    authenticator: Authenticator | None = None,
    workspaces: WorkspaceResolver | None = None,
) -> FastAPI:
    """Build the broker application.

    One registry, gateway, and ledger per app instance.
    """
    config = config or BrokerConfig.load()
    authenticator = authenticator or JWTAuthenticator(
        config.auth.jwt_secret,
        algorithms=config.auth.algorithms,
        audience=config.auth.audience,
    )
    workspaces = workspaces or DirectoryWorkspaceResolver(
        config.workspace.root,
        default_dir=config.workspace.default_dir,
        create_missing=config.workspace.create_missing,
    )
    wire = Wire()
    registry = SessionRegistry(config.session, wire=wire)
    ledger = TabLedger(config.ledger.db_path)
    gateway = Gateway(registry, authenticator, workspaces)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting termbroker...")
        logger.info("Scrollback per session: %d bytes", config.session.scrollback_bytes)
        logger.info("Max sessions: %d", config.session.max_sessions)
        await ledger.open()
        lifecycle_logger = asyncio.create_task(log_lifecycle(wire.subscribe()))
        registry.start_reaper()
        yield
        logger.info("Shutting down termbroker...")
        # Closes the wire, which ends the lifecycle logger.
        await registry.shutdown()
        await lifecycle_logger
        await ledger.close()

    app = FastAPI(title="termbroker", lifespan=lifespan)
    app.state.config = config
    app.state.registry = registry
    app.state.gateway = gateway
    app.state.ledger = ledger
    app.state.authenticator = authenticator
    app.state.workspaces = workspaces

    app.include_router(create_sessions_router())
    app.include_router(create_tabs_router())

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok", "sessions": len(registry)}

    @app.websocket("/terminal")
    async def terminal(websocket: WebSocket) -> None:
        await websocket.accept()
        conn = Connection(queue_size=config.server.outbound_queue_size)
        sender = asyncio.create_task(_pump(websocket, conn))
        logger.info("Client connected: %s", conn.id)

        token = websocket.query_params.get("token") or bearer_token(
            websocket.headers.get("authorization")
        )
        if token:
            try:
                gateway.authenticate(conn, token)
            except AuthenticationError as e:
                gateway.reject(conn, e)

        try:
            while not conn.closed:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                try:
                    if frame.get("bytes") is not None:
                        message = input_from_binary(frame["bytes"])
                    else:
                        message = parse_message(frame.get("text") or "")
                except BrokerError as e:
                    gateway.report(conn, e)
                    continue
                await gateway.handle(conn, message)
        except WebSocketDisconnect:
            pass
        finally:
            gateway.disconnect(conn)
            try:
                await asyncio.wait_for(sender, timeout=5)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                sender.cancel()
            logger.info("Client disconnected: %s", conn.id)

    return app
