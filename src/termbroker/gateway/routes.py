"""HTTP API for session management.

The same list and kill operations the WebSocket protocol offers, for
callers that do not hold a terminal connection.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from termbroker.errors import SessionNotFoundError
from termbroker.gateway.auth import require_identity
from termbroker.pty.registry import SessionRegistry

logger = logging.getLogger(__name__)


def _registry(request: Request) -> SessionRegistry:
    return request.app.state.registry


def create_sessions_router() -> APIRouter:
    router = APIRouter(
        prefix="/api/sessions",
        tags=["sessions"],
        dependencies=[Depends(require_identity)],
    )

    @router.get("")
    async def list_sessions(
        project_id: str | None = None, registry: SessionRegistry = Depends(_registry)
    ) -> list[dict[str, Any]]:
        return registry.list_sessions(project_id)

    # Declared before the per-id route so "all" is not taken as an id.
    @router.delete("/all")
    async def kill_all_sessions(registry: SessionRegistry = Depends(_registry)) -> dict[str, Any]:
        """Kill every tracked session."""
        killed = 0
        for info in registry.list_sessions():
            try:
                await registry.terminate(info["id"])
            except SessionNotFoundError:
                continue
            killed += 1
        logger.info("Killed %d session(s) over HTTP", killed)
        return {"ok": True, "killed": killed}

    @router.delete("/{session_id}")
    async def kill_session(
        session_id: str, registry: SessionRegistry = Depends(_registry)
    ) -> dict[str, Any]:
        try:
            await registry.terminate(session_id)
        except SessionNotFoundError as e:
            raise HTTPException(status_code=404, detail="Session not found") from e
        return {"ok": True}

    return router
