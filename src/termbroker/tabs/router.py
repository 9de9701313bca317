"""HTTP API for the tab ledger.

Clients use it to remember which session each tab of a project last
showed, and to learn whether that session is still alive before deciding
between ``attach-session`` and ``create-session``.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from termbroker.errors import BrokerError
from termbroker.gateway.auth import require_identity
from termbroker.tabs import TabLedger

logger = logging.getLogger(__name__)


class TabUpsertRequest(BaseModel):
    name: str = Field(default="", max_length=200)
    session_id: str | None = None


class TabSessionRequest(BaseModel):
    session_id: str | None = None


def _ledger(request: Request) -> TabLedger:
    return request.app.state.ledger


def create_tabs_router() -> APIRouter:
    router = APIRouter(
        prefix="/api/terminal-tabs",
        tags=["terminal-tabs"],
        dependencies=[Depends(require_identity)],
    )

    @router.get("/{project_id}")
    async def list_tabs(
        project_id: str, request: Request, ledger: TabLedger = Depends(_ledger)
    ) -> list[dict[str, Any]]:
        """Saved tabs for a project, each marked with whether its session is alive."""
        registry = request.app.state.registry
        tabs = await ledger.list_for_project(project_id)
        return [
            {
                **tab.to_dict(),
                "alive": registry.is_alive(tab.session_id) if tab.session_id else False,
            }
            for tab in tabs
        ]

    @router.put("/{project_id}/{tab_id}")
    async def save_tab(
        project_id: str,
        tab_id: str,
        body: TabUpsertRequest,
        request: Request,
        ledger: TabLedger = Depends(_ledger),
    ) -> dict[str, Any]:
        try:
            cwd = request.app.state.workspaces.path_for(project_id)
        except BrokerError as e:
            raise HTTPException(status_code=400, detail=str(e)) from e
        record = await ledger.upsert(
            project_id, tab_id, name=body.name, session_id=body.session_id, cwd=str(cwd)
        )
        return record.to_dict()

    @router.put("/{project_id}/{tab_id}/session")
    async def update_tab_session(
        project_id: str,
        tab_id: str,
        body: TabSessionRequest,
        ledger: TabLedger = Depends(_ledger),
    ) -> dict[str, Any]:
        if not await ledger.update_session(project_id, tab_id, body.session_id):
            raise HTTPException(status_code=404, detail="Tab not found")
        return {"ok": True}

    @router.delete("/{project_id}/{tab_id}")
    async def delete_tab(
        project_id: str, tab_id: str, ledger: TabLedger = Depends(_ledger)
    ) -> dict[str, Any]:
        """Forget a tab. Its session keeps running until it exits or is reaped."""
        if not await ledger.remove(project_id, tab_id):
            raise HTTPException(status_code=404, detail="Tab not found")
        return {"ok": True}

    return router
