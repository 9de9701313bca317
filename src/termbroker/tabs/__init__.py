"""Tab ledger: which named tab of a project last pointed at which session.

The ledger is advisory: it never keeps a session alive, and a recorded
session id may refer to a session that has since exited or been reaped.
Readers check liveness and fall back to creating a new session.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable

import aiosqlite

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS terminal_tabs (
    project_id TEXT NOT NULL,
    tab_id TEXT NOT NULL,
    name TEXT NOT NULL DEFAULT '',
    session_id TEXT,
    cwd TEXT NOT NULL DEFAULT '',
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    PRIMARY KEY (project_id, tab_id)
);
CREATE INDEX IF NOT EXISTS idx_terminal_tabs_session ON terminal_tabs (session_id);
"""


@dataclass
class TabRecord:
    """One saved terminal tab."""

    project_id: str
    tab_id: str
    name: str = ""
    session_id: str | None = None
    cwd: str = ""
    created_at: float = 0.0
    updated_at: float = 0.0

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> TabRecord:
        return cls(
            project_id=row["project_id"],
            tab_id=row["tab_id"],
            name=row["name"],
            session_id=row["session_id"] or None,
            cwd=row["cwd"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TabLedger:
    """SQLite-backed store of ``TabRecord``s keyed by ``(project_id, tab_id)``.

    Usage:
        async with TabLedger("~/.termbroker/tabs.db") as ledger:
            await ledger.upsert("proj-1", "tab-a", name="build")
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None

    async def open(self) -> None:
        if self._db is not None:
            return
        path = self._db_path
        if path != ":memory:":
            resolved = Path(path).expanduser()
            resolved.parent.mkdir(parents=True, exist_ok=True)
            path = str(resolved)
        self._db = await aiosqlite.connect(path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.info("Tab ledger opened at %s", path)

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> TabLedger:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("TabLedger is not open")
        return self._db

    async def upsert(
        self,
        project_id: str,
        tab_id: str,
        name: str = "",
        session_id: str | None = None,
        cwd: str = "",
    ) -> TabRecord:
        """Create a tab or update its name, session, and cwd."""
        now = time.time()
        await self.db.execute(
            """
            INSERT INTO terminal_tabs
                (project_id, tab_id, name, session_id, cwd, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project_id, tab_id) DO UPDATE SET
                name = excluded.name,
                session_id = excluded.session_id,
                cwd = excluded.cwd,
                updated_at = excluded.updated_at
            """,
            (project_id, tab_id, name, session_id or None, cwd, now, now),
        )
        await self.db.commit()
        record = await self.get(project_id, tab_id)
        if record is None:
            raise RuntimeError(f"Tab {project_id}/{tab_id} missing right after upsert")
        return record

    async def get(self, project_id: str, tab_id: str) -> TabRecord | None:
        async with self.db.execute(
            "SELECT * FROM terminal_tabs WHERE project_id = ? AND tab_id = ?",
            (project_id, tab_id),
        ) as cursor:
            row = await cursor.fetchone()
        return TabRecord.from_row(row) if row else None

    async def list_for_project(self, project_id: str) -> list[TabRecord]:
        """All tabs of a project in the order they were opened."""
        async with self.db.execute(
            "SELECT * FROM terminal_tabs WHERE project_id = ? ORDER BY created_at, rowid",
            (project_id,),
        ) as cursor:
            rows = await cursor.fetchall()
        return [TabRecord.from_row(row) for row in rows]

    async def update_session(
        self, project_id: str, tab_id: str, session_id: str | None
    ) -> bool:
        """Point a tab at a (new) session. Returns False if the tab is unknown."""
        cursor = await self.db.execute(
            """
            UPDATE terminal_tabs SET session_id = ?, updated_at = ?
            WHERE project_id = ? AND tab_id = ?
            """,
            (session_id or None, time.time(), project_id, tab_id),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def remove(self, project_id: str, tab_id: str) -> bool:
        """Delete a tab. The session it pointed at is left running."""
        cursor = await self.db.execute(
            "DELETE FROM terminal_tabs WHERE project_id = ? AND tab_id = ?",
            (project_id, tab_id),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def remove_project(self, project_id: str) -> int:
        cursor = await self.db.execute(
            "DELETE FROM terminal_tabs WHERE project_id = ?", (project_id,)
        )
        await self.db.commit()
        return cursor.rowcount

    async def find_by_session(self, session_id: str) -> TabRecord | None:
        async with self.db.execute(
            "SELECT * FROM terminal_tabs WHERE session_id = ? LIMIT 1", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return TabRecord.from_row(row) if row else None

    async def reusable_session(
        self, project_id: str, tab_id: str, is_alive: Callable[[str], bool]
    ) -> str | None:
        """The tab's remembered session id if that session is still alive.

        ``None`` means the caller should create a new session.
        """
        record = await self.get(project_id, tab_id)
        if record is None or record.session_id is None:
            return None
        if not is_alive(record.session_id):
            logger.debug(
                "Tab %s/%s points at dead session %s",
                project_id,
                tab_id,
                record.session_id,
            )
            return None
        return record.session_id


__all__ = ["TabLedger", "TabRecord"]
