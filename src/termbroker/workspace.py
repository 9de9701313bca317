"""Workspace resolution: project id to working directory."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol

from termbroker.errors import InvalidWorkspaceError, ProcessSpawnError

logger = logging.getLogger(__name__)

_REF_PATTERN = re.compile(r"[A-Za-z0-9][A-Za-z0-9._-]{0,127}")


class WorkspaceResolver(Protocol):
    def path_for(self, workspace_ref: str) -> Path: ...

    def resolve(self, workspace_ref: str) -> Path: ...


class DirectoryWorkspaceResolver:
    """Map each project id to ``<root>/<project_id>``.

    An empty reference resolves to ``default_dir``. Missing project
    directories are created by ``resolve`` when ``create_missing`` is set;
    ``path_for`` never touches the filesystem beyond resolving symlinks.
    """

    def __init__(
        self,
        root: str | Path,
        default_dir: str | Path = "~",
        create_missing: bool = True,
    ) -> None:
        self.root = Path(root).expanduser().resolve()
        self.default_dir = Path(default_dir).expanduser().resolve()
        self.create_missing = create_missing

    def path_for(self, workspace_ref: str) -> Path:
        """Return the absolute workspace path for ``workspace_ref`` without creating it.

        Raises:
            InvalidWorkspaceError: The reference is not a plain project id.
        """
        if not workspace_ref:
            return self.default_dir

        if not _REF_PATTERN.fullmatch(workspace_ref):
            raise InvalidWorkspaceError(f"Invalid workspace reference: {workspace_ref!r}")
        path = (self.root / workspace_ref).resolve()
        if path.parent != self.root:
            raise InvalidWorkspaceError(f"Invalid workspace reference: {workspace_ref!r}")
        return path

    def resolve(self, workspace_ref: str) -> Path:
        """Return the workspace directory for ``workspace_ref``, creating it if allowed.

        Raises:
            InvalidWorkspaceError: The reference is not a plain project id.
            ProcessSpawnError: The directory is missing and cannot be created.
        """
        path = self.path_for(workspace_ref)
        if not path.is_dir():
            if not self.create_missing:
                raise ProcessSpawnError(f"Workspace directory does not exist: {path}")
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ProcessSpawnError(f"Cannot create workspace {path}: {e}") from e
            logger.info("Created workspace %s", path)
        return path
