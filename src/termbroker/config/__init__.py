"""Configuration: Pydantic models for termbroker settings."""

from __future__ import annotations

import json
import os
from typing import Any

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field


class ServerConfig(BaseModel):
    """Network listener settings."""

    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8765)
    outbound_queue_size: int = Field(
        default=1024,
        description=(
            "Max pending events per connection. A client that falls this far "
            "behind is disconnected (which detaches it; the session keeps running)."
        ),
    )


class AuthConfig(BaseModel):
    """Connection identity verification.

    Tokens are issued elsewhere; the broker only verifies them.
    """

    jwt_secret: str = Field(default="", description="HMAC secret for JWT verification")
    algorithms: list[str] = Field(default_factory=lambda: ["HS256"])
    audience: str | None = Field(default=None)


class SessionConfig(BaseModel):
    """Per-session process and buffering settings."""

    shell: str | None = Field(
        default=None, description="Shell binary (default: $SHELL, then /bin/bash)"
    )
    shell_args: list[str] = Field(default_factory=list)
    term: str = Field(default="xterm-256color")
    default_cols: int = Field(default=120)
    default_rows: int = Field(default=30)
    scrollback_bytes: int = Field(
        default=50 * 1024, description="Replay buffer capacity per session"
    )
    max_sessions: int = Field(default=15)
    idle_timeout: float = Field(
        default=24 * 60 * 60,
        description="Seconds without output/input before an unattached session is reaped",
    )
    reap_interval: float = Field(
        default=60 * 60, description="Seconds between idle-session sweeps"
    )
    flush_interval: float = Field(
        default=0.008,
        description="Output coalescing window in seconds (0 = broadcast every chunk)",
    )
    flush_size: int = Field(
        default=32 * 1024, description="Pending output size that forces an early flush"
    )


class WorkspaceConfig(BaseModel):
    """Project id -> workspace directory mapping."""

    root: str = Field(default="~/.termbroker/workspaces")
    default_dir: str = Field(
        default="~", description="Working directory when no workspace ref is given"
    )
    create_missing: bool = Field(default=True)


class LedgerConfig(BaseModel):
    """Tab ledger storage."""

    db_path: str = Field(default="~/.termbroker/tabs.db")


class BrokerConfig(BaseModel):
    """Top-level termbroker configuration."""

    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)

    @classmethod
    def load(cls, config_path: str | None = None) -> BrokerConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            TERMBROKER_HOST              - Listen address
            TERMBROKER_PORT              - Listen port
            TERMBROKER_JWT_SECRET        - Secret used to verify connection tokens
            TERMBROKER_SHELL             - Shell binary to spawn
            TERMBROKER_SCROLLBACK_BYTES  - Replay buffer capacity per session
            TERMBROKER_MAX_SESSIONS      - Concurrent session limit
            TERMBROKER_IDLE_TIMEOUT      - Idle reap timeout in seconds
            TERMBROKER_REAP_INTERVAL     - Seconds between reaper sweeps
            TERMBROKER_WORKSPACE_ROOT    - Root directory for project workspaces
            TERMBROKER_TABS_DB           - Tab ledger SQLite path
        """
        load_dotenv(find_dotenv(usecwd=True), override=True)

        config_data: dict[str, Any] = {}

        if config_path and os.path.exists(config_path):
            with open(config_path) as f:
                config_data = json.load(f)

        overrides: list[tuple[str, str, str, type]] = [
            ("TERMBROKER_HOST", "server", "host", str),
            ("TERMBROKER_PORT", "server", "port", int),
            ("TERMBROKER_JWT_SECRET", "auth", "jwt_secret", str),
            ("TERMBROKER_SHELL", "session", "shell", str),
            ("TERMBROKER_SCROLLBACK_BYTES", "session", "scrollback_bytes", int),
            ("TERMBROKER_MAX_SESSIONS", "session", "max_sessions", int),
            ("TERMBROKER_IDLE_TIMEOUT", "session", "idle_timeout", float),
            ("TERMBROKER_REAP_INTERVAL", "session", "reap_interval", float),
            ("TERMBROKER_WORKSPACE_ROOT", "workspace", "root", str),
            ("TERMBROKER_TABS_DB", "ledger", "db_path", str),
        ]
        for env_name, section, key, cast in overrides:
            value = os.environ.get(env_name)
            if value:
                config_data.setdefault(section, {})[key] = cast(value)

        return cls.model_validate(config_data)
