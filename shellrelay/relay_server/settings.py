"""Service configuration loaded from RELAY_* environment variables."""

from __future__ import annotations

import os
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


class RelaySettings(BaseSettings):
    """Shellrelay server settings.

    All fields are read from environment variables with the ``RELAY_`` prefix.
    For example, ``RELAY_LOG_LEVEL=DEBUG`` maps to ``log_level``.
    """

    model_config = SettingsConfigDict(
        env_prefix="RELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # -- Logging ---------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    """Write one JSON object per log line instead of the coloured console format."""

    # -- Server ----------------------------------------------------------------
    host: str = "127.0.0.1"
    port: int = 3001
    graceful_shutdown_timeout: int = 10
    """Seconds uvicorn waits for open channels before forcing shutdown."""

    # -- Auth ------------------------------------------------------------------
    auth_token: str | None = None
    """Bearer token for API and channel access.  Auto-generated at startup if empty."""

    auth_user: str = "local"
    """Identity reported for connections authenticated with ``auth_token``."""

    # -- Providers -------------------------------------------------------------
    claude_bin: str = "claude"
    cursor_bin: str = "cursor-agent"
    shell: str = Field(default_factory=_default_shell)
    """Login shell used by the ``shell`` provider."""

    default_cols: int = 80
    default_rows: int = 24

    # -- Session registry ------------------------------------------------------
    idle_timeout: float = 1800.0
    """Seconds a detached session may keep running before it is killed and evicted."""

    max_sessions: int = 32
    """Upper bound on registry entries (running or detached)."""

    output_buffer_bytes: int = 256 * 1024
    """Per-session replay buffer for output produced while no client is attached."""

    sweep_interval: float = 30.0
    kill_grace_period: float = 3.0
    """Seconds between SIGTERM and SIGKILL when stopping a process group."""

    # -- Project watcher -------------------------------------------------------
    projects_root: Path = Field(default_factory=lambda: Path.home() / ".claude" / "projects")
    watch_projects: bool = True
    watch_debounce_ms: int = 300

    # -- Helpers ---------------------------------------------------------------

    def resolve_auth_token(self) -> str:
        """Return the configured token or generate (and pin) a random one."""
        if not self.auth_token:
            self.auth_token = secrets.token_urlsafe(32)
        return self.auth_token


@lru_cache(maxsize=1)
def get_settings() -> RelaySettings:
    """Return a cached settings instance.

    Call ``get_settings.cache_clear()`` in tests to force a re-read after
    overriding env vars.
    """
    return RelaySettings()
