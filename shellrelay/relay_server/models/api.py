"""API request / response schemas for the HTTP endpoints.

Response schemas read registry entries via ``from_attributes`` so routers can
return live objects directly.
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shellrelay.relay_server.models.enums import ConnectionState, Provider

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------


class ConfigResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    server_port: int = Field(serialization_alias="serverPort")
    ws_url: str = Field(serialization_alias="wsUrl")


# ---------------------------------------------------------------------------
# Shell sessions
# ---------------------------------------------------------------------------


class SessionResponse(BaseModel):
    """Snapshot of one registry entry."""

    model_config = ConfigDict(from_attributes=True)

    session_key: str
    provider: Provider
    project_path: str
    state: ConnectionState
    pid: int | None = None
    exited: bool
    exit_code: int | None = None
    buffered_bytes: int = 0
    created_at: datetime
    detached_at: datetime | None = None


class RestartRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    project_path: str = Field(description="Project whose sessions are killed and evicted.")


class RestartResponse(BaseModel):
    removed: list[str] = Field(default_factory=list, description="Session keys that were evicted.")


class AbortResponse(BaseModel):
    session_key: str
    success: bool
