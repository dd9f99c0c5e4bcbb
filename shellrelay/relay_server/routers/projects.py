"""Project listing and client bootstrap endpoints."""

from __future__ import annotations

from fastapi import APIRouter

from shellrelay.relay_server.deps import Lister, Settings
from shellrelay.relay_server.models.api import ConfigResponse
from shellrelay.relay_server.models.project import ProjectRecord

router = APIRouter(tags=["projects"])


@router.get("/projects", response_model=list[ProjectRecord])
async def handle_list_projects(lister: Lister) -> list[ProjectRecord]:
    return await lister.list_projects()


@router.get("/config", response_model=ConfigResponse)
async def handle_get_config(settings: Settings) -> ConfigResponse:
    """Where the client should open its channels."""
    return ConfigResponse(server_port=settings.port, ws_url=f"ws://{settings.host}:{settings.port}")
