"""Terminal session endpoints.

Thin HTTP adapter over the session registry.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status
from loguru import logger

from shellrelay.relay_server.deps import CurrentUser, Registry
from shellrelay.relay_server.models.api import AbortResponse, RestartRequest, RestartResponse, SessionResponse

router = APIRouter(prefix="/shell", tags=["shell"])


@router.get("/sessions", response_model=list[SessionResponse])
async def handle_list_sessions(registry: Registry) -> list[SessionResponse]:
    return [SessionResponse.model_validate(entry) for entry in registry.entries()]


@router.post("/restart", response_model=RestartResponse)
async def handle_restart(body: RestartRequest, registry: Registry, user: CurrentUser) -> RestartResponse:
    """Kill and evict every session of a project; the next ``init`` starts fresh."""
    removed = await registry.remove_scoped(body.project_path)
    logger.info("Restart of {} by {}: evicted {}", body.project_path, user.username, removed)
    return RestartResponse(removed=removed)


@router.post("/sessions/{session_key:path}/abort", response_model=AbortResponse)
async def handle_abort_session(session_key: str, registry: Registry, user: CurrentUser) -> AbortResponse:
    if not await registry.abort(session_key):
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Session '{session_key}' not found.")
    logger.info("Session {} aborted by {}", session_key, user.username)
    return AbortResponse(session_key=session_key, success=True)
