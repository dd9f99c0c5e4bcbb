"""FastAPI dependency injection for relay components and authentication.

Usage in route handlers::

    @router.get("/sessions")
    async def list_sessions(registry: Registry) -> list[SessionResponse]:
        ...

Components are created in the app lifespan and stored on ``app.state``.
Dependencies raise HTTP 503 if a component was not initialised and HTTP 401
if the caller's token is missing or invalid.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request, status

from shellrelay.relay_server.auth import AuthError, authenticate
from shellrelay.relay_server.managers.projects import ProjectLister
from shellrelay.relay_server.models.session import Identity
from shellrelay.relay_server.registry import SessionRegistry
from shellrelay.relay_server.settings import RelaySettings


def _component(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Relay component '{name}' is not initialised.",
        )
    return value


async def get_current_user(request: Request) -> Identity:
    """Authenticate the caller from ``?token=`` or ``Authorization: Bearer``."""
    verifier = _component(request, "verifier")
    try:
        return authenticate(verifier, request.query_params, request.headers)
    except AuthError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
            headers={"WWW-Authenticate": "Bearer"},
        ) from None


async def get_registry(request: Request) -> SessionRegistry:
    return _component(request, "registry")


async def get_lister(request: Request) -> ProjectLister:
    return _component(request, "lister")


async def get_relay_settings(request: Request) -> RelaySettings:
    return _component(request, "settings")


# -- Annotated type aliases for concise route signatures ---------------------

CurrentUser = Annotated[Identity, Depends(get_current_user)]
"""Annotated dependency: authenticated caller (401 otherwise)."""

Registry = Annotated[SessionRegistry, Depends(get_registry)]
"""Annotated dependency: the shared terminal session registry."""

Lister = Annotated[ProjectLister, Depends(get_lister)]
"""Annotated dependency: project listing source."""

Settings = Annotated[RelaySettings, Depends(get_relay_settings)]
