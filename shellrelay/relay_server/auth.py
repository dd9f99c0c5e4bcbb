"""Token authentication for HTTP endpoints and channel handshakes.

A single bearer token guards the whole server.  Channels receive it as the
``token`` query parameter (browsers cannot set headers on a WebSocket
upgrade); HTTP clients may also send ``Authorization: Bearer <token>``.
"""

from __future__ import annotations

import secrets
from collections.abc import Mapping
from typing import Protocol

from shellrelay.relay_server.models.session import Identity


class AuthError(PermissionError):
    """Raised when a request carries no token or an invalid one."""


class TokenVerifier(Protocol):
    """Maps a bearer token to the identity it belongs to."""

    def verify(self, token: str) -> Identity | None: ...


class StaticTokenVerifier:
    """Accepts exactly one configured token."""

    def __init__(self, token: str, username: str = "local") -> None:
        if not token:
            msg = "StaticTokenVerifier requires a non-empty token"
            raise ValueError(msg)
        self._token = token
        self._identity = Identity(username=username)

    def verify(self, token: str) -> Identity | None:
        if secrets.compare_digest(token.encode("utf-8"), self._token.encode("utf-8")):
            return self._identity
        return None


def extract_token(query_params: Mapping[str, str], headers: Mapping[str, str]) -> str | None:
    """Return the token from ``?token=`` or an ``Authorization: Bearer`` header."""
    token = query_params.get("token")
    if token:
        return token
    scheme, _, credentials = headers.get("authorization", "").partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


def authenticate(
    verifier: TokenVerifier,
    query_params: Mapping[str, str],
    headers: Mapping[str, str],
) -> Identity:
    """Resolve the caller's identity or raise ``AuthError``."""
    token = extract_token(query_params, headers)
    if token is None:
        msg = "Missing token"
        raise AuthError(msg)
    identity = verifier.verify(token)
    if identity is None:
        msg = "Invalid token"
        raise AuthError(msg)
    return identity
