"""Shared enumerations used across the relay server."""

from __future__ import annotations

from enum import StrEnum

# -- Sessions ----------------------------------------------------------------


class Provider(StrEnum):
    """Interactive backend a session drives."""

    SHELL = "shell"
    CLAUDE = "claude"
    CURSOR = "cursor"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def is_agent(self) -> bool:
        return self is not Provider.SHELL


class ConnectionState(StrEnum):
    """Whether a registry entry currently has a bound connection."""

    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# -- Connections -------------------------------------------------------------


class ConnectionKind(StrEnum):
    SHELL_RELAY = "shell_relay"
    AGENT_CHAT = "agent_chat"


class RelayState(StrEnum):
    """Per-connection shell relay state machine."""

    AWAITING_INIT = "awaiting_init"
    ACTIVE = "active"
    CLOSED = "closed"


# -- Watcher -----------------------------------------------------------------


class DebounceState(StrEnum):
    IDLE = "idle"
    PENDING = "pending"
    FIRED = "fired"
