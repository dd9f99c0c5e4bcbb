"""Data models for the relay server."""

from shellrelay.relay_server.models.api import (
    AbortResponse,
    ConfigResponse,
    RestartRequest,
    RestartResponse,
    SessionResponse,
)
from shellrelay.relay_server.models.enums import (
    ConnectionKind,
    ConnectionState,
    DebounceState,
    Provider,
    RelayState,
)
from shellrelay.relay_server.models.frames import (
    AbortSessionFrame,
    ChatOptions,
    ClaudeCommandFrame,
    CursorCommandFrame,
    CursorResumeFrame,
    DecodeError,
    ErrorFrame,
    InitFrame,
    InputFrame,
    OutputFrame,
    ProjectsUpdatedFrame,
    ResizeFrame,
    SessionAbortedFrame,
    UrlOpenFrame,
    decode_chat_frame,
    decode_shell_frame,
    encode_frame,
)
from shellrelay.relay_server.models.project import ProjectRecord
from shellrelay.relay_server.models.session import Identity, session_key_for

__all__ = [
    # Frames
    "AbortSessionFrame",
    # API schemas
    "AbortResponse",
    "ChatOptions",
    "ClaudeCommandFrame",
    "ConfigResponse",
    # Enums
    "ConnectionKind",
    "ConnectionState",
    "CursorCommandFrame",
    "CursorResumeFrame",
    "DebounceState",
    "DecodeError",
    "ErrorFrame",
    # Session
    "Identity",
    "InitFrame",
    "InputFrame",
    "OutputFrame",
    # Projects
    "ProjectRecord",
    "ProjectsUpdatedFrame",
    "Provider",
    "RelayState",
    "ResizeFrame",
    "RestartRequest",
    "RestartResponse",
    "SessionAbortedFrame",
    "SessionResponse",
    "UrlOpenFrame",
    "decode_chat_frame",
    "decode_shell_frame",
    "encode_frame",
    "session_key_for",
]
