"""Wire frames exchanged over the relay channels, and their codec.

Every frame is a JSON object discriminated by ``type``.  Field names are
snake_case in Python and camelCase on the wire (``project_path`` <->
``projectPath``).

Client frames are decoded with ``decode_shell_frame`` /
``decode_chat_frame``; anything that is not valid JSON, has an unknown
``type`` or fails shape validation raises ``DecodeError``.  Server frames are
serialised with ``encode_frame``.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from shellrelay.relay_server.models.enums import Provider


class DecodeError(ValueError):
    """Raised when an inbound frame cannot be decoded.

    The relay answers with an ``error`` frame; the connection stays open.
    """

    def __init__(self, message: str, *, frame_type: str | None = None) -> None:
        super().__init__(message)
        self.frame_type = frame_type


class Frame(BaseModel):
    """Base envelope: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


def _provider_or_default(value: Any) -> Any:
    # Clients send ``provider: null`` for sessions created before provider tagging.
    return Provider.CLAUDE if value in (None, "") else value


# ---------------------------------------------------------------------------
# Shell channel: client -> server
# ---------------------------------------------------------------------------


class InitFrame(Frame):
    type: Literal["init"]
    project_path: str | None = None
    session_id: str | None = None
    has_session: bool = False
    provider: Provider = Provider.CLAUDE
    cols: int | None = Field(default=None, gt=0)
    rows: int | None = Field(default=None, gt=0)

    @field_validator("provider", mode="before")
    @classmethod
    def _normalise_provider(cls, value: Any) -> Any:
        return _provider_or_default(value)

    @property
    def resume_id(self) -> str | None:
        """Session id to resume, only when the client says one exists."""
        return self.session_id if self.has_session and self.session_id else None


class InputFrame(Frame):
    type: Literal["input"]
    data: str


class ResizeFrame(Frame):
    type: Literal["resize"]
    cols: int = Field(gt=0)
    rows: int = Field(gt=0)


ShellClientFrame = Annotated[InitFrame | InputFrame | ResizeFrame, Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Agent-chat channel: client -> server
# ---------------------------------------------------------------------------


class ChatOptions(Frame):
    """Options accompanying a chat command.  Unknown keys are kept."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    cwd: str | None = None
    project_path: str | None = None
    session_id: str | None = None
    resume: bool = False
    model: str | None = None
    permission_mode: str | None = None
    skip_permissions: bool = False

    @property
    def working_directory(self) -> str | None:
        return self.cwd or self.project_path


class ClaudeCommandFrame(Frame):
    type: Literal["claude-command"]
    command: str = ""
    options: ChatOptions = Field(default_factory=ChatOptions)


class CursorCommandFrame(Frame):
    type: Literal["cursor-command"]
    command: str = ""
    options: ChatOptions = Field(default_factory=ChatOptions)


class CursorResumeFrame(Frame):
    type: Literal["cursor-resume"]
    session_id: str
    options: ChatOptions = Field(default_factory=ChatOptions)


class AbortSessionFrame(Frame):
    type: Literal["abort-session"]
    session_id: str
    provider: Provider = Provider.CLAUDE

    @field_validator("provider", mode="before")
    @classmethod
    def _normalise_provider(cls, value: Any) -> Any:
        return _provider_or_default(value)


ChatClientFrame = Annotated[
    ClaudeCommandFrame | CursorCommandFrame | CursorResumeFrame | AbortSessionFrame,
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Server -> client
# ---------------------------------------------------------------------------


class OutputFrame(Frame):
    type: Literal["output"] = "output"
    data: str


class UrlOpenFrame(Frame):
    type: Literal["url_open"] = "url_open"
    url: str


class ErrorFrame(Frame):
    type: Literal["error"] = "error"
    error: str


class SessionAbortedFrame(Frame):
    type: Literal["session-aborted"] = "session-aborted"
    session_id: str
    provider: Provider
    success: bool


class SessionCreatedFrame(Frame):
    type: Literal["session-created"] = "session-created"
    session_id: str
    provider: Provider


class AgentStreamFrame(Frame):
    """One line of agent CLI output: ``<provider>-response`` or ``<provider>-output``."""

    type: str
    data: Any = None


class AgentErrorFrame(Frame):
    """Agent CLI stderr text: ``<provider>-error``."""

    type: str
    error: str


class AgentCompleteFrame(Frame):
    """Agent CLI run finished: ``<provider>-complete``."""

    type: str
    exit_code: int | None
    is_new_session: bool


class ProjectsUpdatedFrame(Frame):
    type: Literal["projects_updated"] = "projects_updated"
    projects: list[dict[str, Any]]
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    change_type: str
    changed_file: str | None = None


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------

_shell_adapter: TypeAdapter[ShellClientFrame] = TypeAdapter(ShellClientFrame)
_chat_adapter: TypeAdapter[ChatClientFrame] = TypeAdapter(ChatClientFrame)


def _describe(exc: ValidationError) -> tuple[str, str | None]:
    """Condense a pydantic error into one human-readable line and the frame type, if known."""
    first = exc.errors()[0]
    ctx = first.get("ctx") or {}
    match first["type"]:
        case "json_invalid" | "json_type" | "model_attributes_type" | "model_type":
            return "Malformed frame: not a JSON object", None
        case "union_tag_not_found":
            return "Malformed frame: missing 'type'", None
        case "union_tag_invalid":
            tag = str(ctx.get("tag", ""))
            return f"Unknown frame type '{tag}'", tag
    if not first["loc"]:
        return f"Malformed frame: {first['msg']}", None
    frame_type = str(first["loc"][0])
    field = ".".join(str(part) for part in first["loc"][1:]) or "frame"
    return f"Invalid '{frame_type}' frame: {field}: {first['msg']}", frame_type


def _decode(adapter: TypeAdapter[Any], raw: str | bytes) -> Any:
    try:
        return adapter.validate_json(raw)
    except ValidationError as exc:
        message, frame_type = _describe(exc)
        raise DecodeError(message, frame_type=frame_type) from exc


def decode_shell_frame(raw: str | bytes) -> InitFrame | InputFrame | ResizeFrame:
    """Decode a client frame received on the shell channel."""
    return _decode(_shell_adapter, raw)


def decode_chat_frame(
    raw: str | bytes,
) -> ClaudeCommandFrame | CursorCommandFrame | CursorResumeFrame | AbortSessionFrame:
    """Decode a client frame received on the agent-chat channel."""
    return _decode(_chat_adapter, raw)


def encode_frame(frame: Frame) -> str:
    """Serialise a server frame to its JSON wire form."""
    return frame.model_dump_json(by_alias=True)
