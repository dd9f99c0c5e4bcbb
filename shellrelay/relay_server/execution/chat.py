"""Agent-chat dispatcher for the ``/ws`` channel.

Each ``claude-command`` / ``cursor-command`` / ``cursor-resume`` frame starts
a non-interactive agent run with piped stdio.  The CLI's stream-json stdout
is forwarded line by line:

- a JSON line      -> ``<provider>-response {data: <parsed object>}``
- any other line   -> ``<provider>-output {data: <text>}``
- stderr text      -> ``<provider>-error {error}``
- process exit     -> ``<provider>-complete {exitCode, isNewSession}``

Runs are tracked by session id in the dispatcher's own run table.  A new
conversation starts under a provisional ``chat-<hex>`` key and is re-keyed
(``session-created``) as soon as the CLI reports its session id.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
import uuid
from dataclasses import dataclass, field

from loguru import logger

from shellrelay.relay_server.connections import Connection
from shellrelay.relay_server.execution.process import PipeProcess
from shellrelay.relay_server.execution.supervisor import ProcessSupervisor, SpawnError
from shellrelay.relay_server.models.enums import Provider
from shellrelay.relay_server.models.frames import (
    AbortSessionFrame,
    AgentCompleteFrame,
    AgentErrorFrame,
    AgentStreamFrame,
    ChatOptions,
    ClaudeCommandFrame,
    CursorCommandFrame,
    CursorResumeFrame,
    DecodeError,
    ErrorFrame,
    SessionAbortedFrame,
    SessionCreatedFrame,
    decode_chat_frame,
)
from shellrelay.relay_server.models.session import FALLBACK_PREFIX
from shellrelay.relay_server.registry import SessionRegistry

PROVISIONAL_PREFIX = "chat-"


@dataclass
class ChatRun:
    """One in-flight agent CLI run."""

    session_key: str
    provider: Provider
    process: PipeProcess
    connection: Connection
    is_new_session: bool
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    @property
    def provisional(self) -> bool:
        return self.session_key.startswith(PROVISIONAL_PREFIX)


class ChatDispatcher:
    """Starts, streams and aborts agent-chat runs."""

    def __init__(self, supervisor: ProcessSupervisor, registry: SessionRegistry) -> None:
        self._supervisor = supervisor
        self._registry = registry
        self._runs: dict[str, ChatRun] = {}

    @property
    def runs(self) -> dict[str, ChatRun]:
        return dict(self._runs)

    # -- Inbound ---------------------------------------------------------------

    async def handle_message(self, connection: Connection, raw: str | bytes) -> None:
        """Decode and act on one client frame.  Failures become ``error`` frames."""
        try:
            frame = decode_chat_frame(raw)
        except DecodeError as exc:
            logger.debug("Chat {}: {}", connection, exc)
            await connection.send_frame(ErrorFrame(error=str(exc)))
            return

        try:
            match frame:
                case ClaudeCommandFrame():
                    await self.start_run(
                        connection,
                        Provider.CLAUDE,
                        frame.command,
                        frame.options,
                        resume_id=_resume_id(frame.options),
                    )
                case CursorCommandFrame():
                    await self.start_run(
                        connection,
                        Provider.CURSOR,
                        frame.command,
                        frame.options,
                        resume_id=_resume_id(frame.options),
                    )
                case CursorResumeFrame():
                    await self.start_run(connection, Provider.CURSOR, "", frame.options, resume_id=frame.session_id)
                case AbortSessionFrame():
                    success = await self.abort(frame.session_id)
                    await connection.send_frame(
                        SessionAbortedFrame(session_id=frame.session_id, provider=frame.provider, success=success)
                    )
        except Exception as exc:
            logger.exception("Chat {}: '{}' frame failed", connection, frame.type)
            await connection.send_frame(ErrorFrame(error=str(exc) or type(exc).__name__))

    # -- Runs ------------------------------------------------------------------

    async def start_run(
        self,
        connection: Connection,
        provider: Provider,
        command: str,
        options: ChatOptions,
        *,
        resume_id: str | None = None,
    ) -> ChatRun | None:
        """Spawn an agent run and start streaming it to *connection*.

        Returns ``None`` (after sending an ``error`` frame) if the run could
        not be started.
        """
        session_key = resume_id or f"{PROVISIONAL_PREFIX}{uuid.uuid4().hex}"
        existing = self._runs.get(session_key)
        if existing is not None and not existing.process.exited:
            await connection.send_frame(ErrorFrame(error=f"Session {session_key} already has a run in progress"))
            return None

        argv = self._supervisor.commands.chat_argv(provider, command, options, resume_id=resume_id)
        cwd = options.working_directory or os.getcwd()
        try:
            process = await self._supervisor.spawn_pipe(provider, argv, cwd, session_key)
        except SpawnError as exc:
            logger.warning("Chat {}: cannot start {} run: {}", connection, provider, exc)
            await connection.send_frame(ErrorFrame(error=str(exc)))
            return None

        # The prompt travels in argv; an open stdin makes some CLIs wait for more.
        process.close_stdin()
        run = ChatRun(
            session_key=session_key,
            provider=provider,
            process=process,
            connection=connection,
            is_new_session=resume_id is None,
        )
        self._runs[session_key] = run
        run.task = asyncio.create_task(self._stream(run))
        logger.info("Chat {}: {} run started (key={}, resume={})", connection, provider, session_key, resume_id)
        return run

    async def abort(self, session_id: str) -> bool:
        """Kill the chat run and registry sessions for *session_id*.

        Terminal sessions are aborted per project: the fallback key and any
        resumed-session key of the same directory go together, whichever
        one is named.  Returns ``True`` if anything was killed.
        """
        killed = False
        run = self._runs.get(session_id)
        if run is not None and not run.process.exited:
            self._supervisor.kill(run.process)
            killed = True

        if session_id.startswith(FALLBACK_PREFIX):
            removed = await self._registry.remove_scoped(session_id[len(FALLBACK_PREFIX) :])
            killed = bool(removed) or killed
        elif await self._registry.abort(session_id):
            killed = True

        logger.info("Abort {}: success={}", session_id, killed)
        return killed

    async def shutdown(self) -> None:
        """Kill every run and wait for the streaming tasks to finish."""
        runs = list(self._runs.values())
        for run in runs:
            self._supervisor.kill(run.process)
        tasks = [run.task for run in runs if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- Streaming -------------------------------------------------------------

    async def _stream(self, run: ChatRun) -> None:
        provider = run.provider
        stderr_task = asyncio.create_task(self._stream_stderr(run))
        try:
            async for line in run.process.iter_stdout():
                if not line.strip():
                    continue
                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    await run.connection.send_frame(AgentStreamFrame(type=f"{provider}-output", data=line))
                    continue
                if run.provisional and isinstance(data, dict) and isinstance(data.get("session_id"), str):
                    await self._adopt_session_id(run, data["session_id"])
                await run.connection.send_frame(AgentStreamFrame(type=f"{provider}-response", data=data))

            await stderr_task
            exit_code = await run.process.wait()
            await run.connection.send_frame(
                AgentCompleteFrame(type=f"{provider}-complete", exit_code=exit_code, is_new_session=run.is_new_session)
            )
            logger.info("Chat {}: {} run {} finished (code={})", run.connection, provider, run.session_key, exit_code)
        finally:
            if not stderr_task.done():
                stderr_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await stderr_task
            if self._runs.get(run.session_key) is run:
                del self._runs[run.session_key]

    async def _stream_stderr(self, run: ChatRun) -> None:
        async for text in run.process.iter_stderr():
            if text.strip():
                await run.connection.send_frame(AgentErrorFrame(type=f"{run.provider}-error", error=text))

    async def _adopt_session_id(self, run: ChatRun, session_id: str) -> None:
        if self._runs.get(run.session_key) is run:
            del self._runs[run.session_key]
        logger.debug("Chat run {} is session {}", run.session_key, session_id)
        run.session_key = session_id
        run.process.session_key = session_id
        self._runs[session_id] = run
        await run.connection.send_frame(SessionCreatedFrame(session_id=session_id, provider=run.provider))


def _resume_id(options: ChatOptions) -> str | None:
    return options.session_id if options.resume and options.session_id else None
