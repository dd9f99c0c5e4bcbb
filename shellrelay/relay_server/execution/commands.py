"""Provider-aware command construction.

Terminal sessions run through a wrapping shell so that ``cd`` and the
resume-or-fresh fallback work the same way a user would type them:

- POSIX: ``bash -c "cd '<dir>' && claude --resume <id> || claude"``
- Windows: ``powershell.exe -Command "Set-Location -Path '<dir>'; ..."``

The plain ``shell`` provider skips the wrapper and starts the login shell
directly.  Agent-chat runs are non-interactive and are built as a direct argv
(no wrapping shell, no quoting concerns).
"""

from __future__ import annotations

import shlex
import sys
from dataclasses import dataclass

from shellrelay.relay_server.models.enums import Provider
from shellrelay.relay_server.models.frames import ChatOptions


def _is_windows(platform: str) -> bool:
    return platform.startswith("win")


def _ps_quote(value: str) -> str:
    """Single-quote a string for PowerShell (embedded quotes are doubled)."""
    return "'" + value.replace("'", "''") + "'"


@dataclass(frozen=True)
class CommandBuilder:
    """Builds argv lists for each provider.

    Binary names come from settings so that deployments can point at an
    absolute path or a wrapper script.
    """

    claude_bin: str = "claude"
    cursor_bin: str = "cursor-agent"
    shell: str = "/bin/bash"

    def agent_binary(self, provider: Provider) -> str | None:
        """External binary a provider needs, or ``None`` for the plain shell."""
        match provider:
            case Provider.CLAUDE:
                return self.claude_bin
            case Provider.CURSOR:
                return self.cursor_bin
        return None

    # -- Terminal sessions -----------------------------------------------------

    def terminal_script(
        self,
        provider: Provider,
        project_path: str,
        *,
        resume_id: str | None = None,
        platform: str = sys.platform,
    ) -> str:
        """Return the script line run inside the wrapping shell for an agent provider."""
        if not provider.is_agent:
            msg = "The shell provider has no agent script"
            raise ValueError(msg)

        if _is_windows(platform):
            prefix = f"Set-Location -Path {_ps_quote(project_path)}; "
            if provider is Provider.CURSOR:
                binary = self.cursor_bin
                resume = f" --resume={_ps_quote(resume_id)}" if resume_id else ""
                return f"{prefix}{binary}{resume}"
            binary = self.claude_bin
            if resume_id:
                return f"{prefix}{binary} --resume {_ps_quote(resume_id)}; if ($LASTEXITCODE -ne 0) {{ {binary} }}"
            return f"{prefix}{binary}"

        prefix = f"cd {shlex.quote(project_path)} && "
        if provider is Provider.CURSOR:
            binary = shlex.quote(self.cursor_bin)
            resume = f" --resume={shlex.quote(resume_id)}" if resume_id else ""
            return f"{prefix}{binary}{resume}"
        binary = shlex.quote(self.claude_bin)
        if resume_id:
            return f"{prefix}{binary} --resume {shlex.quote(resume_id)} || {binary}"
        return f"{prefix}{binary}"

    def terminal_argv(
        self,
        provider: Provider,
        project_path: str,
        *,
        resume_id: str | None = None,
        platform: str = sys.platform,
    ) -> list[str]:
        """Return the argv that starts an interactive terminal session."""
        windows = _is_windows(platform)
        if provider is Provider.SHELL:
            return ["powershell.exe", "-NoLogo"] if windows else [self.shell, "-l"]

        script = self.terminal_script(provider, project_path, resume_id=resume_id, platform=platform)
        if windows:
            return ["powershell.exe", "-Command", script]
        return ["bash", "-c", script]

    # -- Agent-chat runs -------------------------------------------------------

    def chat_argv(
        self,
        provider: Provider,
        command: str,
        options: ChatOptions,
        *,
        resume_id: str | None = None,
    ) -> list[str]:
        """Return the argv for a non-interactive agent run streaming JSON lines."""
        match provider:
            case Provider.CLAUDE:
                argv = [self.claude_bin, "--print"]
                if command.strip():
                    argv.append(command)
                argv += ["--output-format", "stream-json", "--verbose"]
                if resume_id:
                    argv += ["--resume", resume_id]
                if options.model:
                    argv += ["--model", options.model]
                if options.skip_permissions:
                    argv.append("--dangerously-skip-permissions")
                elif options.permission_mode and options.permission_mode != "default":
                    argv += ["--permission-mode", options.permission_mode]
                return argv
            case Provider.CURSOR:
                argv = [self.cursor_bin]
                if resume_id:
                    argv.append(f"--resume={resume_id}")
                argv += ["--print", "--output-format", "stream-json"]
                if options.model and not resume_id:
                    argv += ["--model", options.model]
                if options.skip_permissions:
                    argv.append("-f")
                if command.strip():
                    argv.append(command)
                return argv
        msg = f"Provider '{provider}' does not support chat commands"
        raise ValueError(msg)
