"""CLI tests: client commands with the HTTP layer mocked out."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner

from shellrelay.cli import main


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def test_sessions_lists_entries(runner: CliRunner) -> None:
    entries = [
        {
            "session_key": "abc",
            "provider": "cursor",
            "pid": 4242,
            "state": "connected",
            "exited": False,
            "exit_code": None,
            "project_path": "/work/app",
        },
        {
            "session_key": "project:/work/old",
            "provider": "claude",
            "pid": 17,
            "state": "disconnected",
            "exited": True,
            "exit_code": 1,
            "project_path": "/work/old",
        },
    ]
    with patch("shellrelay.cli._request", MagicMock(return_value=entries)) as request:
        result = runner.invoke(main, ["sessions", "--token", "t"])

    assert result.exit_code == 0, result.output
    request.assert_called_once_with("http://127.0.0.1:3001", "t", "GET", "/api/shell/sessions")
    assert "abc\tcursor\tpid=4242\tconnected\t/work/app" in result.output
    assert "exited(1)" in result.output


def test_sessions_empty(runner: CliRunner) -> None:
    with patch("shellrelay.cli._request", MagicMock(return_value=[])):
        result = runner.invoke(main, ["sessions", "--token", "t"])
    assert "No sessions." in result.output


def test_restart_sends_resolved_path(runner: CliRunner, tmp_path) -> None:
    request = MagicMock(return_value={"removed": ["project:/x"]})
    with patch("shellrelay.cli._request", request):
        result = runner.invoke(main, ["restart", str(tmp_path), "--token", "t"])

    assert result.exit_code == 0, result.output
    _, _, method, path = request.call_args.args
    assert (method, path) == ("POST", "/api/shell/restart")
    assert request.call_args.kwargs["json"] == {"projectPath": str(tmp_path.resolve())}
    assert "Evicted 1 session(s)." in result.output


def test_abort_quotes_session_key(runner: CliRunner) -> None:
    request = MagicMock(return_value={"session_key": "project:/w", "success": True})
    with patch("shellrelay.cli._request", request):
        result = runner.invoke(main, ["abort", "project:/w", "--url", "http://h:1", "--token", "t"])

    assert result.exit_code == 0, result.output
    request.assert_called_once_with("http://h:1", "t", "POST", "/api/shell/sessions/project%3A%2Fw/abort")


def test_client_requires_token(runner: CliRunner, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RELAY_AUTH_TOKEN")
    result = runner.invoke(main, ["sessions"])
    assert result.exit_code == 2
    assert "No token given" in result.output
