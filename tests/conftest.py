"""Shared test fixtures.

Every test runs against a private settings instance: the auth token is
fixed, the projects root points into ``tmp_path`` and the directory watcher
is off unless a test turns it on.
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from shellrelay.relay_server.settings import get_settings

TEST_TOKEN = "test-token"


@pytest.fixture(autouse=True)
def relay_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> Iterator[None]:
    monkeypatch.setenv("RELAY_AUTH_TOKEN", TEST_TOKEN)
    monkeypatch.setenv("RELAY_PROJECTS_ROOT", str(tmp_path / "projects"))
    monkeypatch.setenv("RELAY_WATCH_PROJECTS", "false")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()
