from __future__ import annotations

import json
import logging
from collections.abc import Iterator

import pytest
from loguru import logger

from shellrelay.relay_server.log import session_logger, setup_logging


@pytest.fixture
def records() -> Iterator[list]:
    setup_logging("DEBUG")
    captured: list = []
    sink_id = logger.add(captured.append, level="DEBUG", format="{extra[session]} {message}")
    yield captured
    logger.remove(sink_id)


def test_stdlib_records_reach_loguru(records) -> None:
    logging.getLogger("some.library").warning("disk %s", "full")

    assert any(msg.record["message"] == "disk full" for msg in records)


def test_quiet_loggers_drop_info(records) -> None:
    logging.getLogger("uvicorn.access").info("GET / 200")

    assert not any("GET /" in msg.record["message"] for msg in records)


def test_session_logger_binds_key(records) -> None:
    session_logger("project:/work").info("bound")
    logger.info("unbound")

    assert [str(msg).strip() for msg in records[-2:]] == ["project:/work bound", "- unbound"]


def test_json_output(capsys) -> None:
    setup_logging("INFO", json_output=True)
    try:
        session_logger("abc").info("hello")
        line = capsys.readouterr().err.strip().splitlines()[-1]
    finally:
        # The sink holds the captured stderr; drop it before capture ends.
        logger.remove()

    assert json.loads(line)["record"]["extra"]["session"] == "abc"
