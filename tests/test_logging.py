from __future__ import annotations

import logging

import pytest
import structlog

from soundboard.telemetry import logging as telemetry


@pytest.fixture
def fresh_logging(monkeypatch):
    monkeypatch.setattr(telemetry, "_configured", False)
    levels = {name: logging.getLogger(name).level for name in ("discord", "websockets")}
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    for name, level in levels.items():
        logging.getLogger(name).setLevel(level)


def test_process_role_is_bound(fresh_logging) -> None:
    telemetry.configure_logging("INFO", process="relay")
    assert structlog.contextvars.get_contextvars()["process"] == "relay"


def test_chatty_libraries_are_held_at_warning(fresh_logging) -> None:
    telemetry.configure_logging("info", json_output=False, quiet=("discord", "websockets"))
    assert logging.getLogger("discord").level == logging.WARNING
    assert logging.getLogger("websockets").level == logging.WARNING


def test_debug_keeps_library_loggers(fresh_logging) -> None:
    logging.getLogger("discord").setLevel(logging.NOTSET)
    telemetry.configure_logging("DEBUG", quiet=("discord",))
    assert logging.getLogger("discord").level == logging.NOTSET
