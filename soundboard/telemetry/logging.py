from __future__ import annotations

import logging
import sys
from collections.abc import Iterable
from typing import Any

import structlog

# Libraries that log every heartbeat or frame at INFO.
CHATTY_LOGGERS = ("discord", "discord.gateway", "discord.voice_state", "websockets", "uvicorn.access")

_configured = False


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
    process: str | None = None,
    quiet: Iterable[str] = CHATTY_LOGGERS,
) -> None:
    """Route structlog through stdlib logging on stdout.

    ``process`` is bound once so relay and listener lines can be told apart
    when both run in one terminal. Loggers named in ``quiet`` are held at
    WARNING unless the overall level is DEBUG.
    """
    global _configured
    if process is not None:
        structlog.contextvars.bind_contextvars(process=process)
    if _configured:
        return

    root_level = logging.getLevelName(level.upper())
    if not isinstance(root_level, int):
        root_level = logging.INFO
    logging.basicConfig(format="%(message)s", level=root_level, stream=sys.stdout)
    if root_level > logging.DEBUG:
        for name in quiet:
            logging.getLogger(name).setLevel(logging.WARNING)

    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str) -> Any:
    return structlog.get_logger(name)


__all__ = ["CHATTY_LOGGERS", "configure_logging", "get_logger"]
