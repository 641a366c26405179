from __future__ import annotations

import argparse
import asyncio
import sys

import uvicorn

from soundboard.config import ConfigError, load_board_config
from soundboard.main import app, build_runtime, logger, settings
from soundboard.relay.bot import register_commands


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="soundboard", description="Keyword soundboard relay")
    parser.add_argument("--register", action="store_true", help="Register slash commands and exit")
    parser.add_argument("--host", default=None, help="Bind address (default: HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: PORT > WS_PORT > wsPort > 3210)")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        if args.register:
            runtime = build_runtime()
            asyncio.run(register_commands(runtime.bot, settings.discord.token))
            logger.info("discord.register_only.done")
            return 0
        board, _ = load_board_config(settings.SOUNDBOARD_CONFIG)
    except ConfigError as exc:
        logger.error("relay.config.invalid", error=str(exc))
        return 1

    port = args.port or settings.ws_port(board)
    host = args.host or settings.HOST
    logger.info("relay.listen", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
