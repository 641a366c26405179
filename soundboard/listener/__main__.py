from __future__ import annotations

import argparse
import asyncio
import sys

from soundboard.channel.resilient import ResilientChannelClient
from soundboard.config import ConfigError, load_board_config, load_settings
from soundboard.listener.matcher import build_triggers, display_keywords
from soundboard.listener.session import ListenerSession
from soundboard.listener.supervisor import RecognitionSessionSupervisor
from soundboard.listener.vosk_engine import load_model, vosk_engine_factory
from soundboard.relay.mappings import resolve_mappings
from soundboard.telemetry.logging import configure_logging, get_logger


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="soundboard.listener", description="Keyword listener for the soundboard relay")
    parser.add_argument("--relay-url", default=None, help="Relay WebSocket URL (default: RELAY_URL or ws://127.0.0.1:<port>)")
    parser.add_argument("--model", default=None, help="Path to a Vosk model directory (default: VOSK_MODEL_PATH)")
    parser.add_argument("--device", default=None, help="Input device index or name (default: AUDIO_INPUT_DEVICE)")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> None:
    settings = load_settings()
    logger = get_logger(__name__)
    board, board_path = load_board_config(settings.SOUNDBOARD_CONFIG)
    listener = settings.listener(board)

    triggers = build_triggers(resolve_mappings(board, board_path.parent))
    logger.info("listener.keywords", keywords=display_keywords(triggers), cooldown_ms=board.cooldown_ms, lang=board.lang)

    model = load_model(args.model or listener.vosk_model_path)
    device = args.device if args.device is not None else listener.input_device
    if isinstance(device, str) and device.isdigit():
        device = int(device)
    supervisor = RecognitionSessionSupervisor(
        triggers,
        board.cooldown_ms,
        vosk_engine_factory(
            model,
            sample_rate=listener.sample_rate,
            device=device,
            no_speech_timeout_sec=listener.no_speech_timeout_sec,
            max_utterance_sec=listener.max_utterance_sec,
        ),
    )
    channel = ResilientChannelClient(args.relay_url or listener.relay_url)
    session = ListenerSession(supervisor, channel)

    session.start()
    try:
        await asyncio.Event().wait()
    finally:
        await session.stop()


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings()
    configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON, process="listener")
    logger = get_logger(__name__)
    try:
        asyncio.run(run(args))
    except KeyboardInterrupt:
        logger.info("listener.interrupted")
    except (ConfigError, ValueError) as exc:
        logger.error("listener.config.invalid", error=str(exc))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
