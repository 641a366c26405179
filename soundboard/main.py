from __future__ import annotations

import asyncio
from pathlib import Path

import discord
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles

from soundboard.audio.discord_output import DiscordAudioOutput
from soundboard.audio.playback import PlaybackQueue
from soundboard.channel.resilient import ResilientChannelServer
from soundboard.config import AppSettings, BoardConfig, load_board_config, load_settings
from soundboard.orchestrator.events import VoiceStatus
from soundboard.relay.bot import SoundboardBot
from soundboard.relay.hit_relay import HitRelay
from soundboard.relay.mappings import MappingTable, resolve_mappings
from soundboard.telemetry.logging import configure_logging, get_logger
from soundboard.voice.connection import VoiceConnectionManager
from soundboard.voice.discord_handle import DiscordVoiceHandle, discord_handle_factory

settings = load_settings()
configure_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON, process="relay")
logger = get_logger(__name__)


class RelayRuntime:
    """Everything the relay process owns, wired together once at startup."""

    def __init__(
        self,
        settings: AppSettings,
        board: BoardConfig,
        board_path: Path,
        mappings: MappingTable,
        output: DiscordAudioOutput,
        queue: PlaybackQueue,
        voice: VoiceConnectionManager,
        relay: HitRelay,
        bot: SoundboardBot,
        channel: ResilientChannelServer | None = None,
    ) -> None:
        self.settings = settings
        self.board = board
        self.board_path = board_path
        self.mappings = mappings
        self.output = output
        self.queue = queue
        self.voice = voice
        self.relay = relay
        self.bot = bot
        self.channel = channel
        self._bot_task: asyncio.Task[None] | None = None
        self._logger = get_logger(__name__)
        self.voice.subscribe(self._on_voice_status)

    def start(self) -> None:
        self._bot_task = asyncio.get_running_loop().create_task(self._run_bot())

    async def _run_bot(self) -> None:
        self._logger.info("discord.login")
        try:
            await self.bot.start(self.settings.discord.token)
        except asyncio.CancelledError:
            raise
        except discord.LoginFailure as exc:
            self._logger.error("discord.login.failed", error=str(exc))
        except Exception as exc:
            self._logger.error("discord.client.failed", error=str(exc), exception_type=type(exc).__name__)

    def _on_voice_status(self, status: VoiceStatus) -> None:
        if status is VoiceStatus.READY:
            handle = self.voice.handle
            if isinstance(handle, DiscordVoiceHandle):
                self.output.bind(handle.voice_client)
            self.queue.start_if_idle()
        elif status is VoiceStatus.DESTROYED:
            self.output.bind(None)
            dropped = self.queue.clear()
            if dropped:
                self._logger.info("playback.cleared", dropped=dropped)

    def health(self) -> dict[str, object]:
        report: dict[str, object] = {
            "status": "ok",
            "voice": self.voice.status.value,
            "queue_length": len(self.queue),
            "playing": self.queue.current is not None,
        }
        if self.channel is not None:
            report["channel"] = self.channel.state.value
            report["clients"] = self.channel.client_count
        return report

    async def shutdown(self) -> None:
        self._logger.info("runtime.shutdown.start")
        await self.voice.close()
        if not self.bot.is_closed():
            await self.bot.close()
        if self._bot_task is not None:
            self._bot_task.cancel()
            await asyncio.gather(self._bot_task, return_exceptions=True)
        self._logger.info("runtime.shutdown.complete")


def build_runtime(
    app_settings: AppSettings | None = None,
    channel: ResilientChannelServer | None = None,
) -> RelayRuntime:
    app_settings = app_settings or settings
    discord_settings = app_settings.discord
    board, board_path = load_board_config(app_settings.SOUNDBOARD_CONFIG)
    mappings = MappingTable(resolve_mappings(board, board_path.parent))
    logger.info(
        "relay.bootstrap",
        config=str(board_path),
        cooldown_ms=board.cooldown_ms,
        mappings_count=len(mappings),
        ws_port=app_settings.ws_port(board),
    )
    for entry in mappings.describe():
        if entry["exists"]:
            logger.info("relay.mapping", **entry)
        else:
            logger.warning("relay.mapping.file_missing", **entry)

    output = DiscordAudioOutput(ffmpeg_path=app_settings.FFMPEG_PATH)
    queue = PlaybackQueue(output)
    voice = VoiceConnectionManager(discord_handle_factory())
    relay = HitRelay(mappings, board.cooldown_ms, voice, queue)
    bot = SoundboardBot(discord_settings, voice, relay)
    return RelayRuntime(app_settings, board, board_path, mappings, output, queue, voice, relay, bot, channel)


def _deliver_record(raw: str | bytes) -> None:
    runtime: RelayRuntime | None = getattr(app.state, "runtime", None)
    if runtime is None:
        logger.warning("relay.record.not_ready")
        return
    runtime.relay.handle_raw(raw)


app = FastAPI(title="Soundboard Relay")
channel_server = ResilientChannelServer(_deliver_record)
app.include_router(channel_server.router)


@app.on_event("startup")
async def startup_event() -> None:
    runtime = build_runtime(channel=channel_server)
    runtime.start()
    app.state.runtime = runtime


@app.on_event("shutdown")
async def shutdown_event() -> None:
    runtime = getattr(app.state, "runtime", None)
    if runtime:
        await runtime.shutdown()


@app.get("/health")
async def health() -> dict[str, object]:
    runtime: RelayRuntime | None = getattr(app.state, "runtime", None)
    if runtime is None:
        return {"status": "starting"}
    return runtime.health()


web_dist = settings.web_dist_dir()
if web_dist.is_dir():
    app.mount("/", StaticFiles(directory=web_dist, html=True), name="web")
else:

    @app.get("/", response_class=PlainTextResponse)
    async def index() -> str:
        return "OK"


__all__ = ["app", "RelayRuntime", "build_runtime", "channel_server"]
