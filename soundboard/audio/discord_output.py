from __future__ import annotations

import asyncio

import discord

from soundboard.audio.playback import FinishedCallback
from soundboard.orchestrator.events import PlaybackItem
from soundboard.telemetry.logging import get_logger


class DiscordAudioOutput:
    """Renders playback items through the bound discord.py voice client via ffmpeg."""

    def __init__(self, ffmpeg_path: str = "ffmpeg") -> None:
        self._ffmpeg_path = ffmpeg_path
        self._voice_client: discord.VoiceClient | None = None
        self._logger = get_logger(__name__)

    def bind(self, voice_client: discord.VoiceClient | None) -> None:
        self._voice_client = voice_client
        self._logger.info("audio.output.bound", connected=voice_client is not None)

    def is_idle(self) -> bool:
        client = self._voice_client
        if client is None:
            return True
        return not (client.is_playing() or client.is_paused())

    def play(self, item: PlaybackItem, on_finished: FinishedCallback) -> None:
        client = self._voice_client
        if client is None or not client.is_connected():
            raise RuntimeError("No voice connection to play into")

        loop = asyncio.get_running_loop()
        source = discord.PCMVolumeTransformer(
            discord.FFmpegPCMAudio(str(item.file_path), executable=self._ffmpeg_path),
            volume=item.volume,
        )

        def _after(error: Exception | None) -> None:
            # discord.py calls this from its player thread.
            loop.call_soon_threadsafe(on_finished, error)

        client.play(source, after=_after)
        self._logger.debug("audio.output.play", file=str(item.file_path), volume=item.volume)


__all__ = ["DiscordAudioOutput"]
