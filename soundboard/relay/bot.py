from __future__ import annotations

import discord
from discord import app_commands

from soundboard.config import DiscordSettings
from soundboard.relay.hit_relay import HitRelay
from soundboard.telemetry.logging import get_logger
from soundboard.voice.connection import VoiceConnectionManager, VoiceJoinError
from soundboard.voice.discord_handle import DiscordVoiceHandle

COMMANDS = {
    "join": "Join the voice channel you are in",
    "leave": "Leave the current voice channel",
    "testplay": "Play the configured sound once",
}


class SoundboardBot(discord.Client):
    """Discord side of the relay: guild slash commands and voice state tracking."""

    def __init__(self, settings: DiscordSettings, voice: VoiceConnectionManager, relay: HitRelay) -> None:
        intents = discord.Intents.default()
        intents.voice_states = True
        super().__init__(intents=intents, application_id=int(settings.app_id))
        self._settings = settings
        self._voice = voice
        self._relay = relay
        self._guild = discord.Object(id=int(settings.guild_id))
        self.tree = app_commands.CommandTree(self)
        self._logger = get_logger(__name__)
        self._install_commands()

    async def setup_hook(self) -> None:
        commands = await self.tree.sync(guild=self._guild)
        self._logger.info("discord.commands.registered", guild_id=self._settings.guild_id, count=len(commands))

    async def on_ready(self) -> None:
        self._logger.info(
            "discord.ready",
            user=str(self.user) if self.user else None,
            keywords=self._relay.mappings.keywords(),
        )

    async def on_voice_state_update(
        self,
        member: discord.Member,
        before: discord.VoiceState,
        after: discord.VoiceState,
    ) -> None:
        if self.user is None or member.id != self.user.id:
            return
        handle = self._voice.handle
        if isinstance(handle, DiscordVoiceHandle):
            handle.on_voice_state(before, after)

    def _install_commands(self) -> None:
        @self.tree.command(name="join", description=COMMANDS["join"], guild=self._guild)
        async def join(interaction: discord.Interaction) -> None:
            await self.handle_join(interaction)

        @self.tree.command(name="leave", description=COMMANDS["leave"], guild=self._guild)
        async def leave(interaction: discord.Interaction) -> None:
            await self.handle_leave(interaction)

        @self.tree.command(name="testplay", description=COMMANDS["testplay"], guild=self._guild)
        async def testplay(interaction: discord.Interaction) -> None:
            await self.handle_testplay(interaction)

    async def handle_join(self, interaction: discord.Interaction) -> None:
        self._logger.info("discord.command", command="join")
        channel = _member_voice_channel(interaction)
        if channel is None:
            await interaction.response.send_message("Join a voice channel first.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            await self._voice.join(channel)
        except VoiceJoinError as exc:
            self._logger.error("discord.join.failed", error=str(exc))
            await interaction.followup.send("Failed to join the voice channel.", ephemeral=True)
            return
        await interaction.followup.send(f"Joined {channel.name}", ephemeral=True)

    async def handle_leave(self, interaction: discord.Interaction) -> None:
        self._logger.info("discord.command", command="leave")
        if not self._voice.leave():
            await interaction.response.send_message("Not in a voice channel yet.", ephemeral=True)
            return
        await interaction.response.send_message("Left the voice channel.", ephemeral=True)

    async def handle_testplay(self, interaction: discord.Interaction) -> None:
        self._logger.info("discord.command", command="testplay")
        channel = _member_voice_channel(interaction)
        if channel is None:
            await interaction.response.send_message("Join a voice channel first.", ephemeral=True)
            return
        await interaction.response.defer(ephemeral=True, thinking=True)
        try:
            await self._voice.join(channel)
        except VoiceJoinError as exc:
            self._logger.error("discord.testplay.failed", error=str(exc))
            await interaction.followup.send("Playback failed.", ephemeral=True)
            return
        if self._relay.test_play() is None:
            await interaction.followup.send("The configured sound file could not be read.", ephemeral=True)
            return
        await interaction.followup.send("Playing the sound.", ephemeral=True)


def _member_voice_channel(interaction: discord.Interaction) -> discord.VoiceChannel | None:
    member = interaction.user
    if not isinstance(member, discord.Member) or member.voice is None:
        return None
    channel = member.voice.channel
    return channel if isinstance(channel, discord.VoiceChannel) else None


async def register_commands(bot: SoundboardBot, token: str) -> None:
    """Log in once so ``setup_hook`` syncs the guild commands, then disconnect."""
    async with bot:
        await bot.login(token)


__all__ = ["SoundboardBot", "register_commands", "COMMANDS"]
