from __future__ import annotations

import asyncio
from collections.abc import Callable

import discord

from soundboard.orchestrator.events import DisconnectReason, VoiceStatus
from soundboard.orchestrator.policies import VoicePolicies
from soundboard.telemetry.logging import get_logger
from soundboard.voice.connection import StateListener, VoiceStateChange


class DiscordVoiceHandle:
    """discord.py voice client wrapped in the connection lifecycle the manager expects.

    The client is opened with ``reconnect=False``; recovery is driven by the
    connection manager rather than by discord.py's internal retry loop.
    """

    def __init__(self, channel: discord.VoiceChannel, policies: VoicePolicies | None = None) -> None:
        self._channel = channel
        self._policies = policies or VoicePolicies()
        self._status = VoiceStatus.SIGNALLING
        self._listeners: list[StateListener] = []
        self._voice_client: discord.VoiceClient | None = None
        self._task: asyncio.Task[None] | None = None
        self._logger = get_logger(__name__)

    @property
    def destination_id(self) -> str:
        return str(self._channel.id)

    @property
    def channel(self) -> discord.VoiceChannel:
        return self._channel

    @property
    def status(self) -> VoiceStatus:
        return self._status

    @property
    def voice_client(self) -> discord.VoiceClient | None:
        return self._voice_client

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def start(self) -> None:
        self._spawn(self._connect())

    def rejoin(self) -> None:
        if self._status is VoiceStatus.DESTROYED:
            return
        self._set(VoiceStatus.SIGNALLING)
        self._spawn(self._connect())

    def destroy(self) -> None:
        if self._status is VoiceStatus.DESTROYED:
            return
        if self._task is not None and not self._task.done():
            self._task.cancel()
        client, self._voice_client = self._voice_client, None
        if client is not None:
            asyncio.get_running_loop().create_task(self._disconnect(client))
        self._set(VoiceStatus.DESTROYED)

    def on_voice_state(self, before: discord.VoiceState, after: discord.VoiceState) -> None:
        """Feed the bot's own voice state updates into the lifecycle."""
        if self._status is VoiceStatus.DESTROYED:
            return
        if after.channel is None:
            # Lost without a close code. Updates caused by our own reconnect are ignored.
            if self._status is not VoiceStatus.READY:
                return
            self._set(VoiceStatus.DISCONNECTED, reason=DisconnectReason.ENDPOINT_REMOVED)
        elif before.channel is not None and after.channel.id != before.channel.id:
            self._logger.info("voice.moved", from_channel=before.channel.id, to_channel=after.channel.id)
            if isinstance(after.channel, discord.VoiceChannel):
                self._channel = after.channel

    def _spawn(self, coro) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = asyncio.get_running_loop().create_task(coro)

    async def _connect(self) -> None:
        stale, self._voice_client = self._voice_client, None
        if stale is not None:
            await self._disconnect(stale)
        self._set(VoiceStatus.CONNECTING)
        try:
            client = await self._channel.connect(
                timeout=self._policies.ready_timeout_sec,
                reconnect=False,
                self_deaf=False,
            )
        except asyncio.CancelledError:
            raise
        except discord.errors.ConnectionClosed as exc:
            self._logger.warning("voice.connect.closed", code=exc.code, channel=self.destination_id)
            self._set(VoiceStatus.DISCONNECTED, reason=DisconnectReason.WEBSOCKET_CLOSE, close_code=exc.code)
            return
        except (asyncio.TimeoutError, discord.ClientException, OSError) as exc:
            self._logger.warning("voice.connect.failed", error=str(exc), channel=self.destination_id)
            self._set(VoiceStatus.DISCONNECTED, reason=DisconnectReason.ADAPTER_UNAVAILABLE)
            return
        if self._status is VoiceStatus.DESTROYED:
            await self._disconnect(client)
            return
        self._voice_client = client
        self._set(VoiceStatus.READY)

    async def _disconnect(self, client: discord.VoiceClient) -> None:
        try:
            await client.disconnect(force=True)
        except Exception as exc:
            self._logger.warning("voice.disconnect.failed", error=str(exc))

    def _set(
        self,
        status: VoiceStatus,
        reason: DisconnectReason | None = None,
        close_code: int | None = None,
    ) -> None:
        previous = self._status
        if previous is status:
            return
        self._status = status
        change = VoiceStateChange(previous=previous, current=status, reason=reason, close_code=close_code)
        self._logger.info(
            "voice.handle.state",
            previous=previous.value,
            current=status.value,
            reason=reason.value if reason else None,
            close_code=close_code,
        )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as exc:
                self._logger.error("voice.handle.listener_failed", error=str(exc))


def discord_handle_factory(policies: VoicePolicies | None = None) -> Callable[[discord.VoiceChannel], DiscordVoiceHandle]:
    def _factory(channel: discord.VoiceChannel) -> DiscordVoiceHandle:
        handle = DiscordVoiceHandle(channel, policies=policies)
        handle.start()
        return handle

    return _factory


__all__ = ["DiscordVoiceHandle", "discord_handle_factory"]
