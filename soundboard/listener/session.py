from __future__ import annotations

import asyncio
from datetime import datetime

from soundboard.channel.resilient import ResilientChannelClient
from soundboard.listener.supervisor import RecognitionSessionSupervisor, SessionStatus
from soundboard.orchestrator.events import ChannelState, Hit, HitMessage
from soundboard.telemetry.logging import get_logger


class ListenerSession:
    """Listening side of the soundboard: recognition supervisor plus the channel to the relay."""

    def __init__(self, supervisor: RecognitionSessionSupervisor, channel: ResilientChannelClient) -> None:
        self._supervisor = supervisor
        self._channel = channel
        self._sends: set[asyncio.Task[bool]] = set()
        self._logger = get_logger(__name__)
        self.transcript = "-"
        self.last_hit: str | None = None

        supervisor.on_transcript(self._on_transcript)
        supervisor.on_hit(self._on_hit)
        supervisor.on_status(self._on_status)
        channel.subscribe(self._on_channel_state)

    @property
    def supervisor(self) -> RecognitionSessionSupervisor:
        return self._supervisor

    @property
    def channel(self) -> ResilientChannelClient:
        return self._channel

    def start(self) -> None:
        self._logger.info("listener.start", relay=self._channel.url)
        self._channel.open()
        self._supervisor.start()

    async def stop(self) -> None:
        self._logger.info("listener.stop")
        self._supervisor.close()
        if self._sends:
            await asyncio.gather(*self._sends, return_exceptions=True)
        await self._channel.close()

    def _on_transcript(self, text: str) -> None:
        if text == self.transcript:
            return
        self.transcript = text
        self._logger.info("listener.transcript", text=text)

    def _on_hit(self, hit: Hit) -> None:
        stamp = datetime.fromtimestamp(hit.ts / 1000).strftime("%H:%M:%S")
        self.last_hit = f"{hit.keyword} @ {stamp}"
        self._logger.info("listener.hit", keyword=hit.keyword, text=hit.text, last_hit=self.last_hit)
        task = asyncio.get_running_loop().create_task(self._channel.send(HitMessage.from_hit(hit)))
        self._sends.add(task)
        task.add_done_callback(self._sends.discard)

    def _on_status(self, status: SessionStatus) -> None:
        self._logger.info("listener.recognition.status", status=status.value)

    def _on_channel_state(self, state: ChannelState) -> None:
        self._logger.info("listener.channel.state", state=state.value)


__all__ = ["ListenerSession"]
