from __future__ import annotations

from typing import Protocol

from soundboard.audio.playback import PlaybackQueue
from soundboard.channel.codec import MalformedMessage, MissingKeyword, UnknownMessageType, decode_message
from soundboard.orchestrator.clock import CLOCK, Clock
from soundboard.orchestrator.events import HitMessage, PlaybackItem, clamp_volume
from soundboard.orchestrator.policies import CooldownGate
from soundboard.relay.mappings import MappingTable
from soundboard.telemetry.logging import get_logger


class VoiceReadiness(Protocol):
    def is_ready(self) -> bool: ...


class HitRelay:
    """Turns hit records from the channel into queued playback.

    The cooldown is enforced here independently of the listener's own gate, and
    the window starts as soon as a hit is accepted, even if it is then dropped
    because no voice destination is ready.
    """

    def __init__(
        self,
        mappings: MappingTable,
        cooldown_ms: float,
        voice: VoiceReadiness,
        queue: PlaybackQueue,
        clock: Clock | None = None,
    ) -> None:
        self._mappings = mappings
        self._voice = voice
        self._queue = queue
        self._clock = clock or CLOCK
        self._gate = CooldownGate(cooldown_ms)
        self._logger = get_logger(__name__)

    @property
    def gate(self) -> CooldownGate:
        return self._gate

    @property
    def mappings(self) -> MappingTable:
        return self._mappings

    def handle_raw(self, raw: str | bytes) -> PlaybackItem | None:
        try:
            message = decode_message(raw)
        except UnknownMessageType as exc:
            self._logger.warning("relay.message.unknown_type", message_type=exc.message_type)
            return None
        except MissingKeyword:
            self._logger.warning("relay.message.missing_keyword")
            return None
        except MalformedMessage as exc:
            self._logger.error("relay.message.malformed", error=str(exc))
            return None
        return self.handle(message)

    def handle(self, message: HitMessage) -> PlaybackItem | None:
        now = self._clock.monotonic()
        if not self._gate.try_acquire(now):
            self._logger.debug(
                "relay.hit.cooldown",
                keyword=message.keyword,
                remaining_ms=round(self._gate.remaining_ms(now)),
            )
            return None

        if not self._voice.is_ready():
            self._logger.warning("relay.hit.no_voice", keyword=message.keyword)
            return None

        mapping = self._mappings.lookup(message.keyword)
        volume = clamp_volume(message.volume if message.volume is not None else mapping.volume)
        item = PlaybackItem(file_path=mapping.file_path, volume=volume, reason=f"hit:{message.keyword}")
        self._logger.info(
            "relay.hit.accepted",
            keyword=message.keyword,
            text=message.text,
            file=str(mapping.file_path),
            volume=volume,
        )
        if not self._queue.enqueue(item):
            return None
        return item

    def test_play(self) -> PlaybackItem | None:
        """Queue the first mapping at its configured volume, bypassing the cooldown."""
        mapping = self._mappings.fallback
        item = PlaybackItem(file_path=mapping.file_path, volume=clamp_volume(mapping.volume), reason="testplay")
        self._logger.info("relay.testplay", file=str(mapping.file_path), volume=item.volume)
        if not self._queue.enqueue(item):
            return None
        return item


__all__ = ["HitRelay", "VoiceReadiness"]
