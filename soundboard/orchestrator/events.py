from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

MIN_VOLUME = 0.0
MAX_VOLUME = 2.0
DEFAULT_VOLUME = 1.0


def clamp_volume(raw: Any) -> float:
    """Clamp to [0, 2]; anything that is not a real number becomes 1.0."""
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw != raw:
        return DEFAULT_VOLUME
    return min(max(float(raw), MIN_VOLUME), MAX_VOLUME)


@dataclass(slots=True, frozen=True)
class Trigger:
    keyword: str
    normalized_keyword: str
    volume: float


@dataclass(slots=True, frozen=True)
class TranscriptEvent:
    text: str
    confidence: float
    is_final: bool


@dataclass(slots=True, frozen=True)
class Hit:
    """A keyword detection accepted by the listener's own cooldown gate."""

    keyword: str
    text: str
    volume: float
    ts: int


@dataclass(slots=True, frozen=True)
class HitMessage:
    keyword: str
    ts: int
    volume: float | None = None
    text: str | None = None
    type: str = "hit"

    @classmethod
    def from_hit(cls, hit: Hit) -> "HitMessage":
        return cls(keyword=hit.keyword, text=hit.text, ts=hit.ts, volume=clamp_volume(hit.volume))


@dataclass(slots=True, frozen=True)
class SoundMapping:
    keywords: tuple[str, ...]
    file_path: Path
    volume: float


@dataclass(slots=True, frozen=True)
class PlaybackItem:
    file_path: Path
    volume: float
    reason: str = ""


class ChannelState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


class VoiceStatus(str, Enum):
    SIGNALLING = "signalling"
    CONNECTING = "connecting"
    READY = "ready"
    DISCONNECTED = "disconnected"
    DESTROYED = "destroyed"


class DisconnectReason(str, Enum):
    WEBSOCKET_CLOSE = "websocket_close"
    ADAPTER_UNAVAILABLE = "adapter_unavailable"
    ENDPOINT_REMOVED = "endpoint_removed"
    MANUAL = "manual"


__all__ = [
    "clamp_volume",
    "Trigger",
    "TranscriptEvent",
    "Hit",
    "HitMessage",
    "SoundMapping",
    "PlaybackItem",
    "ChannelState",
    "VoiceStatus",
    "DisconnectReason",
    "MIN_VOLUME",
    "MAX_VOLUME",
]
