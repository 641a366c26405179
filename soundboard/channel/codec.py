from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from soundboard.orchestrator.events import HitMessage, clamp_volume

HIT_TYPE = "hit"


class WireError(ValueError):
    """A record received on the channel that cannot be turned into a hit."""


class MalformedMessage(WireError):
    pass


class UnknownMessageType(WireError):
    def __init__(self, message_type: Any) -> None:
        super().__init__(f"Unknown message type {message_type!r}")
        self.message_type = message_type


class MissingKeyword(WireError):
    pass


class HitPayload(BaseModel):
    """Wire shape of a hit record."""

    model_config = ConfigDict(extra="ignore")

    type: str
    keyword: str | None = None
    text: str | None = None
    ts: int | None = Field(default=None, description="Epoch milliseconds at detection time")
    volume: Any = None


def encode_hit(message: HitMessage) -> str:
    payload: dict[str, Any] = {"type": HIT_TYPE, "keyword": message.keyword, "ts": message.ts}
    if message.text is not None:
        payload["text"] = message.text
    if message.volume is not None:
        payload["volume"] = message.volume
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"))


def decode_message(raw: str | bytes) -> HitMessage:
    """Parse one channel record.

    Raises ``UnknownMessageType`` for records of another type (callers ignore
    those), ``MissingKeyword`` for hits without a keyword and
    ``MalformedMessage`` for anything that is not a JSON object of the right shape.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessage(f"Record is not valid UTF-8: {exc}") from exc
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise MalformedMessage(f"Record is not valid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise MalformedMessage("Record must be a JSON object")

    if data.get("type") != HIT_TYPE:
        raise UnknownMessageType(data.get("type"))
    try:
        payload = HitPayload.model_validate(data)
    except ValidationError as exc:
        raise MalformedMessage(f"Invalid hit record: {exc.errors()[0].get('msg')}") from exc
    if not payload.keyword:
        raise MissingKeyword("Hit record has no keyword")

    return HitMessage(
        keyword=payload.keyword,
        text=payload.text,
        ts=payload.ts or 0,
        # A present but non-numeric volume becomes the default rather than the mapping volume.
        volume=None if payload.volume is None else clamp_volume(payload.volume),
    )


__all__ = [
    "encode_hit",
    "decode_message",
    "HitPayload",
    "WireError",
    "MalformedMessage",
    "UnknownMessageType",
    "MissingKeyword",
    "HIT_TYPE",
]
