from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeOutput, FakeVoice, ManualClock

from soundboard.audio.playback import PlaybackQueue
from soundboard.config import parse_board_config
from soundboard.orchestrator.events import HitMessage
from soundboard.relay.hit_relay import HitRelay
from soundboard.relay.mappings import MappingTable, resolve_mappings


def make_relay(base: Path, clock: ManualClock, voice: FakeVoice | None = None, cooldown_ms: int = 1000):
    board = parse_board_config(
        {
            "mappings": [
                {"keywords": ["bell", "ベル"], "file": "bell.mp3", "volume": 0.4},
                {"keywords": ["horn"], "file": "horn.mp3"},
            ],
            "cooldownMs": cooldown_ms,
        }
    )
    output = FakeOutput()
    queue = PlaybackQueue(output)
    relay = HitRelay(
        MappingTable(resolve_mappings(board, base)),
        board.cooldown_ms,
        voice or FakeVoice(ready=True),
        queue,
        clock=clock,
    )
    return relay, queue, output


def hit(keyword: str, volume: float | None = None) -> HitMessage:
    return HitMessage(keyword=keyword, ts=1, volume=volume)


def test_bell_scenario_with_relay_cooldown(sound_files: Path, clock: ManualClock) -> None:
    relay, queue, output = make_relay(sound_files, clock)

    assert relay.handle(hit("bell")) is not None
    clock.advance(0.5)
    assert relay.handle(hit("bell")) is None
    clock.advance(0.7)
    assert relay.handle(hit("bell")) is not None

    assert len(output.played) == 1
    assert len(queue) == 1
    output.finish()
    assert len(output.played) == 2
    assert len(queue) == 0


def test_keyword_lookup_is_case_insensitive_with_fallback(sound_files: Path, clock: ManualClock) -> None:
    relay, _, _ = make_relay(sound_files, clock, cooldown_ms=0)
    assert relay.handle(hit("HORN")).file_path.name == "horn.mp3"
    assert relay.handle(hit("ベル")).file_path.name == "bell.mp3"
    assert relay.handle(hit("kazoo")).file_path.name == "bell.mp3"


def test_volume_prefers_message_then_mapping(sound_files: Path, clock: ManualClock) -> None:
    relay, _, _ = make_relay(sound_files, clock, cooldown_ms=0)
    assert relay.handle(hit("bell")).volume == pytest.approx(0.4)
    assert relay.handle(hit("bell", volume=1.5)).volume == pytest.approx(1.5)
    assert relay.handle(hit("bell", volume=9)).volume == 2.0
    assert relay.handle(hit("horn")).volume == 1.0


def test_hit_without_voice_is_dropped_but_starts_cooldown(sound_files: Path, clock: ManualClock) -> None:
    voice = FakeVoice(ready=False)
    relay, queue, output = make_relay(sound_files, clock, voice=voice)

    assert relay.handle(hit("bell")) is None
    assert len(queue) == 0
    assert output.played == []
    assert relay.gate.last_hit_at == clock.monotonic()

    voice.ready = True
    clock.advance(0.5)
    assert relay.handle(hit("bell")) is None
    clock.advance(0.5)
    assert relay.handle(hit("bell")) is not None


def test_handle_raw_drops_invalid_records(sound_files: Path, clock: ManualClock) -> None:
    relay, queue, output = make_relay(sound_files, clock)
    assert relay.handle_raw('{"type":"status"}') is None
    assert relay.handle_raw('{"type":"hit"}') is None
    assert relay.handle_raw("garbage") is None
    assert relay.gate.last_hit_at is None

    item = relay.handle_raw('{"type":"hit","keyword":"horn","ts":5}')
    assert item is not None and item.reason == "hit:horn"
    assert [played.file_path.name for played in output.played] == ["horn.mp3"]


def test_missing_sound_file_is_skipped(tmp_path: Path, clock: ManualClock) -> None:
    relay, queue, output = make_relay(tmp_path, clock)
    assert relay.handle(hit("bell")) is None
    assert len(queue) == 0
    assert output.played == []


def test_test_play_uses_first_mapping_without_cooldown(sound_files: Path, clock: ManualClock) -> None:
    relay, _, output = make_relay(sound_files, clock)
    relay.handle(hit("horn"))
    item = relay.test_play()
    assert item is not None
    assert item.file_path.name == "bell.mp3"
    assert item.volume == pytest.approx(0.4)
    output.finish()
    assert [played.reason for played in output.played] == ["hit:horn", "testplay"]
