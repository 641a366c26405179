from __future__ import annotations

import json
import time
from collections.abc import Callable

import pytest
from conftest import FakeConnection, FakeConnector, FakeOutput, FakeVoice, ManualClock, settle
from fastapi import FastAPI
from fastapi.testclient import TestClient

from soundboard.audio.playback import PlaybackQueue
from soundboard.channel.resilient import ResilientChannelClient, ResilientChannelServer
from soundboard.config import parse_board_config
from soundboard.orchestrator.events import ChannelState, HitMessage
from soundboard.relay.hit_relay import HitRelay
from soundboard.relay.mappings import MappingTable, resolve_mappings


def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        assert time.monotonic() < deadline, "condition not reached"
        time.sleep(0.01)


@pytest.mark.anyio("asyncio")
async def test_client_reconnects_after_failure(clock: ManualClock) -> None:
    connector = FakeConnector(OSError("connection refused"))
    client = ResilientChannelClient("ws://relay", connector=connector, clock=clock)
    states: list[ChannelState] = []
    client.subscribe(states.append)

    client.open()
    await settle()
    assert connector.urls == ["ws://relay"]
    assert client.state is ChannelState.DISCONNECTED
    assert client.reconnect_pending

    await clock.advance_async(1.9)
    assert len(connector.urls) == 1
    await clock.advance_async(0.1)
    assert len(connector.urls) == 2
    assert client.state is ChannelState.CONNECTED
    assert not client.reconnect_pending

    assert ChannelState.FAILED not in states
    assert states == [
        ChannelState.CONNECTING,
        ChannelState.DISCONNECTED,
        ChannelState.CONNECTING,
        ChannelState.CONNECTED,
    ]
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_client_reconnects_after_drop_with_single_timer(clock: ManualClock) -> None:
    connection = FakeConnection()
    connector = FakeConnector(connection)
    client = ResilientChannelClient("ws://relay", connector=connector, clock=clock)
    client.open()
    await settle()
    assert client.state is ChannelState.CONNECTED

    connection.drop()
    await settle()
    assert client.state is ChannelState.DISCONNECTED
    client._schedule_reconnect()
    client._schedule_reconnect()
    assert len(clock.active_timers()) == 1

    await clock.advance_async(2.0)
    assert len(connector.urls) == 2
    assert client.state is ChannelState.CONNECTED
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_client_send_only_while_connected(clock: ManualClock) -> None:
    connector = FakeConnector()
    client = ResilientChannelClient("ws://relay", connector=connector, clock=clock)
    message = HitMessage(keyword="bell", ts=7, volume=1.0, text="bell")

    assert await client.send(message) is False

    client.open()
    await settle()
    assert await client.send(message) is True
    assert [json.loads(record)["keyword"] for record in connector.connections[0].sent] == ["bell"]

    await client.close()
    assert await client.send(message) is False
    assert len(connector.connections[0].sent) == 1


@pytest.mark.anyio("asyncio")
async def test_client_close_stops_reconnecting(clock: ManualClock) -> None:
    connector = FakeConnector(OSError("down"))
    client = ResilientChannelClient("ws://relay", connector=connector, clock=clock)
    client.open()
    await settle()
    assert client.reconnect_pending

    await client.close()
    assert not client.reconnect_pending
    await clock.advance_async(10)
    assert len(connector.urls) == 1
    assert client.state is ChannelState.DISCONNECTED


@pytest.mark.anyio("asyncio")
async def test_client_close_while_connected(clock: ManualClock) -> None:
    connector = FakeConnector()
    client = ResilientChannelClient("ws://relay", connector=connector, clock=clock)
    client.open()
    await settle()

    await client.close()
    assert connector.connections[0].closed
    await clock.advance_async(10)
    assert len(connector.urls) == 1


@pytest.mark.anyio("asyncio")
async def test_client_reopen_while_reconnect_pending_keeps_one_connection(clock: ManualClock) -> None:
    connector = FakeConnector(OSError("down"))
    client = ResilientChannelClient("ws://relay", connector=connector, clock=clock)
    client.open()
    await settle()
    assert client.reconnect_pending

    client.open()
    await settle()
    assert not client.reconnect_pending
    assert client.state is ChannelState.CONNECTED

    await clock.advance_async(2.0)
    assert len(connector.urls) == 2
    assert len(connector.connections) == 1
    await client.close()


@pytest.mark.anyio("asyncio")
async def test_reconnect_timer_skips_while_connecting(clock: ManualClock) -> None:
    connector = FakeConnector()
    client = ResilientChannelClient("ws://relay", connector=connector, clock=clock)
    client.open()
    await settle()

    client._on_reconnect_timer()
    await settle()
    assert len(connector.urls) == 1
    await client.close()


def test_server_keeps_socket_open_after_bad_records() -> None:
    received: list[str | bytes] = []

    def handler(raw: str | bytes) -> None:
        if raw == "boom":
            raise RuntimeError("handler failure")
        received.append(raw)

    server = ResilientChannelServer(handler)
    states: list[ChannelState] = []
    server.subscribe(states.append)
    app = FastAPI()
    app.include_router(server.router)

    with TestClient(app) as client:
        with client.websocket_connect("/ws") as websocket:
            websocket.send_text("boom")
            websocket.send_text("not json at all")
            websocket.send_bytes(b'{"type":"hit","keyword":"bell"}')
            wait_until(lambda: len(received) == 2)

    assert received == ["not json at all", b'{"type":"hit","keyword":"bell"}']
    assert states == [ChannelState.CONNECTING, ChannelState.CONNECTED, ChannelState.DISCONNECTED]
    assert server.state is ChannelState.DISCONNECTED
    assert server.client_count == 0


def test_server_accepts_root_path_and_feeds_relay(sound_files) -> None:
    board = parse_board_config({"mappings": [{"keywords": ["bell"], "file": "bell.mp3"}], "cooldownMs": 1000})
    output = FakeOutput()
    relay = HitRelay(
        MappingTable(resolve_mappings(board, sound_files)),
        board.cooldown_ms,
        FakeVoice(ready=True),
        PlaybackQueue(output),
    )
    server = ResilientChannelServer(relay.handle_raw)
    app = FastAPI()
    app.include_router(server.router)

    with TestClient(app) as client:
        with client.websocket_connect("/") as websocket:
            websocket.send_text('{"type":"ping"}')
            websocket.send_text("{broken")
            websocket.send_text('{"type":"hit","keyword":"BELL","ts":1,"volume":0.5}')
            wait_until(lambda: len(output.played) == 1)

    assert [item.file_path.name for item in output.played] == ["bell.mp3"]
    assert output.played[0].volume == 0.5
