from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import websockets
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from soundboard.channel.codec import encode_hit
from soundboard.orchestrator.clock import CLOCK, Clock, TimerHandle
from soundboard.orchestrator.events import ChannelState, HitMessage
from soundboard.orchestrator.policies import ChannelPolicies
from soundboard.orchestrator.state import StateTracker
from soundboard.telemetry.logging import get_logger


def observed_channel_state(state: ChannelState) -> ChannelState:
    """Observers never see FAILED; it is reported as DISCONNECTED."""
    return ChannelState.DISCONNECTED if state is ChannelState.FAILED else state


def channel_state_tracker(name: str, clock: Clock | None = None) -> StateTracker[ChannelState]:
    return StateTracker(name, ChannelState.DISCONNECTED, clock=clock, public=observed_channel_state)


class ClientConnection(Protocol):
    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Connector = Callable[[str], Awaitable[ClientConnection]]


async def websocket_connector(url: str) -> ClientConnection:
    return await websockets.connect(url)


class ResilientChannelClient:
    """Initiator half: keeps one WebSocket to the relay open while the owner wants it.

    Any close or error schedules a single reconnect after a fixed delay. Hits
    sent while not connected are dropped.
    """

    def __init__(
        self,
        url: str,
        connector: Connector | None = None,
        clock: Clock | None = None,
        policies: ChannelPolicies | None = None,
    ) -> None:
        self._url = url
        self._connector = connector or websocket_connector
        self._clock = clock or CLOCK
        self._policies = policies or ChannelPolicies()
        self._tracker = channel_state_tracker("channel.client", clock=self._clock)
        self._logger = get_logger(__name__)
        self._connection: ClientConnection | None = None
        self._task: asyncio.Task[None] | None = None
        self._reconnect_timer: TimerHandle | None = None
        self._should_connect = False

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> ChannelState:
        return self._tracker.observed

    @property
    def tracker(self) -> StateTracker[ChannelState]:
        return self._tracker

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def subscribe(self, observer: Callable[[ChannelState], None]) -> None:
        self._tracker.subscribe(observer)

    def open(self) -> None:
        self._should_connect = True
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        if self._task is not None and not self._task.done():
            return
        self._connect()

    async def close(self) -> None:
        self._should_connect = False
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.close()
            except Exception as exc:
                self._logger.debug("channel.client.close_failed", error=str(exc))
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._tracker.set(ChannelState.DISCONNECTED)

    async def send(self, message: HitMessage) -> bool:
        connection = self._connection
        if connection is None or self._tracker.state is not ChannelState.CONNECTED:
            self._logger.warning("channel.send.skipped", keyword=message.keyword, state=self.state.value)
            return False
        record = encode_hit(message)
        try:
            await connection.send(record)
        except Exception as exc:
            self._logger.error("channel.send.failed", keyword=message.keyword, error=str(exc))
            return False
        self._logger.info("channel.send.hit", keyword=message.keyword, volume=message.volume)
        return True

    def _connect(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run(), name="channel-client")

    async def _run(self) -> None:
        self._tracker.set(ChannelState.CONNECTING)
        self._logger.info("channel.connecting", url=self._url)
        try:
            connection = await self._connector(self._url)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("channel.connect.failed", url=self._url, error=str(exc))
            self._tracker.set(ChannelState.FAILED)
            self._schedule_reconnect()
            return

        if not self._should_connect:
            await connection.close()
            self._tracker.set(ChannelState.DISCONNECTED)
            return

        self._connection = connection
        self._tracker.set(ChannelState.CONNECTED)
        self._logger.info("channel.connected", url=self._url)
        try:
            async for _ in connection:
                # The relay defines no messages towards the listener.
                continue
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.warning("channel.error", error=str(exc))
        finally:
            if self._connection is connection:
                self._connection = None
        self._logger.info("channel.disconnected", url=self._url)
        self._tracker.set(ChannelState.DISCONNECTED)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_timer is not None:
            return
        if not self._should_connect:
            return
        self._logger.info("channel.reconnect.scheduled", delay_sec=self._policies.reconnect_delay_sec)
        self._reconnect_timer = self._clock.call_later(self._policies.reconnect_delay_sec, self._on_reconnect_timer)

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if not self._should_connect:
            return
        if self._task is not None and not self._task.done():
            return
        self._connect()


MessageHandler = Callable[[str | bytes], object]


class ResilientChannelServer:
    """Acceptor half: a FastAPI WebSocket endpoint feeding raw records to a handler.

    A record the handler cannot process is logged and dropped; the socket
    stays open.
    """

    def __init__(self, handler: MessageHandler, clock: Clock | None = None, paths: tuple[str, ...] = ("/", "/ws")) -> None:
        self._handler = handler
        self._clients: set[WebSocket] = set()
        self._router = APIRouter()
        for path in paths:
            self._router.add_api_websocket_route(path, self._websocket_handler)
        self._tracker = channel_state_tracker("channel.server", clock=clock)
        self._logger = get_logger(__name__)

    @property
    def router(self) -> APIRouter:
        return self._router

    @property
    def state(self) -> ChannelState:
        return self._tracker.observed

    @property
    def client_count(self) -> int:
        return len(self._clients)

    def subscribe(self, observer: Callable[[ChannelState], None]) -> None:
        self._tracker.subscribe(observer)

    async def _websocket_handler(self, websocket: WebSocket) -> None:
        if not self._clients:
            self._tracker.set(ChannelState.CONNECTING)
        remote = websocket.client.host if websocket.client else None
        try:
            await websocket.accept()
            self._clients.add(websocket)
            self._tracker.set(ChannelState.CONNECTED)
            self._logger.info("channel.client.connected", remote=remote, count=len(self._clients))
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                self._deliver(raw)
        except WebSocketDisconnect:
            pass
        except Exception as exc:
            self._logger.error("channel.client.error", remote=remote, error=str(exc))
        finally:
            self._clients.discard(websocket)
            self._logger.info("channel.client.disconnected", remote=remote, count=len(self._clients))
            if not self._clients:
                self._tracker.set(ChannelState.DISCONNECTED)

    def _deliver(self, raw: str | bytes) -> None:
        try:
            self._handler(raw)
        except Exception as exc:
            self._logger.error("channel.record.failed", error=str(exc), exception_type=type(exc).__name__)


__all__ = [
    "ResilientChannelClient",
    "ResilientChannelServer",
    "Connector",
    "ClientConnection",
    "websocket_connector",
    "observed_channel_state",
]
