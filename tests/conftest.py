from __future__ import annotations

import asyncio
import itertools
from collections import deque
from collections.abc import Callable
from pathlib import Path

import pytest

from soundboard.audio.playback import FinishedCallback
from soundboard.listener.supervisor import EngineCallbacks
from soundboard.orchestrator.clock import Clock
from soundboard.orchestrator.events import DisconnectReason, PlaybackItem, TranscriptEvent, VoiceStatus
from soundboard.voice.connection import VoiceStateChange, destination_key


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


class ManualTimer:
    def __init__(self, when: float, seq: int, callback: Callable[[], None]) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock(Clock):
    """Clock whose time only moves when a test advances it."""

    def __init__(self, start: float = 1000.0, wall_start_ms: int = 1_700_000_000_000) -> None:
        self.now = start
        self._start = start
        self._wall_start_ms = wall_start_ms
        self._timers: list[ManualTimer] = []
        self._seq = itertools.count()

    def monotonic(self) -> float:
        return self.now

    def wall_ms(self) -> int:
        return self._wall_start_ms + int(round((self.now - self._start) * 1000))

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.now + delay, next(self._seq), callback)
        self._timers.append(timer)
        return timer

    async def sleep(self, seconds: float) -> None:
        future = asyncio.get_running_loop().create_future()

        def _wake() -> None:
            if not future.done():
                future.set_result(None)

        timer = self.call_later(seconds, _wake)
        try:
            await future
        finally:
            timer.cancel()

    def active_timers(self) -> list[ManualTimer]:
        self._timers = [timer for timer in self._timers if not timer.cancelled]
        return list(self._timers)

    def _next_due(self, target: float) -> ManualTimer | None:
        due = [timer for timer in self.active_timers() if timer.when <= target + 1e-9]
        if not due:
            return None
        return min(due, key=lambda timer: (timer.when, timer.seq))

    def _fire(self, timer: ManualTimer) -> None:
        self._timers.remove(timer)
        self.now = max(self.now, timer.when)
        timer.callback()

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while (timer := self._next_due(target)) is not None:
            self._fire(timer)
        self.now = target

    async def advance_async(self, seconds: float) -> None:
        target = self.now + seconds
        await settle()
        while (timer := self._next_due(target)) is not None:
            self._fire(timer)
            await settle()
        self.now = target
        await settle()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


class FakeEngine:
    def __init__(self, farm: "EngineFarm", callbacks: EngineCallbacks) -> None:
        self._farm = farm
        self.callbacks = callbacks
        self.started = 0
        self.stopped = 0

    def start(self) -> None:
        if self._farm.start_errors:
            raise self._farm.start_errors.popleft()
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1

    def emit_start(self) -> None:
        self.callbacks.on_start()

    def emit_result(self, text: str, confidence: float = 0.9, final: bool = True) -> None:
        self.callbacks.on_result(TranscriptEvent(text=text, confidence=confidence, is_final=final))

    def emit_error(self, code: str) -> None:
        self.callbacks.on_error(code)

    def emit_end(self) -> None:
        self.callbacks.on_end()


class EngineFarm:
    """Engine factory that records every engine it builds."""

    def __init__(self) -> None:
        self.engines: list[FakeEngine] = []
        self.start_errors: deque[Exception] = deque()

    def __call__(self, callbacks: EngineCallbacks) -> FakeEngine:
        engine = FakeEngine(self, callbacks)
        self.engines.append(engine)
        return engine

    @property
    def latest(self) -> FakeEngine:
        return self.engines[-1]


@pytest.fixture
def farm() -> EngineFarm:
    return EngineFarm()


class FakeVoiceHandle:
    def __init__(self, destination: object) -> None:
        self.destination_id = destination_key(destination)
        self.status = VoiceStatus.SIGNALLING
        self.rejoins = 0
        self.destroyed = 0
        self._listeners: list[Callable[[VoiceStateChange], None]] = []

    def subscribe(self, listener: Callable[[VoiceStateChange], None]) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def emit(self, status: VoiceStatus, reason: DisconnectReason | None = None, close_code: int | None = None) -> None:
        previous, self.status = self.status, status
        change = VoiceStateChange(previous=previous, current=status, reason=reason, close_code=close_code)
        for listener in list(self._listeners):
            listener(change)

    def rejoin(self) -> None:
        self.rejoins += 1
        self.emit(VoiceStatus.CONNECTING)

    def destroy(self) -> None:
        self.destroyed += 1
        self.emit(VoiceStatus.DESTROYED)


class HandleFactory:
    def __init__(self) -> None:
        self.handles: list[FakeVoiceHandle] = []

    def __call__(self, destination: object) -> FakeVoiceHandle:
        handle = FakeVoiceHandle(destination)
        self.handles.append(handle)
        return handle


class FakeVoice:
    def __init__(self, ready: bool = True) -> None:
        self.ready = ready

    def is_ready(self) -> bool:
        return self.ready


class FakeOutput:
    """Audio output that plays instantly and finishes only when told to."""

    def __init__(self) -> None:
        self.played: list[PlaybackItem] = []
        self.fail_next = 0
        self._on_finished: FinishedCallback | None = None

    def is_idle(self) -> bool:
        return self._on_finished is None

    def play(self, item: PlaybackItem, on_finished: FinishedCallback) -> None:
        if self.fail_next:
            self.fail_next -= 1
            raise RuntimeError("decoder failed")
        self.played.append(item)
        self._on_finished = on_finished

    def finish(self, error: BaseException | None = None) -> None:
        callback, self._on_finished = self._on_finished, None
        assert callback is not None
        callback(error)


class FakeConnection:
    def __init__(self) -> None:
        self.sent: list[str] = []
        self.closed = False
        self._closed = asyncio.Event()

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self._closed.set()

    def drop(self) -> None:
        self._closed.set()

    def __aiter__(self):
        return self._messages()

    async def _messages(self):
        await self._closed.wait()
        for message in ():
            yield message


class FakeConnector:
    def __init__(self, *outcomes: Exception | FakeConnection) -> None:
        self.outcomes = deque(outcomes)
        self.urls: list[str] = []
        self.connections: list[FakeConnection] = []

    async def __call__(self, url: str) -> FakeConnection:
        self.urls.append(url)
        outcome = self.outcomes.popleft() if self.outcomes else FakeConnection()
        if isinstance(outcome, Exception):
            raise outcome
        self.connections.append(outcome)
        return outcome


@pytest.fixture
def sound_files(tmp_path: Path) -> Path:
    sounds = tmp_path / "sounds"
    sounds.mkdir()
    for name in ("bell.mp3", "horn.mp3"):
        (sounds / name).write_bytes(b"ID3")
    return tmp_path
