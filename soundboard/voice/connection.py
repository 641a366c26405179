from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from soundboard.orchestrator.clock import CLOCK, Clock
from soundboard.orchestrator.events import DisconnectReason, VoiceStatus
from soundboard.orchestrator.policies import VoicePolicies
from soundboard.orchestrator.state import StateTracker
from soundboard.telemetry.logging import get_logger


class VoiceJoinError(RuntimeError):
    """The voice connection did not become ready in time."""


@dataclass(slots=True, frozen=True)
class VoiceStateChange:
    previous: VoiceStatus
    current: VoiceStatus
    reason: DisconnectReason | None = None
    close_code: int | None = None


StateListener = Callable[[VoiceStateChange], None]


class VoiceHandle(Protocol):
    @property
    def destination_id(self) -> str: ...

    @property
    def status(self) -> VoiceStatus: ...

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state listener; returns a function that removes it."""

    def rejoin(self) -> None: ...

    def destroy(self) -> None: ...


HandleFactory = Callable[[Any], VoiceHandle]


def destination_key(destination: Any) -> str:
    return str(getattr(destination, "id", destination))


async def enters_state(handle: VoiceHandle, status: VoiceStatus, timeout: float) -> None:
    """Wait until ``handle`` reaches ``status``; raises ``asyncio.TimeoutError`` after ``timeout``."""
    if handle.status is status:
        return
    future: asyncio.Future[None] = asyncio.get_running_loop().create_future()

    def _listener(change: VoiceStateChange) -> None:
        if change.current is status and not future.done():
            future.set_result(None)

    unsubscribe = handle.subscribe(_listener)
    try:
        await asyncio.wait_for(future, timeout)
    finally:
        unsubscribe()


class VoiceConnectionManager:
    """Owns at most one voice connection and applies the reconnection policy to it."""

    def __init__(
        self,
        factory: HandleFactory,
        clock: Clock | None = None,
        policies: VoicePolicies | None = None,
    ) -> None:
        self._factory = factory
        self._clock = clock or CLOCK
        self._policies = policies or VoicePolicies()
        self._handle: VoiceHandle | None = None
        self._unsubscribe: Callable[[], None] | None = None
        self._rejoin_attempts = 0
        self._tasks: set[asyncio.Task[None]] = set()
        self._tracker: StateTracker[VoiceStatus] = StateTracker("voice", VoiceStatus.DESTROYED, clock=self._clock)
        self._logger = get_logger(__name__)

    @property
    def handle(self) -> VoiceHandle | None:
        return self._handle

    @property
    def status(self) -> VoiceStatus:
        return self._handle.status if self._handle is not None else VoiceStatus.DESTROYED

    @property
    def rejoin_attempts(self) -> int:
        return self._rejoin_attempts

    @property
    def tracker(self) -> StateTracker[VoiceStatus]:
        return self._tracker

    def subscribe(self, observer: Callable[[VoiceStatus], None]) -> None:
        self._tracker.subscribe(observer)

    def is_ready(self) -> bool:
        return self._handle is not None and self._handle.status is VoiceStatus.READY

    async def join(self, destination: Any) -> VoiceHandle:
        key = destination_key(destination)
        existing = self._handle
        self._logger.info(
            "voice.join",
            destination=key,
            has_existing=existing is not None,
            existing_status=existing.status.value if existing else None,
        )
        if existing is not None and existing.destination_id == key and existing.status is not VoiceStatus.DESTROYED:
            self._logger.info("voice.join.reuse", destination=key)
            return existing
        if existing is not None:
            self._logger.info("voice.join.replace", previous=existing.destination_id)
            self._release()

        handle = self._factory(destination)
        self._handle = handle
        self._rejoin_attempts = 0
        self._unsubscribe = handle.subscribe(lambda change: self._on_state_change(handle, change))
        self._tracker.set(handle.status)

        self._logger.info("voice.join.waiting", timeout_sec=self._policies.ready_timeout_sec)
        try:
            await enters_state(handle, VoiceStatus.READY, self._policies.ready_timeout_sec)
        except asyncio.TimeoutError as exc:
            self._logger.error("voice.join.timeout", destination=key)
            raise VoiceJoinError(f"Voice connection to {key} not ready after {self._policies.ready_timeout_sec}s") from exc
        self._logger.info("voice.join.ready", destination=key)
        return handle

    def leave(self) -> bool:
        if self._handle is None:
            return False
        self._logger.info("voice.leave", destination=self._handle.destination_id)
        self._release()
        return True

    async def close(self) -> None:
        self.leave()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _release(self) -> None:
        handle, self._handle = self._handle, None
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._rejoin_attempts = 0
        if handle is not None:
            try:
                handle.destroy()
            except Exception as exc:
                self._logger.error("voice.destroy.failed", error=str(exc))
        self._tracker.set(VoiceStatus.DESTROYED)

    def _on_state_change(self, handle: VoiceHandle, change: VoiceStateChange) -> None:
        if handle is not self._handle:
            return
        self._tracker.set(change.current)
        if change.current is VoiceStatus.DISCONNECTED:
            task = asyncio.get_running_loop().create_task(self._recover(handle, change))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        elif change.current is VoiceStatus.DESTROYED:
            self._logger.warning("voice.destroyed", destination=handle.destination_id)
            self._handle = None
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
        elif change.current is VoiceStatus.READY:
            self._rejoin_attempts = 0
            self._logger.info("voice.ready", destination=handle.destination_id)

    async def _recover(self, handle: VoiceHandle, change: VoiceStateChange) -> None:
        self._logger.warning(
            "voice.disconnected",
            reason=change.reason.value if change.reason else None,
            close_code=change.close_code,
        )
        try:
            if (
                change.reason is DisconnectReason.WEBSOCKET_CLOSE
                and change.close_code == self._policies.session_invalid_close_code
            ):
                try:
                    await enters_state(handle, VoiceStatus.CONNECTING, self._policies.session_invalid_timeout_sec)
                except asyncio.TimeoutError:
                    self._logger.error("voice.reconnect.failed")
                    self._destroy(handle)
                return

            if self._rejoin_attempts < self._policies.max_rejoin_attempts:
                delay = self._policies.rejoin_delay(self._rejoin_attempts)
                self._rejoin_attempts += 1
                self._logger.info("voice.rejoin.attempt", attempt=self._rejoin_attempts, delay_sec=delay)
                await self._clock.sleep(delay)
                if handle is not self._handle or handle.status is not VoiceStatus.DISCONNECTED:
                    return
                handle.rejoin()
            else:
                self._logger.error("voice.rejoin.exhausted", attempts=self._rejoin_attempts)
                self._destroy(handle)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("voice.recover.failed", error=str(exc))

    def _destroy(self, handle: VoiceHandle) -> None:
        if handle is self._handle:
            self._release()
        else:
            handle.destroy()


__all__ = [
    "VoiceConnectionManager",
    "VoiceHandle",
    "VoiceStateChange",
    "VoiceJoinError",
    "HandleFactory",
    "enters_state",
    "destination_key",
]
