from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from typing import Protocol

from soundboard.telemetry.logging import get_logger

LOGGER = get_logger(__name__)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock:
    """Event-loop clock used for cooldowns, backoff delays and scheduled restarts."""

    def monotonic(self) -> float:
        return time.monotonic()

    def wall_ms(self) -> int:
        return int(time.time() * 1000)

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(delay, callback)

    async def sleep(self, seconds: float) -> None:
        LOGGER.debug("clock.sleep", seconds=seconds)
        await asyncio.sleep(seconds)


CLOCK = Clock()


__all__ = ["Clock", "CLOCK", "TimerHandle"]
