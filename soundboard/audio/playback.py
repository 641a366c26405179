from __future__ import annotations

import collections
import os
from collections.abc import Callable
from typing import Deque, Protocol

from soundboard.orchestrator.events import PlaybackItem, clamp_volume
from soundboard.telemetry.logging import get_logger

FinishedCallback = Callable[["BaseException | None"], None]


class AudioOutput(Protocol):
    def is_idle(self) -> bool: ...

    def play(self, item: PlaybackItem, on_finished: FinishedCallback) -> None:
        """Start rendering ``item``; ``on_finished`` runs on the event loop when it ends or fails."""


class PlaybackQueue:
    """FIFO of sound cues with at most one playing at a time.

    Every completion or failure triggers another start attempt, so one bad
    item never stalls the ones behind it.
    """

    def __init__(self, output: AudioOutput) -> None:
        self._output = output
        self._items: Deque[PlaybackItem] = collections.deque()
        self._current: PlaybackItem | None = None
        self._logger = get_logger(__name__)

    def __len__(self) -> int:
        return len(self._items)

    @property
    def current(self) -> PlaybackItem | None:
        return self._current

    def pending(self) -> list[PlaybackItem]:
        return list(self._items)

    def is_idle(self) -> bool:
        return self._current is None and self._output.is_idle()

    def enqueue(self, item: PlaybackItem) -> bool:
        if not _readable(item):
            self._logger.warning("playback.file_missing", file=str(item.file_path), reason=item.reason)
            return False
        item = PlaybackItem(file_path=item.file_path, volume=clamp_volume(item.volume), reason=item.reason)
        self._items.append(item)
        self._logger.info(
            "playback.queued",
            file=str(item.file_path),
            volume=item.volume,
            reason=item.reason,
            queue_length=len(self._items),
        )
        self.start_if_idle()
        return True

    def start_if_idle(self) -> bool:
        while True:
            if not self.is_idle():
                self._logger.debug("playback.busy", current=str(self._current.file_path) if self._current else None)
                return False
            if not self._items:
                self._logger.debug("playback.queue_empty")
                return False
            item = self._items.popleft()
            self._current = item
            try:
                self._output.play(item, self._on_finished)
            except Exception as exc:
                self._current = None
                self._logger.error("playback.start_failed", file=str(item.file_path), error=str(exc))
                continue
            self._logger.info(
                "playback.started",
                file=str(item.file_path),
                volume=item.volume,
                remaining=len(self._items),
            )
            return True

    def clear(self) -> int:
        dropped = len(self._items)
        self._items.clear()
        return dropped

    def _on_finished(self, error: BaseException | None) -> None:
        item, self._current = self._current, None
        if error is not None:
            self._logger.error("playback.error", file=str(item.file_path) if item else None, error=str(error))
        else:
            self._logger.info("playback.finished", file=str(item.file_path) if item else None)
        self.start_if_idle()


def _readable(item: PlaybackItem) -> bool:
    path = item.file_path
    return path.is_file() and os.access(path, os.R_OK)


__all__ = ["PlaybackQueue", "AudioOutput", "FinishedCallback"]
