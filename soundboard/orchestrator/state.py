from __future__ import annotations

import collections
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Generic, TypeVar

from soundboard.orchestrator.clock import CLOCK, Clock
from soundboard.telemetry.logging import get_logger

S = TypeVar("S", bound=Enum)


@dataclass(frozen=True)
class Transition(Generic[S]):
    at: float
    previous: S
    current: S


class StateTracker(Generic[S]):
    """Single connection status with timestamped transitions and observers.

    ``public`` lets an internal status be reported under a different name, e.g.
    a failed channel is shown to observers as plainly disconnected.
    """

    def __init__(
        self,
        name: str,
        initial: S,
        clock: Clock | None = None,
        public: Callable[[S], S] | None = None,
        history: int = 32,
    ) -> None:
        self._name = name
        self._state = initial
        self._clock = clock or CLOCK
        self._public = public or (lambda state: state)
        self._changed_at = self._clock.monotonic()
        self._history: Deque[Transition[S]] = collections.deque(maxlen=history)
        self._observers: list[Callable[[S], None]] = []
        self._logger = get_logger(__name__)

    @property
    def state(self) -> S:
        return self._state

    @property
    def observed(self) -> S:
        return self._public(self._state)

    @property
    def changed_at(self) -> float:
        return self._changed_at

    def history(self) -> list[Transition[S]]:
        return list(self._history)

    def subscribe(self, observer: Callable[[S], None]) -> None:
        self._observers.append(observer)

    def set(self, state: S) -> S:
        previous = self._state
        if previous == state:
            return previous
        now = self._clock.monotonic()
        self._state = state
        self._changed_at = now
        self._history.append(Transition(at=now, previous=previous, current=state))
        self._logger.info(f"{self._name}.state", previous=previous.value, current=state.value)
        if self._public(previous) == self._public(state):
            return previous
        observed = self._public(state)
        for observer in list(self._observers):
            try:
                observer(observed)
            except Exception as exc:
                self._logger.error(f"{self._name}.observer_failed", error=str(exc))
        return previous


__all__ = ["StateTracker", "Transition"]
