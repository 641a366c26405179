from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from soundboard.listener.matcher import match
from soundboard.orchestrator.clock import CLOCK, Clock, TimerHandle
from soundboard.orchestrator.events import Hit, TranscriptEvent, Trigger
from soundboard.orchestrator.policies import CooldownGate, RecognitionPolicies
from soundboard.telemetry.logging import get_logger

NO_SPEECH = "no-speech"


class RecognitionAlreadyStarted(RuntimeError):
    """Raised by an engine whose ``start()`` is called while it is still running."""


@dataclass(slots=True)
class EngineCallbacks:
    on_start: Callable[[], None]
    on_result: Callable[[TranscriptEvent], None]
    on_error: Callable[[str], None]
    on_end: Callable[[], None]


class RecognitionEngine(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


EngineFactory = Callable[[EngineCallbacks], "RecognitionEngine | None"]


class SessionStatus(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    LISTENING = "listening"
    ENDED = "ended"
    ERRORED = "errored"


class EngineEvent(str, Enum):
    START_REQUESTED = "start_requested"
    STARTED = "started"
    NO_SPEECH = "no_speech"
    ERROR = "error"
    ENDED = "ended"
    DISCARDED = "discarded"


class Effect(str, Enum):
    RESET_ERRORS = "reset_errors"
    COUNT_ERROR = "count_error"
    SCHEDULE_RESTART = "schedule_restart"


def transition(
    status: SessionStatus,
    event: EngineEvent,
    running: bool,
) -> tuple[SessionStatus, tuple[Effect, ...]]:
    """Pure lifecycle step: (status, event) -> (next status, side effects)."""
    if event is EngineEvent.START_REQUESTED:
        return SessionStatus.STARTING, ()
    if event is EngineEvent.STARTED:
        return SessionStatus.LISTENING, (Effect.RESET_ERRORS,)
    if event is EngineEvent.NO_SPEECH:
        return status, ()
    if event is EngineEvent.ERROR:
        return SessionStatus.ERRORED, (Effect.COUNT_ERROR,)
    if event is EngineEvent.ENDED:
        return SessionStatus.ENDED, ((Effect.SCHEDULE_RESTART,) if running else ())
    return SessionStatus.IDLE, ()


class RecognitionSessionSupervisor:
    """Keeps a non-continuous recognition engine listening and turns final transcripts into hits.

    The engine stops after every utterance, so the supervisor restarts it,
    rebuilds it after repeated errors and on a fixed period, and drops events
    coming from instances it has already discarded.
    """

    def __init__(
        self,
        triggers: Sequence[Trigger],
        cooldown_ms: float,
        engine_factory: EngineFactory,
        clock: Clock | None = None,
        policies: RecognitionPolicies | None = None,
    ) -> None:
        self._triggers = list(triggers)
        self._engine_factory = engine_factory
        self._clock = clock or CLOCK
        self._policies = policies or RecognitionPolicies()
        self._gate = CooldownGate(cooldown_ms=cooldown_ms)
        self._logger = get_logger(__name__)

        self._status = SessionStatus.IDLE
        self._engine: RecognitionEngine | None = None
        self._generation = 0
        self._needs_rebuild = False
        self._consecutive_errors = 0
        self._running = False
        self._closed = False
        self._started_at = 0.0

        self._pending: set[TimerHandle] = set()
        self._periodic_timer: TimerHandle | None = None
        self._revert_timer: TimerHandle | None = None

        self._transcript_observers: list[Callable[[str], None]] = []
        self._hit_observers: list[Callable[[Hit], None]] = []
        self._status_observers: list[Callable[[SessionStatus], None]] = []

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def running(self) -> bool:
        return self._running

    @property
    def consecutive_errors(self) -> int:
        return self._consecutive_errors

    @property
    def engine(self) -> RecognitionEngine | None:
        return self._engine

    @property
    def gate(self) -> CooldownGate:
        return self._gate

    def on_transcript(self, observer: Callable[[str], None]) -> None:
        self._transcript_observers.append(observer)

    def on_hit(self, observer: Callable[[Hit], None]) -> None:
        self._hit_observers.append(observer)

    def on_status(self, observer: Callable[[SessionStatus], None]) -> None:
        self._status_observers.append(observer)

    def start(self) -> None:
        if self._closed:
            self._logger.warning("recognition.start.after_teardown")
            return
        if self._running:
            return
        self._logger.info("recognition.session.start")
        self._running = True
        self._gate.reset()
        self._consecutive_errors = 0
        self._attempt_start(allow_retry=True)
        self._schedule_periodic_reset()

    def stop(self) -> None:
        self._logger.info("recognition.session.stop")
        self._running = False
        self._cancel_pending()
        if self._periodic_timer is not None:
            self._periodic_timer.cancel()
            self._periodic_timer = None
        self._drop_engine(stop=True)

    def close(self) -> None:
        """Teardown: nothing is restarted afterwards."""
        self.stop()
        if self._revert_timer is not None:
            self._revert_timer.cancel()
            self._revert_timer = None
        self._closed = True

    # engine lifecycle -------------------------------------------------

    def _should_run(self) -> bool:
        return self._running and not self._closed

    def _apply(self, event: EngineEvent) -> None:
        status, effects = transition(self._status, event, running=self._should_run())
        self._set_status(status)
        for effect in effects:
            if effect is Effect.RESET_ERRORS:
                self._consecutive_errors = 0
            elif effect is Effect.COUNT_ERROR:
                self._count_error()
            elif effect is Effect.SCHEDULE_RESTART:
                self._schedule(self._policies.restart_delay_sec, self._restart)

    def _set_status(self, status: SessionStatus) -> None:
        if status == self._status:
            return
        self._status = status
        self._notify(self._status_observers, status)

    def _count_error(self) -> None:
        self._consecutive_errors += 1
        if self._consecutive_errors >= self._policies.max_consecutive_errors:
            self._logger.warning("recognition.rebuild.too_many_errors", errors=self._consecutive_errors)
            self._needs_rebuild = True
            self._consecutive_errors = 0

    def _build_engine(self) -> RecognitionEngine | None:
        self._generation += 1
        generation = self._generation
        callbacks = EngineCallbacks(
            on_start=lambda: self._dispatch(generation, self._handle_start),
            on_result=lambda event: self._dispatch(generation, self._handle_result, event),
            on_error=lambda code: self._dispatch(generation, self._handle_error, code),
            on_end=lambda: self._dispatch(generation, self._handle_end),
        )
        self._logger.info("recognition.engine.build", generation=generation)
        try:
            return self._engine_factory(callbacks)
        except Exception as exc:
            self._logger.error("recognition.engine.build_failed", error=str(exc))
            return None

    def _drop_engine(self, stop: bool) -> None:
        engine = self._engine
        self._engine = None
        self._generation += 1
        if stop and engine is not None:
            try:
                engine.stop()
            except Exception as exc:
                self._logger.debug("recognition.engine.stop_failed", error=str(exc))
        self._apply(EngineEvent.DISCARDED)

    def _attempt_start(self, allow_retry: bool) -> None:
        if self._needs_rebuild:
            self._needs_rebuild = False
            self._drop_engine(stop=False)
        if self._status in (SessionStatus.STARTING, SessionStatus.LISTENING):
            self._logger.debug("recognition.start.skipped", status=self._status.value)
            return
        if self._engine is None:
            self._engine = self._build_engine()
        if self._engine is None:
            self._logger.error("recognition.engine.unavailable")
            return

        self._apply(EngineEvent.START_REQUESTED)
        try:
            self._engine.start()
        except RecognitionAlreadyStarted:
            self._logger.warning("recognition.start.already_running", retry=allow_retry)
            self._drop_engine(stop=False)
            if allow_retry:
                self._schedule(
                    self._policies.already_running_retry_sec,
                    lambda: self._attempt_start(allow_retry=False),
                )
        except Exception as exc:
            self._logger.error("recognition.start.failed", error=str(exc))
            self._set_status(SessionStatus.ERRORED)

    def _restart(self) -> None:
        if self._status in (SessionStatus.STARTING, SessionStatus.LISTENING):
            return
        self._attempt_start(allow_retry=True)

    def _schedule_periodic_reset(self) -> None:
        if self._periodic_timer is not None:
            self._periodic_timer.cancel()
        self._periodic_timer = self._clock.call_later(self._policies.periodic_reset_sec, self._on_periodic_reset)
        self._logger.info("recognition.periodic_reset.scheduled", every_sec=self._policies.periodic_reset_sec)

    def _on_periodic_reset(self) -> None:
        self._periodic_timer = None
        if not self._should_run():
            return
        self._schedule_periodic_reset()
        self._logger.info("recognition.periodic_reset")
        self._drop_engine(stop=True)
        self._consecutive_errors = 0
        self._schedule(
            self._policies.reset_restart_delay_sec,
            lambda: self._attempt_start(allow_retry=True),
        )

    def _schedule(self, delay: float, action: Callable[[], None]) -> None:
        handle: TimerHandle | None = None

        def fire() -> None:
            self._pending.discard(handle)  # type: ignore[arg-type]
            if not self._should_run():
                self._logger.debug("recognition.scheduled.skipped")
                return
            try:
                action()
            except Exception as exc:
                self._logger.error("recognition.scheduled.failed", error=str(exc))

        handle = self._clock.call_later(delay, fire)
        self._pending.add(handle)

    def _cancel_pending(self) -> None:
        for handle in list(self._pending):
            handle.cancel()
        self._pending.clear()

    # engine callbacks -------------------------------------------------

    def _dispatch(self, generation: int, handler: Callable[..., None], *args: Any) -> None:
        if generation != self._generation:
            self._logger.debug("recognition.event.stale", generation=generation, current=self._generation)
            return
        try:
            handler(*args)
        except Exception as exc:
            self._logger.error("recognition.callback.failed", error=str(exc))

    def _handle_start(self) -> None:
        self._started_at = self._clock.monotonic()
        self._logger.info("recognition.started")
        self._apply(EngineEvent.STARTED)

    def _handle_error(self, code: str) -> None:
        if code == NO_SPEECH:
            self._logger.info("recognition.no_speech")
            self._apply(EngineEvent.NO_SPEECH)
            return
        self._logger.error("recognition.error", code=code)
        self._apply(EngineEvent.ERROR)

    def _handle_end(self) -> None:
        uptime = self._clock.monotonic() - self._started_at if self._started_at else 0.0
        self._logger.info("recognition.ended", uptime_sec=round(uptime, 1))
        self._apply(EngineEvent.ENDED)

    def _handle_result(self, event: TranscriptEvent) -> None:
        text = event.text.strip()
        self._logger.debug(
            "recognition.result",
            text=text,
            confidence=event.confidence,
            final=event.is_final,
        )
        self._notify(self._transcript_observers, text or self._policies.transcript_placeholder)
        if not event.is_final:
            return

        if self._revert_timer is not None:
            self._revert_timer.cancel()
            self._revert_timer = None
        if text:
            self._revert_timer = self._clock.call_later(self._policies.transcript_revert_sec, self._revert_transcript)

        if not text or event.confidence < self._policies.min_confidence:
            self._logger.debug("recognition.result.skipped", confidence=event.confidence)
            return

        trigger = match(text, self._triggers)
        if trigger is None:
            self._logger.debug("recognition.result.no_match")
            return

        now = self._clock.monotonic()
        if not self._gate.try_acquire(now):
            self._logger.info("recognition.hit.cooldown", keyword=trigger.keyword, remaining_ms=self._gate.remaining_ms(now))
            return

        hit = Hit(keyword=trigger.keyword, text=text, volume=trigger.volume, ts=self._clock.wall_ms())
        self._logger.info("recognition.hit", keyword=hit.keyword, text=text)
        self._notify(self._hit_observers, hit)

    def _revert_transcript(self) -> None:
        self._revert_timer = None
        self._notify(self._transcript_observers, self._policies.transcript_placeholder)

    def _notify(self, observers: list[Callable[[Any], None]], value: Any) -> None:
        for observer in list(observers):
            try:
                observer(value)
            except Exception as exc:
                self._logger.error("recognition.observer.failed", error=str(exc))


__all__ = [
    "RecognitionSessionSupervisor",
    "RecognitionEngine",
    "RecognitionAlreadyStarted",
    "EngineCallbacks",
    "EngineFactory",
    "SessionStatus",
    "EngineEvent",
    "Effect",
    "transition",
    "NO_SPEECH",
]
