from __future__ import annotations

import asyncio
import json
from typing import Any

import numpy as np
import sounddevice as sd
from vosk import KaldiRecognizer, Model, SetLogLevel  # type: ignore[import]

from soundboard.listener.supervisor import NO_SPEECH, EngineCallbacks, RecognitionAlreadyStarted
from soundboard.orchestrator.events import TranscriptEvent
from soundboard.telemetry.logging import get_logger

AUDIO_CAPTURE = "audio-capture"
ENGINE_FAILURE = "engine"


def load_model(model_path: str | None) -> Model:
    if not model_path:
        raise ValueError("Vosk model path must be provided (VOSK_MODEL_PATH).")
    SetLogLevel(-1)
    return Model(model_path)


def result_confidence(data: dict[str, Any]) -> float:
    """Mean word confidence of a final Vosk result; 1.0 when words are not reported."""
    words = data.get("result") or []
    confidences = [float(word["conf"]) for word in words if isinstance(word, dict) and "conf" in word]
    if not confidences:
        return 1.0
    return float(np.mean(confidences))


class VoskRecognitionEngine:
    """Microphone recognition that ends after one utterance, like a browser speech session.

    ``start()`` opens the input stream and begins decoding; the engine reports
    interim and final transcripts, signals ``no-speech`` when nothing is heard
    in time, and always finishes with ``on_end``.
    """

    def __init__(
        self,
        model: Model,
        callbacks: EngineCallbacks,
        sample_rate: int = 16_000,
        device: str | int | None = None,
        no_speech_timeout_sec: float = 8.0,
        max_utterance_sec: float = 10.0,
        frame_ms: int = 100,
    ) -> None:
        self._model = model
        self._callbacks = callbacks
        self._sample_rate = sample_rate
        self._device = device
        self._no_speech_timeout_sec = no_speech_timeout_sec
        self._max_utterance_sec = max_utterance_sec
        self._frame_samples = int(sample_rate * frame_ms / 1000)
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue(maxsize=512)
        self._stream: sd.RawInputStream | None = None
        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._logger = get_logger(__name__)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            raise RecognitionAlreadyStarted("Vosk recognition is already running")
        loop = asyncio.get_running_loop()
        self._stopping = False
        self._queue = asyncio.Queue(maxsize=512)
        recognizer = KaldiRecognizer(self._model, self._sample_rate)
        recognizer.SetWords(True)

        def callback(indata, frames, time_info, status) -> None:  # type: ignore[override]
            if status:
                self._logger.warning("audio.capture.status", status=str(status))
            loop.call_soon_threadsafe(self._offer, bytes(indata))

        self._stream = sd.RawInputStream(
            samplerate=self._sample_rate,
            channels=1,
            blocksize=self._frame_samples,
            dtype="int16",
            callback=callback,
            device=self._device,
        )
        self._stream.start()
        self._logger.info("audio.capture.started", samplerate=self._sample_rate, device=self._device)
        self._task = loop.create_task(self._run(recognizer), name="vosk-recognition")

    def stop(self) -> None:
        self._stopping = True
        self._close_stream()
        self._offer(None)

    def _offer(self, pcm: bytes | None) -> None:
        try:
            self._queue.put_nowait(pcm)
        except asyncio.QueueFull:
            self._logger.warning("audio.capture.overflow")

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:
            self._logger.warning("audio.capture.close_failed", error=str(exc))
        self._logger.info("audio.capture.stopped")

    async def _run(self, recognizer: KaldiRecognizer) -> None:
        loop = asyncio.get_running_loop()
        self._callbacks.on_start()
        started = loop.time()
        speech_started: float | None = None
        last_partial = ""
        try:
            while not self._stopping:
                now = loop.time()
                if speech_started is None and now - started >= self._no_speech_timeout_sec:
                    self._callbacks.on_error(NO_SPEECH)
                    break
                if speech_started is not None and now - speech_started >= self._max_utterance_sec:
                    self._emit_final(recognizer.FinalResult())
                    break
                try:
                    pcm = await asyncio.wait_for(self._queue.get(), timeout=0.25)
                except asyncio.TimeoutError:
                    continue
                if pcm is None:
                    break
                if recognizer.AcceptWaveform(pcm):
                    if self._emit_final(recognizer.Result()):
                        break
                    continue
                partial = _parse(recognizer.PartialResult()).get("partial", "").strip()
                if partial and partial != last_partial:
                    if speech_started is None:
                        speech_started = loop.time()
                    last_partial = partial
                    self._callbacks.on_result(TranscriptEvent(text=partial, confidence=0.0, is_final=False))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._logger.error("vosk.recognition.failed", error=str(exc))
            self._callbacks.on_error(ENGINE_FAILURE)
        finally:
            self._close_stream()
            self._callbacks.on_end()

    def _emit_final(self, payload: str) -> bool:
        data = _parse(payload)
        text = (data.get("text") or "").strip()
        if not text:
            return False
        self._callbacks.on_result(TranscriptEvent(text=text, confidence=result_confidence(data), is_final=True))
        return True


def _parse(payload: str) -> dict[str, Any]:
    try:
        data = json.loads(payload) if payload else {}
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def vosk_engine_factory(
    model: Model,
    sample_rate: int = 16_000,
    device: str | int | None = None,
    no_speech_timeout_sec: float = 8.0,
    max_utterance_sec: float = 10.0,
):
    def _factory(callbacks: EngineCallbacks) -> VoskRecognitionEngine:
        return VoskRecognitionEngine(
            model,
            callbacks,
            sample_rate=sample_rate,
            device=device,
            no_speech_timeout_sec=no_speech_timeout_sec,
            max_utterance_sec=max_utterance_sec,
        )

    return _factory


__all__ = ["VoskRecognitionEngine", "vosk_engine_factory", "load_model", "result_confidence"]
