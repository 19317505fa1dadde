"""
Capture Session
===============
Owns the microphone stream and the pitch estimator, and runs the sampling
loop that feeds the stability gate.

    initial → loading → listening → (stop) ready
                 └──→ error  (permission / device / estimator failure)

The loop asks for one pitch estimate at a time and only requests the next one
once the previous has been handled. It ends as soon as the status leaves
LISTENING; anything that resolves after that is dropped.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from enum import Enum
from typing import Callable, Optional, Protocol

from errors import CaptureError, EstimatorSampleError
from notes import NoteData, classify_frequency
from pitch_estimator import AudioStream
from stability_gate import StabilityGate

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 5
SAMPLE_ERROR_PAUSE = 0.05  # seconds before re-arming after a failed estimate


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None  # no running loop


class CaptureStatus(str, Enum):
    INITIAL = "initial"
    LOADING = "loading"
    READY = "ready"
    LISTENING = "listening"
    ERROR = "error"


class AudioInput(Protocol):
    async def acquire(self) -> AudioStream: ...


class PitchEstimator(Protocol):
    async def load(self, stream: AudioStream) -> None: ...

    async def next_pitch(self) -> Optional[float]: ...

    def suspend(self) -> None: ...


class CaptureSession:
    """Microphone → pitch estimates → committed notes."""

    def __init__(
        self,
        audio_input: AudioInput,
        estimator: PitchEstimator,
        gate: Optional[StabilityGate] = None,
        on_note: Optional[Callable[[NoteData], None]] = None,
        on_status: Optional[Callable[["CaptureStatus"], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.audio_input = audio_input
        self.estimator = estimator
        self.gate = gate or StabilityGate()
        self.on_note = on_note
        self.on_status = on_status
        self.clock = clock

        self.status = CaptureStatus.INITIAL
        self.current_note: Optional[NoteData] = None
        self.history: deque[NoteData] = deque(maxlen=HISTORY_LIMIT)
        self.error: Optional[str] = None

        self._stream: Optional[AudioStream] = None
        self._task: Optional[asyncio.Task] = None
        self._attempt = 0

    @property
    def is_listening(self) -> bool:
        return self.status is CaptureStatus.LISTENING

    def _set_status(self, status: CaptureStatus):
        if status is self.status:
            return
        logger.debug(f"Capture status {self.status.value} → {status.value}")
        self.status = status
        if self.on_status:
            self.on_status(status)

    async def start(self):
        """Acquire the microphone and load the estimator, then start listening."""
        if self.status in (CaptureStatus.LOADING, CaptureStatus.LISTENING):
            logger.debug(f"start() ignored while {self.status.value}")
            return

        self._attempt += 1
        attempt = self._attempt
        self.error = None
        self._set_status(CaptureStatus.LOADING)

        try:
            stream = await self.audio_input.acquire()
            if attempt != self._attempt:
                stream.release()
                return
            self._stream = stream
            await self.estimator.load(stream)
        except CaptureError as e:
            if attempt == self._attempt:
                self._fail(str(e) or "Failed to access microphone or load the pitch model.")
            return
        except Exception as e:
            logger.exception(f"Unexpected error while starting capture: {e!r}")
            if attempt == self._attempt:
                self._fail("Failed to access microphone or load the pitch model.")
            return

        if attempt != self._attempt:
            # stop() ran while the estimator was loading
            if self.status not in (CaptureStatus.LOADING, CaptureStatus.LISTENING):
                self.estimator.suspend()
            return

        logger.info("Pitch model loaded, listening")
        self._set_status(CaptureStatus.LISTENING)
        self._task = asyncio.create_task(self._sample_loop())

    async def _sample_loop(self):
        while self.status is CaptureStatus.LISTENING:
            try:
                frequency = await self.estimator.next_pitch()
            except EstimatorSampleError as e:
                logger.error(f"Pitch detection error: {e}")
                await asyncio.sleep(SAMPLE_ERROR_PAUSE)
                continue
            except Exception as e:
                logger.exception(f"Unexpected pitch detection error: {e!r}")
                await asyncio.sleep(SAMPLE_ERROR_PAUSE)
                continue
            if self.status is not CaptureStatus.LISTENING:
                break
            try:
                self.process_frequency(frequency)
            except Exception as e:
                # listener errors do not end the loop
                logger.exception(f"Note handler failed: {e!r}")

    def process_frequency(self, frequency: Optional[float], now: Optional[float] = None) -> Optional[NoteData]:
        """Classify one raw estimate and pass it through the gate."""
        note = classify_frequency(frequency)
        committed = self.gate.update(note, self.clock() if now is None else now)
        if committed is None:
            return None

        self.current_note = committed
        self.history.appendleft(committed)
        if self.on_note:
            self.on_note(committed)
        return committed

    def stop(self):
        """Stop listening and release the device. Safe to call repeatedly."""
        self._attempt += 1
        if self.status in (CaptureStatus.LOADING, CaptureStatus.LISTENING):
            self._set_status(CaptureStatus.READY)
        self._cleanup()

    def _fail(self, message: str):
        logger.error(f"Capture failed: {message}")
        self._attempt += 1
        self.error = message
        self._set_status(CaptureStatus.ERROR)
        self._cleanup()

    def _cleanup(self):
        if self._stream is not None:
            self._stream.release()
            self._stream = None
        self.estimator.suspend()
        self.gate.reset()
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()

    async def aclose(self):
        """Teardown: stop and wait for the sampling task to finish."""
        task = self._task
        self.stop()
        if task is not None and task is not _current_task():
            with contextlib.suppress(asyncio.CancelledError):
                await task
