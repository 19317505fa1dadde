"""
Pitch Estimator
===============
Fundamental frequency estimation over microphone blocks using the YIN
algorithm (pure numpy), wrapped in a one-shot async ``next_pitch()`` call:
each call waits for the next block, analyses it and returns a frequency in Hz
or None for silence / no clear pitch. The caller has to ask again to keep
going.

Reference: De Cheveigné, A., & Kawahara, H. (2002).
"YIN, a fundamental frequency estimator for speech and music."
"""
from __future__ import annotations

import asyncio
import logging
from typing import Protocol

import numpy as np

from errors import EstimatorSampleError, ModelLoadError

logger = logging.getLogger(__name__)

# ─── YIN Settings ────────────────────────────────────────────────────────────
YIN_THRESHOLD = 0.15        # lower = stricter pitch detection
MIN_FREQ = 27.5             # Hz – A0
MAX_FREQ = 4186.0           # Hz – C8
SILENCE_THRESHOLD = 0.01    # RMS below this = silence
BLOCK_TIMEOUT = 2.0         # seconds to wait for a block before giving up on a sample


class AudioStream(Protocol):
    sample_rate: int

    async def read(self) -> np.ndarray: ...

    def release(self) -> None: ...


def yin_pitch(signal: np.ndarray, sample_rate: int, threshold: float = YIN_THRESHOLD,
              min_freq: float = MIN_FREQ, max_freq: float = MAX_FREQ) -> float | None:
    """Estimate the fundamental frequency of *signal*; None if no pitch is found."""
    signal = np.asarray(signal, dtype=np.float64)
    w = len(signal) // 2
    tau_min = max(2, int(sample_rate / max_freq))
    tau_max = min(w, int(sample_rate / min_freq))
    if tau_max <= tau_min:
        return None

    # Difference function d(tau) = sum_j (x[j] - x[j + tau])^2, all lags at once
    frames = np.lib.stride_tricks.sliding_window_view(signal, w)[:tau_max]
    d = np.sum((frames[0] - frames) ** 2, axis=1)

    # Cumulative mean normalized difference
    cmnd = np.ones(tau_max)
    running = np.cumsum(d[1:])
    taus = np.arange(1, tau_max)
    with np.errstate(divide="ignore", invalid="ignore"):
        cmnd[1:] = np.where(running > 0, d[1:] * taus / running, 1.0)

    # Absolute threshold, then walk down to the local minimum
    below = np.nonzero(cmnd[tau_min:] < threshold)[0]
    if below.size == 0:
        return None
    tau = int(below[0]) + tau_min
    while tau + 1 < tau_max and cmnd[tau + 1] < cmnd[tau]:
        tau += 1

    # Parabolic interpolation for sub-sample accuracy
    estimate = float(tau)
    if 0 < tau < tau_max - 1:
        s0, s1, s2 = cmnd[tau - 1], cmnd[tau], cmnd[tau + 1]
        denom = 2.0 * s1 - s2 - s0
        if denom != 0:
            estimate = tau + (s2 - s0) / (2.0 * denom)

    return sample_rate / estimate


def rms(signal: np.ndarray) -> float:
    return float(np.sqrt(np.mean(np.square(signal, dtype=np.float64))))


class YinPitchEstimator:
    """Pitch estimator bound to one audio stream at a time."""

    def __init__(self, threshold: float = YIN_THRESHOLD,
                 silence_threshold: float = SILENCE_THRESHOLD,
                 block_timeout: float = BLOCK_TIMEOUT):
        self.threshold = threshold
        self.silence_threshold = silence_threshold
        self.block_timeout = block_timeout
        self._stream: AudioStream | None = None

    @property
    def ready(self) -> bool:
        return self._stream is not None

    async def load(self, stream: AudioStream):
        """Attach to *stream* once a self-test tone is recognised."""
        sample_rate = stream.sample_rate
        t = np.arange(4096) / sample_rate
        probe = 0.5 * np.sin(2 * np.pi * 440.0 * t)
        loop = asyncio.get_running_loop()
        try:
            freq = await loop.run_in_executor(None, yin_pitch, probe, sample_rate, self.threshold)
        except Exception as e:
            raise ModelLoadError(f"Pitch estimator failed to initialize: {e}") from e
        if freq is None or abs(freq - 440.0) > 5.0:
            raise ModelLoadError(f"Pitch estimator self-test failed (got {freq})")
        self._stream = stream
        logger.info(f"Pitch estimator ready ({sample_rate} Hz)")

    async def next_pitch(self) -> float | None:
        stream = self._stream
        if stream is None:
            raise EstimatorSampleError("Pitch estimator is not loaded")
        try:
            block = await asyncio.wait_for(stream.read(), self.block_timeout)
        except asyncio.TimeoutError as e:
            raise EstimatorSampleError("No audio received from the input stream") from e

        if rms(block) < self.silence_threshold:
            return None

        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(
                None, yin_pitch, block, stream.sample_rate, self.threshold
            )
        except (ValueError, FloatingPointError) as e:
            raise EstimatorSampleError(f"Pitch analysis failed: {e}") from e

    def suspend(self):
        """Detach from the stream; ``load()`` again to resume."""
        self._stream = None
