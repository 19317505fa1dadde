"""Pytest configuration and shared fakes for the audio / generation collaborators."""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import numpy as np
import pytest

from errors import CaptureError


def pytest_configure(config):
    """Ensure asyncio_mode is auto even when pytest runs outside the project root."""
    if hasattr(config.option, "asyncio_mode") and config.option.asyncio_mode is None:
        config.option.asyncio_mode = "auto"


class FakeStream:
    """AudioStream fed by the test."""

    def __init__(self, sample_rate: int = 44100):
        self.sample_rate = sample_rate
        self.blocks: asyncio.Queue[np.ndarray] = asyncio.Queue()
        self.released = 0

    async def read(self) -> np.ndarray:
        return await self.blocks.get()

    def release(self):
        self.released += 1


class FakeAudioInput:
    def __init__(self, error: Optional[CaptureError] = None, gate: Optional[asyncio.Event] = None):
        self.error = error
        self.gate = gate
        self.calls = 0
        self.streams: list[FakeStream] = []

    async def acquire(self) -> FakeStream:
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        stream = FakeStream()
        self.streams.append(stream)
        return stream


class ScriptedEstimator:
    """Returns (or raises) scripted values, then blocks until cancelled."""

    def __init__(self, script: Optional[list[Any]] = None, load_error: Optional[CaptureError] = None):
        self.script = list(script or [])
        self.load_error = load_error
        self.loaded_with: Optional[FakeStream] = None
        self.suspended = 0
        self.requests = 0
        self.drained = asyncio.Event()

    async def load(self, stream):
        if self.load_error is not None:
            raise self.load_error
        self.loaded_with = stream

    async def next_pitch(self) -> Optional[float]:
        self.requests += 1
        await asyncio.sleep(0)
        if not self.script:
            self.drained.set()
            await asyncio.Event().wait()
        value = self.script.pop(0)
        if isinstance(value, Exception):
            raise value
        return value

    def suspend(self):
        self.suspended += 1
        self.loaded_with = None


class FakePlayer:
    def __init__(self):
        self.played: list[str] = []
        self.stops = 0

    def play(self, audio_base64: str):
        self.played.append(audio_base64)

    def stop(self):
        self.stops += 1


class FakeTextGenerator:
    """Echoes one line per label, optionally dropping the tail or waiting on a gate."""

    def __init__(self, drop: int = 0, prefix: str = "line", gate: Optional[asyncio.Event] = None):
        self.drop = drop
        self.prefix = prefix
        self.gate = gate
        self.calls: list[list[str]] = []

    async def generate_batch(self, labels: list[str]) -> list[str]:
        self.calls.append(list(labels))
        if self.gate is not None:
            await self.gate.wait()
        texts = [f"{self.prefix} {i} {label}" for i, label in enumerate(labels)]
        return texts[:len(texts) - self.drop] if self.drop else texts


class FakeSpeech:
    """Initial (jittered) batches resolve at once; background batches wait for ``release``."""

    def __init__(self, hold_background: bool = False):
        self.release = asyncio.Event()
        if not hold_background:
            self.release.set()
        self.batches: list[list[str]] = []

    async def synthesize_batch(self, texts: list[str], jitter: float = 0.0) -> list[Optional[str]]:
        self.batches.append(list(texts))
        if jitter == 0.0:
            await self.release.wait()
        return [f"audio:{t}" for t in texts]


async def settle(rounds: int = 5):
    """Let pending callbacks and tasks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def player() -> FakePlayer:
    return FakePlayer()
