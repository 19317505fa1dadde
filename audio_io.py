"""
Audio Devices
=============
Microphone input and speech playback over sounddevice (PortAudio).

The PortAudio callback runs on its own thread; blocks are handed to the event
loop with ``call_soon_threadsafe`` and consumed there by the pitch estimator.
Playback owns a single output channel: starting a sound stops the previous
one first.
"""
from __future__ import annotations

import asyncio
import logging

import numpy as np
import sounddevice as sd

from errors import DeviceError, MicrophonePermissionError
from genai import SPEECH_CHANNELS, SPEECH_SAMPLE_RATE, decode_pcm16

logger = logging.getLogger(__name__)

# ─── Audio Settings ──────────────────────────────────────────────────────────
SAMPLE_RATE = 44100       # Hz
BUFFER_SIZE = 4096        # samples per block (~93ms at 44100 Hz)
CHANNELS = 1              # mono
QUEUE_BLOCKS = 8          # blocks buffered before the oldest is dropped


class MicrophoneStream:
    """An open input stream delivering mono float32 blocks to the event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, device: int | None = None,
                 sample_rate: int = SAMPLE_RATE, block_size: int = BUFFER_SIZE):
        self.sample_rate = sample_rate
        self._loop = loop
        self._blocks: asyncio.Queue[np.ndarray] = asyncio.Queue(maxsize=QUEUE_BLOCKS)
        self._stream = sd.InputStream(
            samplerate=sample_rate,
            blocksize=block_size,
            channels=CHANNELS,
            device=device,
            callback=self._callback,
            dtype="float32",
        )

    def start(self):
        self._stream.start()

    def _callback(self, indata: np.ndarray, frames: int, time_info, status):
        if status:
            logger.debug(f"Input stream status: {status}")
        block = indata[:, 0].copy()
        try:
            self._loop.call_soon_threadsafe(self._push, block)
        except RuntimeError:
            pass  # loop already closed during teardown

    def _push(self, block: np.ndarray):
        if self._blocks.full():
            self._blocks.get_nowait()
        self._blocks.put_nowait(block)

    async def read(self) -> np.ndarray:
        return await self._blocks.get()

    def release(self):
        """Stop and close the device."""
        try:
            self._stream.stop()
            self._stream.close()
        except sd.PortAudioError as e:
            logger.warning(f"Error while closing input stream: {e}")


class MicrophoneInput:
    """Acquires the system microphone (or a configured device)."""

    def __init__(self, device: int | None = None, sample_rate: int = SAMPLE_RATE,
                 block_size: int = BUFFER_SIZE):
        self.device = device
        self.sample_rate = sample_rate
        self.block_size = block_size

    async def acquire(self) -> MicrophoneStream:
        try:
            sd.query_devices(self.device, kind="input")
        except (ValueError, sd.PortAudioError) as e:
            raise DeviceError(f"No microphone found: {e}") from e

        loop = asyncio.get_running_loop()
        try:
            stream = MicrophoneStream(loop, self.device, self.sample_rate, self.block_size)
            stream.start()
        except sd.PortAudioError as e:
            message = str(e)
            if "denied" in message.lower() or "permission" in message.lower():
                raise MicrophonePermissionError(f"Microphone access denied: {message}") from e
            raise DeviceError(f"Could not open microphone: {message}") from e
        logger.info(f"Microphone active ({self.sample_rate} Hz, {self.block_size} samples/block)")
        return stream


class SoundDevicePlayer:
    """Plays synthesized speech. At most one sound at a time."""

    def __init__(self, device: int | None = None, sample_rate: int = SPEECH_SAMPLE_RATE,
                 channels: int = SPEECH_CHANNELS):
        self.device = device
        self.sample_rate = sample_rate
        self.channels = channels
        self._playing = False

    def play(self, audio_base64: str):
        if not audio_base64:
            return
        self.stop()
        try:
            samples = decode_pcm16(audio_base64, self.channels)
            sd.play(samples, self.sample_rate, device=self.device)
            self._playing = True
        except (ValueError, sd.PortAudioError) as e:
            logger.error(f"Audio playback error: {e}")

    def stop(self):
        if self._playing:
            sd.stop()
            self._playing = False
