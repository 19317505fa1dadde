"""
Story Queue
===========
Builds a story session: a fixed-length sequence of (note, text, audio) beats.

Two phases keep the wait short:
  1. generate the notes, fetch all text in one batch, synthesize speech for
     the first INITIAL_AUDIO_BATCH items and publish the queue
  2. fill the remaining audio slots in the background, batch by batch

Every session gets a fresh token. Background work compares its token with the
current one before each batch and each write, and quietly stops when a newer
session (or a cancel) has replaced it.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from typing import Optional, Protocol

from genai import fallback_sentence
from notes import TargetNote, format_note, generate_random_note

logger = logging.getLogger(__name__)

STORY_LENGTH = 50
INITIAL_AUDIO_BATCH = 10
BACKGROUND_AUDIO_BATCH = 10
DISPATCH_JITTER = 0.25  # seconds of random spread between initial speech requests


class TextGenerator(Protocol):
    async def generate_batch(self, labels: list[str]) -> list[str]: ...


class SpeechSynthesizer(Protocol):
    async def synthesize_batch(self, texts: list[str], jitter: float = 0.0) -> list[Optional[str]]: ...


@dataclass
class StoryItem:
    note: TargetNote
    text: str
    audio_base64: Optional[str] = None


class StoryQueueManager:
    """Sole writer of the story queue; readers only index into ``queue``."""

    def __init__(
        self,
        text_generator: TextGenerator,
        speech: SpeechSynthesizer,
        length: int = STORY_LENGTH,
        initial_audio: int = INITIAL_AUDIO_BATCH,
        background_batch: int = BACKGROUND_AUDIO_BATCH,
        jitter: float = DISPATCH_JITTER,
    ):
        self.text_generator = text_generator
        self.speech = speech
        self.length = length
        self.initial_audio = initial_audio
        self.background_batch = background_batch
        self.jitter = jitter
        self.queue: list[StoryItem] = []
        self.current_token = ""
        self._tasks: set[asyncio.Task] = set()

    def is_current(self, token: str) -> bool:
        return bool(token) and token == self.current_token

    def cancel(self):
        """Invalidate the running session; in-flight work discards its results."""
        self.current_token = ""
        self.queue = []

    def generate_notes(self) -> list[TargetNote]:
        notes: list[TargetNote] = []
        for _ in range(self.length):
            previous = notes[-1].note if notes else None
            notes.append(generate_random_note(3, 5, exclude=previous))
        return notes

    async def build_session(self) -> Optional[list[StoryItem]]:
        """Start a new session. Returns the published queue, or None if superseded."""
        token = uuid.uuid4().hex
        self.current_token = token
        logger.info(f"Generating new story session with {self.length} steps")

        notes = self.generate_notes()
        labels = [format_note(n) for n in notes]

        texts = await self.text_generator.generate_batch(labels)
        if not self.is_current(token):
            return None
        texts = self._align_texts(texts, labels)

        logger.info(f"Generating initial audio batch (first {self.initial_audio})")
        initial = await self.speech.synthesize_batch(texts[:self.initial_audio], jitter=self.jitter)
        if not self.is_current(token):
            return None

        queue = [
            StoryItem(note=note, text=texts[i], audio_base64=initial[i] if i < len(initial) else None)
            for i, note in enumerate(notes)
        ]
        self.queue = queue

        if self.length > self.initial_audio:
            task = asyncio.create_task(self._fill_audio(token, texts, self.initial_audio))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return queue

    def _align_texts(self, texts: list[str], labels: list[str]) -> list[str]:
        texts = list(texts or [])
        if len(texts) != len(labels):
            logger.warning(f"Expected {len(labels)} story lines, got {len(texts)}; padding with fallbacks")
        return [
            texts[i] if i < len(texts) and texts[i] else fallback_sentence(label)
            for i, label in enumerate(labels)
        ]

    async def _fill_audio(self, token: str, texts: list[str], start: int):
        for i in range(start, len(texts), self.background_batch):
            if not self.is_current(token):
                logger.info("Background audio loading cancelled for old session")
                return
            end = min(i + self.background_batch, len(texts))
            logger.info(f"[Background] generating audio for items {i} to {end - 1}")
            audio = await self.speech.synthesize_batch(texts[i:end])

            for offset, data in enumerate(audio):
                if not self.is_current(token):
                    return
                item = self.queue[i + offset] if i + offset < len(self.queue) else None
                if item is not None and data and item.audio_base64 is None:
                    item.audio_base64 = data
            logger.info(f"[Background] audio loaded for items {i} to {end - 1}")
        logger.info("[Background] all audio generation complete")

    async def aclose(self):
        """Invalidate the session and wait for background tasks to wind down."""
        self.cancel()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
