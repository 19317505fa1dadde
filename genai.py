"""
Story Text & Speech Generation

Thin clients for the Gemini REST API:
- StoryTextGenerator: one sentence per note for a whole story, in one request
- SpeechSynthesizer: text → base64 16-bit PCM (24 kHz mono), with
  exponential backoff on rate limiting

Both fail soft. A missing API key, a backend error or a malformed answer turns
into fallback sentences or missing audio; nothing here raises into the game.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import random
from typing import Any, Optional

import httpx
import numpy as np

from config import Settings, get_settings
from errors import GenerationError, RateLimitError
from notes import get_character

logger = logging.getLogger(__name__)

# Gemini TTS returns raw little-endian 16-bit PCM
SPEECH_SAMPLE_RATE = 24000
SPEECH_CHANNELS = 1

SPEECH_MAX_ATTEMPTS = 3
SPEECH_BASE_DELAY = 1.0  # seconds, doubled after each rate-limited attempt


def fallback_sentence(note: str) -> str:
    return f"Play {note}!"


def offline_sentence(note: str) -> str:
    character = get_character(note)
    name = character.name if character else "your friend"
    return f"Help {name} play the note {note}!"


def decode_pcm16(audio_base64: str, channels: int = SPEECH_CHANNELS) -> np.ndarray:
    """Decode base64 PCM16 into float32 samples in [-1, 1), shape (frames, channels)."""
    raw = base64.b64decode(audio_base64)
    usable = len(raw) - len(raw) % (2 * channels)
    pcm = np.frombuffer(raw[:usable], dtype="<i2")
    return (pcm.astype(np.float32) / 32768.0).reshape(-1, channels)


class GeminiClient:
    """Async HTTP client for ``models/{model}:generateContent``."""

    def __init__(
        self,
        api_key: str,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        settings: Optional[Settings] = None,
    ):
        settings = settings or get_settings()
        self.api_key = api_key
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.timeout = timeout or settings.request_timeout
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> Optional["GeminiClient"]:
        """Build a client, or None when no API key is configured."""
        settings = settings or get_settings()
        if not settings.gemini_api_key:
            logger.warning("No Gemini API key configured; story text and speech use fallbacks")
            return None
        return cls(settings.gemini_api_key, settings=settings)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers={"x-goog-api-key": self.api_key},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def generate_content(self, model: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url}/models/{model}:generateContent"
        try:
            response = await self.client.post(url, json=payload)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 429:
                raise RateLimitError(f"{model} rate limited") from e
            raise GenerationError(f"{model} returned {e.response.status_code}") from e
        except (httpx.HTTPError, ValueError) as e:
            raise GenerationError(f"{model} request failed: {e}") from e


def _first_part(data: Any) -> dict[str, Any]:
    """First content part of a generateContent answer, or {} if the shape is off."""
    candidates = data.get("candidates") if isinstance(data, dict) else None
    if not isinstance(candidates, list) or not candidates or not isinstance(candidates[0], dict):
        return {}
    content = candidates[0].get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts or not isinstance(parts[0], dict):
        return {}
    return parts[0]


class StoryTextGenerator:
    """Writes one short story sentence per note in a single batched request."""

    def __init__(self, client: Optional[GeminiClient], model: Optional[str] = None):
        self.client = client
        self.model = model or get_settings().story_model

    def build_prompt(self, labels: list[str]) -> str:
        steps = []
        for i, note in enumerate(labels):
            character = get_character(note)
            name = character.name if character else "a friend"
            emoji = character.emoji if character else ""
            steps.append(f"Step {i + 1}: Note {note} (Character: {name}, Emoji: {emoji})")
        sequence = "\n".join(steps)
        return (
            "You are writing a continuous, interactive story for a 5-year-old "
            "child learning piano. The child plays through a sequence of notes.\n\n"
            f"Sequence of events (total steps: {len(labels)}):\n{sequence}\n\n"
            "Write one short, exciting sentence (5-15 words) for EACH step so the "
            "story flows like a mini-adventure. Each sentence mentions that step's "
            "character name and note name and describes an action that fits the "
            "character (a worm wiggles, a dino stomps).\n\n"
            f"Return ONLY a JSON array of exactly {len(labels)} strings."
        )

    async def generate_batch(self, labels: list[str]) -> list[str]:
        if self.client is None:
            return [offline_sentence(note) for note in labels]

        payload = {
            "contents": [{"parts": [{"text": self.build_prompt(labels)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": {"type": "ARRAY", "items": {"type": "STRING"}},
            },
        }
        try:
            data = await self.client.generate_content(self.model, payload)
            text = _first_part(data).get("text")
            texts = json.loads(text) if isinstance(text, str) and text else []
        except (GenerationError, ValueError) as e:
            logger.error(f"Story text generation failed: {e}")
            return [fallback_sentence(note) for note in labels]

        if isinstance(texts, list) and len(texts) == len(labels):
            return [str(t) if t else fallback_sentence(n) for t, n in zip(texts, labels)]

        logger.warning("Story text came back with the wrong length or shape; filling gaps")
        texts = texts if isinstance(texts, list) else []
        return [
            str(texts[i]) if i < len(texts) and texts[i] else fallback_sentence(note)
            for i, note in enumerate(labels)
        ]


class SpeechSynthesizer:
    """Text → base64 PCM audio, or None when the backend cannot deliver."""

    def __init__(
        self,
        client: Optional[GeminiClient],
        model: Optional[str] = None,
        voice: Optional[str] = None,
        max_concurrent: Optional[int] = None,
        max_attempts: int = SPEECH_MAX_ATTEMPTS,
        base_delay: float = SPEECH_BASE_DELAY,
    ):
        settings = get_settings()
        self.client = client
        self.model = model or settings.speech_model
        self.voice = voice or settings.speech_voice
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._semaphore = asyncio.Semaphore(max_concurrent or settings.speech_max_concurrent)

    async def synthesize(self, text: str) -> Optional[str]:
        if self.client is None or not text:
            return None

        payload = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {
                    "voiceConfig": {"prebuiltVoiceConfig": {"voiceName": self.voice}},
                },
            },
        }
        async with self._semaphore:
            for attempt in range(self.max_attempts):
                try:
                    data = await self.client.generate_content(self.model, payload)
                    inline = _first_part(data).get("inlineData")
                    audio = inline.get("data") if isinstance(inline, dict) else None
                    return audio if isinstance(audio, str) and audio else None
                except RateLimitError:
                    if attempt + 1 >= self.max_attempts:
                        logger.warning(f"Speech rate limited {self.max_attempts} times; giving up")
                        return None
                    backoff = self.base_delay * (2 ** attempt)
                    logger.warning(f"Speech rate limited, retry {attempt + 1}/{self.max_attempts - 1} after {backoff}s")
                    await asyncio.sleep(backoff)
                except GenerationError as e:
                    logger.error(f"Speech synthesis failed: {e}")
                    return None
        return None

    async def synthesize_batch(self, texts: list[str], jitter: float = 0.0) -> list[Optional[str]]:
        """Synthesize all *texts* concurrently; results keep the input order."""

        async def _one(text: str) -> Optional[str]:
            if jitter > 0:
                await asyncio.sleep(random.uniform(0, jitter))
            return await self.synthesize(text)

        return list(await asyncio.gather(*(_one(t) for t in texts)))
