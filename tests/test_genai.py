"""Tests for the Gemini text/speech clients and their fallbacks."""
from __future__ import annotations

import base64
import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import numpy as np
import pytest

import genai
from config import Settings
from errors import GenerationError, RateLimitError
from genai import (
    GeminiClient,
    SpeechSynthesizer,
    StoryTextGenerator,
    decode_pcm16,
    fallback_sentence,
    offline_sentence,
)

URL = "https://example.invalid/v1beta"


def text_response(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def audio_response(data: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "audio/pcm", "data": data}}]}}]}


def mock_client(**kwargs) -> MagicMock:
    client = MagicMock()
    client.generate_content = AsyncMock(**kwargs)
    return client


@pytest.fixture
def gemini() -> GeminiClient:
    return GeminiClient("test-key", base_url=URL, settings=Settings(_env_file=None))


@pytest.fixture
def sleeps(monkeypatch) -> list[float]:
    delays: list[float] = []

    async def fake_sleep(delay):
        delays.append(delay)

    monkeypatch.setattr(genai.asyncio, "sleep", fake_sleep)
    return delays


# ─── Helpers ─────────────────────────────────────────────────────────────────

def test_fallback_sentences() -> None:
    assert fallback_sentence("G") == "Play G!"
    assert offline_sentence("D") == "Help Dino play the note D!"


def test_decode_pcm16_scales_to_unit_range() -> None:
    raw = np.array([0, 16384, -32768], dtype="<i2").tobytes()
    samples = decode_pcm16(base64.b64encode(raw).decode())
    assert samples.shape == (3, 1)
    assert samples.dtype == np.float32
    np.testing.assert_allclose(samples[:, 0], [0.0, 0.5, -1.0])


def test_decode_pcm16_drops_trailing_odd_byte() -> None:
    raw = np.array([16384], dtype="<i2").tobytes() + b"\x01"
    assert decode_pcm16(base64.b64encode(raw).decode()).shape == (1, 1)


# ─── GeminiClient ────────────────────────────────────────────────────────────

def test_from_settings_without_key_is_none(monkeypatch) -> None:
    for name in ("EAR_TRAINER_GEMINI_API_KEY", "GEMINI_API_KEY", "API_KEY"):
        monkeypatch.delenv(name, raising=False)
    assert GeminiClient.from_settings(Settings(_env_file=None)) is None


def test_from_settings_with_key() -> None:
    client = GeminiClient.from_settings(Settings(_env_file=None, gemini_api_key="abc"))
    assert client is not None
    assert client.api_key == "abc"


async def test_generate_content_returns_json(gemini) -> None:
    request = httpx.Request("POST", f"{URL}/models/m:generateContent")
    gemini._client = MagicMock()
    gemini._client.post = AsyncMock(return_value=httpx.Response(200, json=text_response("hi"), request=request))

    data = await gemini.generate_content("m", {"contents": []})

    assert data == text_response("hi")
    assert gemini._client.post.call_args.args[0] == f"{URL}/models/m:generateContent"


async def test_429_raises_rate_limit(gemini) -> None:
    request = httpx.Request("POST", f"{URL}/models/m:generateContent")
    gemini._client = MagicMock()
    gemini._client.post = AsyncMock(return_value=httpx.Response(429, request=request))

    with pytest.raises(RateLimitError):
        await gemini.generate_content("m", {})


async def test_server_error_raises_generation_error(gemini) -> None:
    request = httpx.Request("POST", f"{URL}/models/m:generateContent")
    gemini._client = MagicMock()
    gemini._client.post = AsyncMock(return_value=httpx.Response(500, request=request))

    with pytest.raises(GenerationError) as exc_info:
        await gemini.generate_content("m", {})
    assert not isinstance(exc_info.value, RateLimitError)


async def test_transport_error_raises_generation_error(gemini) -> None:
    gemini._client = MagicMock()
    gemini._client.post = AsyncMock(side_effect=httpx.ConnectError("unreachable"))

    with pytest.raises(GenerationError):
        await gemini.generate_content("m", {})


async def test_close_releases_http_client(gemini) -> None:
    http = gemini.client
    assert gemini.client is http
    await gemini.close()
    assert gemini._client is None


# ─── Story text ──────────────────────────────────────────────────────────────

async def test_offline_text_uses_character_names() -> None:
    texts = await StoryTextGenerator(None, model="m").generate_batch(["C", "B"])
    assert texts == ["Help Creepy play the note C!", "Help Becky play the note B!"]


async def test_text_batch_parses_json_array() -> None:
    client = mock_client(return_value=text_response(json.dumps(["Creepy wiggles to C!", "Dino stomps on D!"])))
    texts = await StoryTextGenerator(client, model="m").generate_batch(["C", "D"])
    assert texts == ["Creepy wiggles to C!", "Dino stomps on D!"]


async def test_short_text_batch_is_padded() -> None:
    client = mock_client(return_value=text_response(json.dumps(["Creepy wiggles to C!"])))
    texts = await StoryTextGenerator(client, model="m").generate_batch(["C", "D", "E"])
    assert texts == ["Creepy wiggles to C!", "Play D!", "Play E!"]


async def test_malformed_text_falls_back() -> None:
    client = mock_client(return_value=text_response("not json at all"))
    texts = await StoryTextGenerator(client, model="m").generate_batch(["C", "D"])
    assert texts == ["Play C!", "Play D!"]


async def test_text_backend_error_falls_back() -> None:
    client = mock_client(side_effect=GenerationError("boom"))
    texts = await StoryTextGenerator(client, model="m").generate_batch(["A"])
    assert texts == ["Play A!"]


@pytest.mark.parametrize("body", [
    [],
    {"candidates": ["oops"]},
    {"candidates": [{"content": {"parts": ["oops"]}}]},
    text_response(42),
])
async def test_unexpected_answer_shape_falls_back(body) -> None:
    client = mock_client(return_value=body)
    texts = await StoryTextGenerator(client, model="m").generate_batch(["C", "D"])
    assert texts == ["Play C!", "Play D!"]


def test_prompt_lists_every_step() -> None:
    prompt = StoryTextGenerator(None, model="m").build_prompt(["C", "D"])
    assert "Step 1: Note C (Character: Creepy" in prompt
    assert "Step 2: Note D (Character: Dino" in prompt
    assert "exactly 2 strings" in prompt


# ─── Speech ──────────────────────────────────────────────────────────────────

async def test_speech_retries_rate_limit_with_backoff(sleeps) -> None:
    client = mock_client(side_effect=[RateLimitError("429"), RateLimitError("429"), audio_response("QUJD")])
    speech = SpeechSynthesizer(client, model="m", voice="Puck", max_concurrent=1)

    assert await speech.synthesize("Play C!") == "QUJD"
    assert client.generate_content.await_count == 3
    assert sleeps == [1.0, 2.0]


async def test_speech_gives_up_after_max_attempts(sleeps) -> None:
    client = mock_client(side_effect=RateLimitError("429"))
    speech = SpeechSynthesizer(client, model="m", voice="Puck", max_concurrent=1)

    assert await speech.synthesize("Play C!") is None
    assert client.generate_content.await_count == 3
    assert sleeps == [1.0, 2.0]


async def test_speech_other_errors_are_not_retried(sleeps) -> None:
    client = mock_client(side_effect=GenerationError("500"))
    speech = SpeechSynthesizer(client, model="m", voice="Puck", max_concurrent=1)

    assert await speech.synthesize("Play C!") is None
    assert client.generate_content.await_count == 1
    assert sleeps == []


@pytest.mark.parametrize("body", [
    [],
    {"candidates": [{"content": "oops"}]},
    {"candidates": [{"content": {"parts": [{"inlineData": "oops"}]}}]},
    audio_response(None),
])
async def test_speech_unexpected_answer_shape_is_none(body) -> None:
    client = mock_client(return_value=body)
    speech = SpeechSynthesizer(client, model="m", voice="Puck", max_concurrent=1)
    assert await speech.synthesize("Play C!") is None


async def test_speech_payload_requests_audio_voice() -> None:
    client = mock_client(return_value=audio_response("QUJD"))
    speech = SpeechSynthesizer(client, model="tts", voice="Puck", max_concurrent=1)

    await speech.synthesize("Hello")

    model, payload = client.generate_content.call_args.args
    assert model == "tts"
    assert payload["generationConfig"]["responseModalities"] == ["AUDIO"]
    voice = payload["generationConfig"]["speechConfig"]["voiceConfig"]["prebuiltVoiceConfig"]
    assert voice == {"voiceName": "Puck"}


async def test_batch_keeps_input_order() -> None:
    async def echo(model, payload):
        return audio_response(payload["contents"][0]["parts"][0]["text"].upper())

    client = mock_client(side_effect=echo)
    speech = SpeechSynthesizer(client, model="m", voice="Puck", max_concurrent=2)

    assert await speech.synthesize_batch(["a", "b", "c"]) == ["A", "B", "C"]


async def test_speech_without_client_is_none() -> None:
    speech = SpeechSynthesizer(None, model="m", voice="Puck", max_concurrent=1)
    assert await speech.synthesize_batch(["a", "b"]) == [None, None]
