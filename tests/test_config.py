"""Tests for environment-driven settings."""
from __future__ import annotations

import pytest

from config import Settings

KEY_NAMES = ("EAR_TRAINER_GEMINI_API_KEY", "GEMINI_API_KEY", "API_KEY")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in KEY_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults() -> None:
    settings = Settings(_env_file=None)
    assert settings.gemini_api_key is None
    assert settings.speech_voice == "Puck"
    assert settings.speech_max_concurrent == 4
    assert settings.input_device is None


@pytest.mark.parametrize("name", KEY_NAMES)
def test_api_key_aliases(monkeypatch, name: str) -> None:
    monkeypatch.setenv(name, "secret")
    assert Settings(_env_file=None).gemini_api_key == "secret"


def test_prefixed_overrides(monkeypatch) -> None:
    monkeypatch.setenv("EAR_TRAINER_SPEECH_VOICE", "Kore")
    monkeypatch.setenv("EAR_TRAINER_INPUT_DEVICE", "2")
    settings = Settings(_env_file=None)
    assert settings.speech_voice == "Kore"
    assert settings.input_device == 2


def test_env_file(tmp_path) -> None:
    env = tmp_path / ".env"
    env.write_text("GEMINI_API_KEY=from-file\nEAR_TRAINER_DEBUG=true\n", encoding="utf-8")
    settings = Settings(_env_file=str(env))
    assert settings.gemini_api_key == "from-file"
    assert settings.debug is True
