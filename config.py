"""
Ear Trainer Configuration

Environment-based settings for the generation backend and audio devices.
Game tuning constants live next to the code that uses them.
"""
from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "Piano Pals Ear Trainer"
    debug: bool = False
    log_level: str = "INFO"

    # Gemini (story text + speech). Without a key both degrade to fallback content.
    gemini_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "EAR_TRAINER_GEMINI_API_KEY", "GEMINI_API_KEY", "API_KEY"
        ),
    )
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    story_model: str = "gemini-3-flash-preview"
    speech_model: str = "gemini-2.5-flash-preview-tts"
    speech_voice: str = "Puck"  # friendly voice for young players
    request_timeout: float = 60.0  # seconds
    speech_max_concurrent: int = 4  # parallel TTS calls in flight

    # Audio devices (None = system default)
    input_device: Optional[int] = None
    output_device: Optional[int] = None

    model_config = SettingsConfigDict(
        env_prefix="EAR_TRAINER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
