"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")

    # Process
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)

    # Deepgram live transcription
    deepgram_api_key: str | None = Field(
        default=None,
        description="Without a key no upstream connection is attempted; calls proceed untranscribed.",
    )
    deepgram_listen_url: str = Field(default="wss://api.deepgram.com/v1/listen")
    deepgram_model: str = Field(default="nova-2")
    deepgram_language: str = Field(default="pt-BR")
    deepgram_encoding: str = Field(default="mulaw")
    deepgram_sample_rate: int = Field(default=8000)
    deepgram_smart_format: bool = Field(default=True)
    deepgram_interim_results: bool = Field(default=True)
    deepgram_endpointing_ms: int = Field(default=500, ge=0)

    # Call sessions
    session_grace_seconds: float = Field(
        default=5.0,
        ge=0.0,
        description="Delay between call teardown and registry removal.",
    )
    pending_audio_max_frames: int = Field(
        default=3000,
        ge=0,
        description="Frames buffered per link before the upstream is ready (0 = unbounded).",
    )
    pending_audio_overflow: Literal["drop_oldest", "abort"] = Field(default="drop_oldest")
    upstream_close_timeout_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="How long a closing link waits for final transcripts.",
    )
    observer_queue_size: int = Field(default=256, ge=1)
    teardown_on_stream_disconnect: bool = Field(
        default=True,
        description="Tear the session down when the media stream drops without a stop event.",
    )

    # Twilio (Voice SDK calls from the browser)
    twilio_account_sid: str | None = Field(default=None)
    twilio_api_key_sid: str | None = Field(default=None)
    twilio_api_key_secret: str | None = Field(default=None)
    twilio_twiml_app_sid: str | None = Field(default=None)
    twilio_caller_id: str | None = Field(default=None, description="E.164, e.g. +5511...")
    twilio_token_identity: str = Field(default="browser-caller")
    twilio_token_ttl_seconds: int = Field(default=3600, ge=60)
    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for the media stream (e.g. https://<ngrok>.ngrok-free.app).",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
