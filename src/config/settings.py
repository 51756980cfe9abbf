"""Application-wide configuration loading and validation."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_INSTRUCTIONS = (
    "You are a friendly phone assistant. Keep answers short and conversational, "
    "and speak in the caller's language."
)


class Settings(BaseSettings):
    """Centralized environment configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    log_level: str = Field(default="INFO")

    public_base_url: str | None = Field(
        default=None,
        description="Public base URL for Twilio webhooks (e.g. https://<ngrok>.ngrok-free.app).",
    )

    # Realtime speech service (upstream leg)
    openai_api_key: str | None = Field(default=None)
    realtime_url: str = Field(default="wss://api.openai.com/v1/realtime")
    realtime_model: str = Field(default="gpt-4o-realtime-preview")
    voice: str = Field(default="alloy")
    instructions: str = Field(default=DEFAULT_INSTRUCTIONS)
    greeting_enabled: bool = Field(
        default=True,
        description="Request an initial response right after the session is configured.",
    )
    greeting_instructions: str | None = Field(
        default="Greet the caller briefly and ask how you can help.",
    )
    turn_detection: Literal["server_vad", "none"] = Field(default="server_vad")
    vad_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    vad_prefix_padding_ms: int = Field(default=300, ge=0)
    vad_silence_duration_ms: int = Field(default=500, ge=0)
    upstream_connect_timeout_s: float = Field(default=10.0, gt=0)
    upstream_error_threshold: int = Field(
        default=3,
        ge=0,
        description="Stop the call after this many upstream error events with no audio in between (0 disables).",
    )

    # Audio formats
    upstream_audio_format: Literal["pcm16", "g711_ulaw"] = Field(default="pcm16")
    upstream_sample_rate: int = Field(default=16000)
    transcoder_engine: Literal["numpy", "ffmpeg"] = Field(default="numpy")
    ffmpeg_path: str = Field(default="ffmpeg")

    # Commit scheduling
    append_interval_ms: int = Field(default=200, gt=0)
    commit_interval_ms: int = Field(default=900, gt=0)
    min_commit_ms: float = Field(
        default=120.0,
        description="Upstream rejects commits below 100 ms; keep a margin above it.",
    )
    stop_flush_policy: Literal["commit", "discard"] = Field(
        default="commit",
        description="What to do with a partially filled commit window when a call stops.",
    )

    # Buffering / backpressure
    overflow_policy: Literal["block", "drop_oldest"] = Field(default="drop_oldest")
    queue_max_frames: int = Field(default=500, gt=0)
    max_buffered_ms: int = Field(default=10_000, gt=0)
    max_held_ms: int = Field(default=5_000, gt=0)
    outbound_frame_ms: int = Field(default=20, gt=0)

    # Downstream marks
    send_response_marks: bool = Field(default=True)
    mark_name: str = Field(default="response.done")

    shutdown_timeout_s: float = Field(default=2.0, gt=0)

    @field_validator("upstream_sample_rate")
    @classmethod
    def ensure_multiple_of_8k(cls, value: int) -> int:
        if value <= 0 or value % 8000:
            raise ValueError("upstream_sample_rate must be a positive multiple of 8000")
        return value

    @model_validator(mode="after")
    def ensure_commit_floor(self) -> Settings:
        if self.min_commit_ms < 100:
            raise ValueError("min_commit_ms must be at least 100 ms")
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance."""

    return Settings()
