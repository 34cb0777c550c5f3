"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_SYSTEM_PROMPT = (
    "Sen yardımcı bir AI asistanısın. Kısa, net ve Türkçe cevaplar ver. "
    "Maksimum 50 kelime kullan."
)


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Provider credentials
    openai_api_key: SecretStr | None = Field(
        default=None, validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key")
    )
    deepgram_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("DEEPGRAM_API_KEY", "deepgram_api_key"),
    )
    access_token_secret: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("ACCESS_TOKEN_SECRET", "access_token_secret"),
    )

    # Language model
    llm_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("LLM_BASE_URL", "llm_base_url"),
    )
    llm_model: str = Field(
        default="gpt-4o-mini",
        validation_alias=AliasChoices("LLM_MODEL", "llm_model"),
    )
    llm_system_prompt: Optional[str] = Field(
        default=DEFAULT_SYSTEM_PROMPT,
        validation_alias=AliasChoices("LLM_SYSTEM_PROMPT", "llm_system_prompt"),
    )
    llm_max_tokens: int = Field(
        default=150,
        ge=1,
        validation_alias=AliasChoices("LLM_MAX_TOKENS", "llm_max_tokens"),
    )
    llm_temperature: float = Field(
        default=0.5,
        ge=0,
        le=2,
        validation_alias=AliasChoices("LLM_TEMPERATURE", "llm_temperature"),
    )
    request_timeout: float = Field(
        default=30.0,
        ge=1,
        validation_alias=AliasChoices("LLM_TIMEOUT", "request_timeout"),
    )
    history_turns: int = Field(
        default=6,
        ge=0,
        validation_alias=AliasChoices("HISTORY_TURNS", "history_turns"),
    )

    # Speech recognition
    deepgram_listen_url: str = Field(
        default="wss://api.deepgram.com/v1/listen",
        validation_alias=AliasChoices("DEEPGRAM_LISTEN_URL", "deepgram_listen_url"),
    )
    stt_model: str = Field(
        default="nova-2",
        validation_alias=AliasChoices("STT_MODEL", "stt_model"),
    )
    stt_sample_rate: int = Field(
        default=16000,
        validation_alias=AliasChoices("STT_SAMPLE_RATE", "stt_sample_rate"),
    )
    stt_channels: int = Field(
        default=1,
        ge=1,
        le=2,
        validation_alias=AliasChoices("STT_CHANNELS", "stt_channels"),
    )
    stt_connect_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices("STT_CONNECT_TIMEOUT", "stt_connect_timeout_seconds"),
    )
    stt_finish_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        validation_alias=AliasChoices("STT_FINISH_TIMEOUT", "stt_finish_timeout_seconds"),
    )
    stt_max_stream_seconds: float = Field(
        default=290.0,
        gt=0,
        validation_alias=AliasChoices("STT_MAX_STREAM_SECONDS", "stt_max_stream_seconds"),
    )
    default_language: str = Field(
        default="tr",
        validation_alias=AliasChoices("DEFAULT_LANGUAGE", "default_language"),
    )

    # Speech synthesis
    tts_model: str = Field(
        default="tts-1",
        validation_alias=AliasChoices("TTS_MODEL", "tts_model"),
    )
    default_voice: str = Field(
        default="alloy",
        validation_alias=AliasChoices("DEFAULT_VOICE", "default_voice"),
    )
    allowed_voices: list[str] = Field(
        default_factory=lambda: [
            "alloy",
            "ash",
            "coral",
            "echo",
            "fable",
            "nova",
            "onyx",
            "sage",
            "shimmer",
        ],
        validation_alias=AliasChoices("ALLOWED_VOICES", "allowed_voices"),
    )
    tts_response_format: str = Field(
        default="mp3",
        validation_alias=AliasChoices("TTS_RESPONSE_FORMAT", "tts_response_format"),
    )
    tts_speed: float = Field(
        default=1.0,
        ge=0.25,
        le=4.0,
        validation_alias=AliasChoices("TTS_SPEED", "tts_speed"),
    )
    tts_streaming: bool = Field(
        default=True,
        validation_alias=AliasChoices("TTS_STREAMING", "tts_streaming"),
    )
    transcription_model: str = Field(
        default="whisper-1",
        validation_alias=AliasChoices("TRANSCRIPTION_MODEL", "transcription_model"),
    )

    # Pipeline tuning
    coalesce_window_ms: int = Field(
        default=40,
        ge=1,
        validation_alias=AliasChoices("COALESCE_WINDOW_MS", "coalesce_window_ms"),
    )
    coalesce_max_hold_ms: int = Field(
        default=200,
        ge=1,
        validation_alias=AliasChoices("COALESCE_MAX_HOLD_MS", "coalesce_max_hold_ms"),
    )
    coalesce_max_bytes: int = Field(
        default=32000,
        ge=1,
        validation_alias=AliasChoices("COALESCE_MAX_BYTES", "coalesce_max_bytes"),
    )
    min_chunk_bytes: int = Field(
        default=160,
        ge=0,
        validation_alias=AliasChoices("MIN_CHUNK_BYTES", "min_chunk_bytes"),
    )
    silence_timeout_seconds: float = Field(
        default=1.8,
        gt=0,
        validation_alias=AliasChoices("SILENCE_TIMEOUT", "silence_timeout_seconds"),
    )
    min_terminal_chars: int = Field(
        default=8,
        ge=1,
        validation_alias=AliasChoices("MIN_TERMINAL_CHARS", "min_terminal_chars"),
    )
    fragment_min_chars: int = Field(
        default=0,
        ge=0,
        validation_alias=AliasChoices("FRAGMENT_MIN_CHARS", "fragment_min_chars"),
    )
    max_upload_bytes: int = Field(
        default=10 * 1024 * 1024,
        ge=1,
        validation_alias=AliasChoices("MAX_UPLOAD_BYTES", "max_upload_bytes"),
    )

    # Trial meter
    meter_tick_seconds: float = Field(
        default=1.0,
        gt=0,
        validation_alias=AliasChoices("METER_TICK_SECONDS", "meter_tick_seconds"),
    )
    meter_sync_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices("METER_SYNC_SECONDS", "meter_sync_seconds"),
    )
    meter_tolerance_minutes: float = Field(
        default=0.05,
        ge=0,
        validation_alias=AliasChoices("METER_TOLERANCE_MINUTES", "meter_tolerance_minutes"),
    )

    database_path: Path = Field(
        default_factory=lambda: Path("data/companion_voice.db"),
        validation_alias=AliasChoices("DATABASE_PATH", "database_path"),
    )

    @property
    def coalesce_window_seconds(self) -> float:
        return self.coalesce_window_ms / 1000.0

    @property
    def coalesce_max_hold_seconds(self) -> float:
        return self.coalesce_max_hold_ms / 1000.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["DEFAULT_SYSTEM_PROMPT", "PROJECT_ROOT", "Settings", "get_settings"]
