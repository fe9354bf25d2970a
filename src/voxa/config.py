"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

_PRODUCTION_RATE_LIMIT_MAX = 10
_DEVELOPMENT_RATE_LIMIT_MAX = 50


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("ENVIRONMENT", "NODE_ENV", "environment"),
    )

    # Frontend origin allowed by CORS
    frontend_url: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices(
            "FRONTEND_URL", "VITE_FRONTEND_URL", "frontend_url"
        ),
    )

    # Speech provider
    openai_api_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "openai_base_url"),
    )
    openai_tts_model: str = Field(
        default="gpt-4o-mini-tts",
        validation_alias=AliasChoices("OPENAI_TTS_MODEL", "openai_tts_model"),
    )
    openai_request_timeout: float = Field(
        default=120.0,
        ge=1,
        validation_alias=AliasChoices("OPENAI_TIMEOUT", "openai_request_timeout"),
    )
    tts_max_chars: int = Field(
        default=500,
        ge=1,
        validation_alias=AliasChoices("TTS_MAX_CHARS", "tts_max_chars"),
    )

    # Rate limiting
    tts_rate_limit_max: Optional[int] = Field(
        default=None,
        ge=1,
        validation_alias=AliasChoices("TTS_RATE_LIMIT_MAX", "tts_rate_limit_max"),
    )
    tts_rate_limit_window_seconds: int = Field(
        default=15 * 60,
        ge=1,
        validation_alias=AliasChoices(
            "TTS_RATE_LIMIT_WINDOW_SECONDS",
            "tts_rate_limit_window_seconds",
        ),
    )
    api_rate_limit_max: int = Field(
        default=100,
        ge=1,
        validation_alias=AliasChoices("API_RATE_LIMIT_MAX", "api_rate_limit_max"),
    )
    api_rate_limit_window_seconds: int = Field(
        default=15 * 60,
        ge=1,
        validation_alias=AliasChoices(
            "API_RATE_LIMIT_WINDOW_SECONDS",
            "api_rate_limit_window_seconds",
        ),
    )
    disable_rate_limit: bool = Field(
        default=False,
        validation_alias=AliasChoices("DISABLE_RATE_LIMIT", "disable_rate_limit"),
    )
    rate_limit_backend: Literal["memory", "sqlite"] = Field(
        default="memory",
        validation_alias=AliasChoices("RATE_LIMIT_BACKEND", "rate_limit_backend"),
    )
    rate_limit_database_path: Path = Field(
        default_factory=lambda: Path("data/rate_limits.db"),
        validation_alias=AliasChoices(
            "RATE_LIMIT_DATABASE_PATH", "rate_limit_database_path"
        ),
    )

    # Relational store
    database_enabled: bool = Field(
        default=True,
        validation_alias=AliasChoices("DATABASE_ENABLED", "database_enabled"),
    )
    database_path: Path = Field(
        default_factory=lambda: Path("data/voxa.db"),
        validation_alias=AliasChoices("DATABASE_PATH", "database_path"),
    )

    # Transcoder
    ffmpeg_path: str = Field(
        default="ffmpeg",
        validation_alias=AliasChoices("FFMPEG_PATH", "ffmpeg_path"),
    )

    # Identity provider (Supabase)
    supabase_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices(
            "SUPABASE_URL", "VITE_SUPABASE_URL", "supabase_url"
        ),
    )
    supabase_anon_key: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "SUPABASE_ANON_KEY", "VITE_SUPABASE_ANON_KEY", "supabase_anon_key"
        ),
    )
    auth_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias=AliasChoices("AUTH_TIMEOUT_SECONDS", "auth_timeout"),
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "log_level"),
    )
    log_dir: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("LOG_DIR", "log_dir"),
    )
    log_retention_hours: int = Field(
        default=48,
        ge=0,
        validation_alias=AliasChoices("LOG_RETENTION_HOURS", "log_retention_hours"),
    )

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def rate_limit_max(self) -> int:
        if self.tts_rate_limit_max is not None:
            return self.tts_rate_limit_max
        if self.is_production:
            return _PRODUCTION_RATE_LIMIT_MAX
        return _DEVELOPMENT_RATE_LIMIT_MAX

    @property
    def rate_limit_disabled(self) -> bool:
        # The bypass flag never applies in production.
        return self.disable_rate_limit and not self.is_production

    @property
    def supabase_base_url(self) -> str | None:
        if not self.supabase_url or not self.supabase_url.strip():
            return None
        return self.supabase_url.strip().rstrip("/")

    @property
    def openai_speech_url(self) -> str:
        return f"{str(self.openai_base_url).rstrip('/')}/audio/speech"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached `Settings` instance."""

    return Settings()  # pyright: ignore[reportCallIssue]


__all__ = ["PROJECT_ROOT", "Settings", "get_settings"]
