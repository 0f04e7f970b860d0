"""
Application configuration
"""

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "Voice Relay"
    APP_VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # Server
    HOST: str = "0.0.0.0"  # nosec B104 - intentional for container deployments
    PORT: int = 8000

    # Logging
    LOG_LEVEL: str = "INFO"
    VOICE_LOG_LEVEL: str = "STANDARD"  # MINIMAL, STANDARD, VERBOSE, DEBUG

    # OpenAI
    # IMPORTANT: sensitive credential, never log it
    OPENAI_API_KEY: str
    OPENAI_TIMEOUT_SEC: int = 30

    # One-shot text -> speech pipeline
    CHAT_MODEL: str = "gpt-4"
    TTS_MODEL: str = "tts-1"
    TTS_VOICE: str = "alloy"
    MAX_TEXT_LENGTH: int = 4000

    # OpenAI Realtime API settings
    REALTIME_BASE_URL: str = "wss://api.openai.com/v1/realtime"
    REALTIME_MODEL: str = "gpt-4o-realtime-preview-2024-10-01"
    REALTIME_CONNECT_TIMEOUT_SEC: float = 10.0

    # Realtime session defaults pushed on every new connection
    REALTIME_VOICE: str = "alloy"
    REALTIME_TEMPERATURE: float = 0.8
    REALTIME_MAX_OUTPUT_TOKENS: int = 1000
    VAD_THRESHOLD: float = 0.5
    VAD_PREFIX_PADDING_MS: int = 300
    VAD_SILENCE_DURATION_MS: int = 800

    # CORS (comma-separated list of allowed origins)
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173"

    # Rate limiting (fixed window per client address)
    RATE_LIMIT_REQUESTS: int = 100
    RATE_LIMIT_WINDOW_MINUTES: int = 15

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def allowed_origins(self) -> List[str]:
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    @property
    def rate_limit(self) -> str:
        return f"{self.RATE_LIMIT_REQUESTS} per {self.RATE_LIMIT_WINDOW_MINUTES} minutes"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached Settings instance.

    Raises pydantic's ValidationError when OPENAI_API_KEY is missing.
    """
    return Settings()
