"""
Application configuration.
All sensitive values loaded from environment variables.
"""
from typing import List
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://postgres:postgres@db:5432/byokchat"

    # Upstream vendor endpoints
    OPENAI_BASE_URL: str = "https://api.openai.com/v1"
    ANTHROPIC_BASE_URL: str = "https://api.anthropic.com/v1"
    ANTHROPIC_VERSION: str = "2023-06-01"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"

    # Seconds before an upstream request is abandoned
    UPSTREAM_TIMEOUT: float = 300.0

    # Generation defaults applied when a thread does not set them
    DEFAULT_TEMPERATURE: float = 0.7
    ANTHROPIC_DEFAULT_MAX_TOKENS: int = 1024

    # Streaming: max deltas buffered between the upstream reader and the relay
    STREAM_QUEUE_SIZE: int = 64

    # Model catalog cache lifetime
    MODEL_CACHE_TTL_HOURS: int = 24

    # Local rate limiting (per user bucket, single process)
    RATE_LIMIT_PER_MINUTE: int = 60
    RATE_LIMIT_INTERVAL_SECONDS: float = 60.0

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or console

    # Upstream debug logging - enables message content logging
    # WARNING: Set to True only for debugging, logs contain conversation text
    UPSTREAM_DEBUG_LOG: bool = False
    # Maximum length of message content to log (0 = unlimited)
    UPSTREAM_DEBUG_LOG_MAX_LENGTH: int = 2000

    def base_url_for(self, provider: str) -> str:
        """Get the API base URL for a provider."""
        base_urls = {
            "openai": self.OPENAI_BASE_URL,
            "anthropic": self.ANTHROPIC_BASE_URL,
            "gemini": self.GEMINI_BASE_URL,
        }
        return base_urls[provider.lower()].rstrip("/")

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
