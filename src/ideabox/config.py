"""Configuration management for IdeaBox.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ModelPricing(BaseModel):
    """USD price per 1K tokens for a single model."""

    input_per_1k: float = Field(ge=0.0)
    output_per_1k: float = Field(ge=0.0)


# GPT-4.1-mini: $0.15 per 1M input tokens, $0.60 per 1M output tokens.
DEFAULT_MODEL_PRICING: dict[str, ModelPricing] = {
    "gpt-4.1-mini": ModelPricing(input_per_1k=0.00015, output_per_1k=0.0006),
    "gpt-4o-mini": ModelPricing(input_per_1k=0.00015, output_per_1k=0.0006),
    "gpt-4o": ModelPricing(input_per_1k=0.0025, output_per_1k=0.01),
}


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the IDEABOX_ prefix (e.g., IDEABOX_OPENAI_MODEL).
    """

    model_config = SettingsConfigDict(
        env_prefix="IDEABOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenAI Configuration
    openai_api_key: str | None = Field(
        default=None,
        description="OpenAI API key (starts with 'sk-')",
    )
    openai_model: str = Field(
        default="gpt-4.1-mini",
        description="Model used for all email analysis",
    )
    openai_temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=2.0,
        description="Default sampling temperature for analysis calls",
    )
    openai_max_tokens: int = Field(
        default=500,
        description="Default output token budget for analysis calls",
    )
    openai_timeout: float = Field(
        default=30.0,
        description="Timeout for OpenAI API requests in seconds",
    )
    model_pricing: dict[str, ModelPricing] = Field(
        default_factory=lambda: dict(DEFAULT_MODEL_PRICING),
        description="Per-model token pricing used for cost estimates",
    )

    # Google OAuth / Gmail Configuration
    google_client_id: str | None = Field(
        default=None,
        description="OAuth client ID used to refresh Gmail access tokens",
    )
    google_client_secret: str | None = Field(
        default=None,
        description="OAuth client secret used to refresh Gmail access tokens",
    )
    google_token_uri: str = Field(
        default="https://oauth2.googleapis.com/token",
        description="Google OAuth token endpoint",
    )
    gmail_scope: str = Field(
        default="https://www.googleapis.com/auth/gmail.readonly",
        description="OAuth scope requested when connecting a Gmail account",
    )
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        description="Path to the OAuth client secrets file used by 'accounts connect'",
    )

    # Sync Configuration
    max_body_chars: int = Field(
        default=16000,
        gt=0,
        description="Maximum plain-text body characters kept per message",
    )
    sync_max_results: int = Field(
        default=100,
        ge=1,
        le=500,
        description="Default number of message IDs listed per account sync",
    )
    sync_timeout_seconds: float = Field(
        default=300.0,
        description="Overall time budget for a sync invocation, enforced by the caller",
    )
    gmail_fetch_batch_size: int = Field(
        default=50,
        ge=1,
        description="Number of messages fetched between batch pauses",
    )
    token_expiry_buffer_seconds: int = Field(
        default=300,
        description="Refresh access tokens this many seconds before they expire",
    )

    # Retry Configuration
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Maximum attempts (including the first) for transient failures",
    )
    retry_base_delay_ms: int = Field(
        default=1000,
        description="Base backoff delay in milliseconds (doubles each attempt)",
    )
    retry_max_delay_ms: int = Field(
        default=10000,
        description="Upper bound on the backoff delay in milliseconds",
    )
    gmail_rate_limit_delay_ms: int = Field(
        default=10000,
        description="Delay after a Gmail 429 that carries no Retry-After header",
    )

    # Analysis Configuration
    analysis_max_emails: int = Field(
        default=50,
        ge=1,
        le=200,
        description="Maximum messages analyzed after a sync",
    )

    # Storage Configuration
    database_path: Path = Field(
        default=Path("ideabox.sqlite3"),
        description="Path to the SQLite database used by the local message store",
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
