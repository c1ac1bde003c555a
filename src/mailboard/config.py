"""Configuration management for Mailboard.

This module handles application configuration using Pydantic settings.
Configuration can be loaded from environment variables or .env files.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with
    the MAILBOARD_ prefix (e.g., MAILBOARD_POSITION_GAP).
    """

    model_config = SettingsConfigDict(
        env_prefix="MAILBOARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Gmail Configuration
    gmail_credentials_path: Path = Field(
        default=Path("credentials.json"),
        description="Path to Gmail API credentials file",
    )
    gmail_token_path: Path = Field(
        default=Path("token.json"),
        description="Path to Gmail API token file",
    )
    gmail_scope: str = Field(
        default="https://www.googleapis.com/auth/gmail.modify",
        description=(
            "OAuth scope used for Gmail access. Moving cards between columns rewrites "
            "labels, so gmail.modify is the minimum that works."
        ),
    )
    gmail_user_id: str = Field(
        default="me",
        description="Gmail user id passed to every API call",
    )
    gmail_page_size: int = Field(
        default=50,
        description="Number of messages fetched per column page",
    )

    # Board Configuration
    board_db_path: Path = Field(
        default=Path("mailboard.sqlite3"),
        description="Path to local SQLite database holding positions, snoozes and summaries",
    )
    user_id: str = Field(
        default="me",
        description="Owner of the board; scopes positions and column configuration",
    )
    position_gap: int = Field(
        default=1000,
        gt=1,
        description="Spacing between neighbouring positions within a column",
    )
    snooze_buffer_seconds: float = Field(
        default=2.0,
        ge=0.0,
        description="Extra wait after a snooze deadline before reconciling",
    )
    snooze_label_name: str = Field(
        default="Snoozed",
        description="Gmail label that holds snoozed messages",
    )
    event_dedupe_size: int = Field(
        default=1024,
        description="Number of recent push events remembered for de-duplication",
    )
    history_poll_seconds: float = Field(
        default=30.0,
        description="Polling interval for the Gmail history push channel",
    )
    notice_ttl_seconds: float = Field(
        default=8.0,
        description="Lifetime of auto-clearing notices",
    )

    # Ollama Configuration
    ollama_host: str = Field(
        default="http://localhost:11434",
        description="Ollama API host URL",
    )
    ollama_model: str = Field(
        default="llama3.1:8b",
        description="Ollama model used for card summaries",
    )
    ollama_timeout: int = Field(
        default=30,
        description="Timeout for Ollama API requests in seconds",
    )
    summary_rate_limit_per_minute: int = Field(
        default=10,
        description="Maximum summary generations per rolling minute",
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
    max_retries: int = Field(
        default=3,
        description="Maximum number of attempts for transient Gmail failures",
    )
    retry_delay_seconds: float = Field(
        default=2.0,
        description="Initial delay between retries, doubled after each attempt",
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings: Application settings instance.
    """
    return Settings()
