"""Configuration management using pydantic-settings."""

from pathlib import Path
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process settings loaded from environment variables."""

    # Storage
    rag_config_path: Optional[Path] = None
    corpus_db_path: Path = Path("data/state/portfolio_corpus.sqlite3")

    # Cache
    redis_url: str = "redis://localhost:6379/0"
    cache_enabled: bool = True

    # Embedding provider credentials (override the YAML config when set)
    openai_api_key: str = ""
    openai_base_url: str = ""

    # Logging
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    log_to_file: bool = True

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, value):
        if value in (None, ""):
            return "INFO"
        return str(value).strip().upper()


def get_settings() -> Settings:
    """Build settings from the current environment."""
    return Settings()
