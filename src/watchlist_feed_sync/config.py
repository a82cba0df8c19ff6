"""Configuration models for watchlist-feed-sync."""

from pathlib import Path

import yaml
from pydantic import BaseModel, Field


class FeedConfig(BaseModel):
    """Watchlist feed transport configuration."""

    timeout_seconds: float = 10.0
    max_retries: int = 3
    retry_backoff_seconds: float = 0.3  # First backoff step, doubled per retry
    max_pages: int = 50  # Pagination guard


class RequestServiceConfig(BaseModel):
    """Request-submission service (Overseerr compatible API)."""

    url: str = "http://localhost:5055"
    api_key: str = ""
    timeout_seconds: float = 30.0


class SyncConfig(BaseModel):
    """Sync scheduler configuration."""

    interval_seconds: float = 600.0
    run_on_startup: bool = True


class DatabaseConfig(BaseModel):
    """Database configuration."""

    path: str = "/data/watchlist-feed-sync.db"
    journal_mode: str = "WAL"  # WAL, DELETE, TRUNCATE, MEMORY, OFF


class ServerSettings(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = 8080


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"


class Config(BaseModel):
    """Root configuration model."""

    feed: FeedConfig = Field(default_factory=FeedConfig)
    requests: RequestServiceConfig = Field(default_factory=RequestServiceConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerSettings = Field(default_factory=ServerSettings)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "Config":
        """Load configuration from a YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls.model_validate(data or {})


# Global config instance
_config: Config | None = None


def get_config() -> Config:
    """Get the global configuration instance."""
    if _config is None:
        raise RuntimeError("Configuration not loaded. Call load_config() first.")
    return _config


def load_config(path: str | Path) -> Config:
    """Load configuration from file and set as global."""
    global _config
    _config = Config.from_yaml(path)
    return _config
