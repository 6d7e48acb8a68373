"""Configuration management using Pydantic Settings."""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from bundlehost.core.models import MAX_PAGE_SIZE


class Settings(BaseSettings):
    """Application settings loaded from ``BUNDLEHOST_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="BUNDLEHOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Plugins
    plugins_path: str = "plugins"

    # Storage
    storage_provider: Literal["memory", "filesystem", "redis"] = "filesystem"
    storage_directory: str | None = "instances"
    redis_url: str | None = "redis://localhost:6379"
    redis_key_prefix: str = "bundlehost"

    # Execution
    handler_timeout: float = Field(default=30.0, gt=0)
    page_size: int = 1000

    # Scheduler queues, name -> max concurrent jobs
    queue_concurrency: dict[str, int] = Field(
        default_factory=lambda: {"recurring": 2, "bundles": 2, "entities": 4}
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    @field_validator("page_size")
    @classmethod
    def validate_page_size(cls, v: int) -> int:
        if not 1 <= v <= MAX_PAGE_SIZE:
            raise ValueError(f"page_size must be between 1 and {MAX_PAGE_SIZE}, got {v}")
        return v

    def validate_storage(self) -> list[str]:
        """Return every problem with the storage section, empty if valid."""
        errors: list[str] = []
        if self.storage_provider == "filesystem":
            if not self.storage_directory or not self.storage_directory.strip():
                errors.append("storage_directory is required when storage_provider is 'filesystem'")
        elif self.storage_provider == "redis":
            if not self.redis_url or not self.redis_url.strip():
                errors.append("redis_url is required when storage_provider is 'redis'")
            if not self.redis_key_prefix.strip():
                errors.append("redis_key_prefix must not be empty")
        return errors


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None
