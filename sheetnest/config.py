"""Process-wide settings for the nesting engine."""

from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables (``SHEETNEST_*``)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SHEETNEST_",
        extra="ignore",
    )

    log_level: str = Field(default="INFO", description="Root log level for setup_logging")

    # No-fit raster dispatch
    dispatcher: Literal["serial", "threads"] = Field(
        default="serial", description="Backend evaluating the no-fit raster grid"
    )
    workers: Optional[int] = Field(default=None, ge=1, description="Thread count for the threads backend")
    block_cells: int = Field(
        default=2_000_000, gt=0, description="Upper bound of grid cells evaluated per row block"
    )

    # Defaults for NestingConfig
    default_pitch: float = Field(default=1.0, gt=0, description="Raster dot spacing")


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def configure(settings: Optional[Settings]) -> None:
    """Override global settings (``None`` reloads from the environment on next access)."""
    global _settings
    _settings = settings
