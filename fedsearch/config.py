"""Configuration management with Pydantic settings."""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_default_repository() -> Path:
    """Return the repository root, defaulting to ./WEB-INF under the working directory."""
    repository = os.getenv("FEDSEARCH_REPOSITORY")
    if repository:
        return Path(repository)
    return Path.cwd() / "WEB-INF"


class Settings(BaseSettings):
    """fedsearch configuration settings.

    Precedence: CLI flag > environment variable > .env file > defaults.
    """

    model_config = SettingsConfigDict(
        env_prefix="FEDSEARCH_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Locations
    repository: Path = Field(
        default_factory=get_default_repository,
        description="Private repository root; its parent is the public root",
    )

    index_dir: Path | None = Field(
        default=None,
        description="Override the index root (defaults to <repository>/index)",
    )

    # Query engine
    max_workers: int = Field(
        default=8,
        ge=1,
        description="Upper bound on concurrent per-index sub-searches for one query",
    )

    max_result_window: int = Field(
        default=10_000,
        ge=1,
        description="Largest page * hits_per_page window a query may request",
    )

    facet_limit: int = Field(
        default=10,
        ge=1,
        description="Default number of values returned per facet",
    )

    default_fields: list[str] = Field(
        default_factory=lambda: ["fulltext"],
        description="Fields searched when a predicate term names no field",
    )

    # Indexing
    tokenizer: str = Field(
        default="default",
        description="Tantivy tokenizer used for analyzed fields (e.g. default, en_stem)",
    )

    writer_heap_size: int = Field(
        default=50_000_000,
        ge=15_000_000,
        description="Tantivy writer heap size in bytes",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="WARNING",
        description="Root log level applied by the CLI",
    )

    def get_index_dir(self) -> Path:
        """Get path to the index root directory (not created)."""
        if self.index_dir is not None:
            return self.index_dir
        return self.repository / "index"

    def get_public_dir(self) -> Path:
        """Get the public content root (parent of the repository)."""
        return self.repository.parent


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings | None) -> None:
    """Set the global settings instance (useful for testing)."""
    global _settings
    _settings = settings
