"""Deployment settings.

Values that differ per deployment and must not travel with the shared,
versioned engine configuration: the HASH salt, file locations and logging.
Loaded from environment variables prefixed ``PHIGUARD_`` or a ``.env`` file.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Per-deployment settings."""

    model_config = SettingsConfigDict(
        env_prefix="PHIGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    hash_salt: SecretStr = Field(
        default=SecretStr(""),
        description="Per-deployment salt for the HASH transformation.",
    )
    config_path: Path | None = Field(
        default=None,
        description="Engine configuration YAML. Built-in defaults when unset.",
    )
    ledger_path: Path | None = Field(
        default=None,
        description="JSON Lines file backing the audit ledger.",
    )
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="rich", pattern="^(rich|json)$")
