"""Sync configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from packsync.exceptions import ConfigurationError


class Settings(BaseSettings):
    """packsync settings."""

    model_config = SettingsConfigDict(
        env_prefix="PACKSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Core
    debug: bool = False

    # Source
    base_url: str = ""
    archive_mode: bool = False
    has_dir_checksum: bool = True

    # Target
    target_dir: Path = Path("./pack")
    pack_marker: str = "pack.mcmeta"

    # Remote layout
    dir_checksum_path: str = "metadata.sha1"
    manifest_path: str = "metadata.json"
    dist_path: str = "dist"
    session_hook_path: str = ""

    # Transfer
    max_concurrent_downloads: int = Field(default=4, ge=1, le=64)
    request_timeout_seconds: float = Field(default=60.0, gt=0)
    poll_interval_seconds: float = Field(default=1 / 30, gt=0, le=1)

    # At-rest encryption
    encryption_key: str = ""

    def validate_source(self) -> None:
        """Fail fast when no source is configured."""
        if not self.base_url.strip():
            raise ConfigurationError(
                "There is no source configured. Set PACKSYNC_BASE_URL or run 'packsync init'."
            )
