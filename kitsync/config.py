"""Engine configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MANIFEST_FILE = "manifest.json"
BACKUPS_DIR = "backups"


class Settings(BaseSettings):
    """kitsync runtime settings."""

    model_config = SettingsConfigDict(
        env_prefix="KITSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # State directory, relative to the project root
    state_dir: str = ".kitsync"

    # Backups
    backups_enabled: bool = True
    backup_retention: int = Field(default=5, ge=1)

    # Local release tree used by the directory provider
    releases_dir: Path | None = None

    debug: bool = False

    @field_validator("state_dir")
    @classmethod
    def _state_dir_is_relative(cls, value: str) -> str:
        cleaned = value.strip().rstrip("/")
        if not cleaned or cleaned == "." or Path(cleaned).is_absolute() or ".." in Path(cleaned).parts:
            msg = f"state_dir must be a relative directory name, got {value!r}"
            raise ValueError(msg)
        return cleaned

    def state_root(self, project_root: Path) -> Path:
        return project_root / self.state_dir

    def manifest_path(self, project_root: Path) -> Path:
        return self.state_root(project_root) / MANIFEST_FILE

    def backup_root(self, project_root: Path) -> Path:
        return self.state_root(project_root) / BACKUPS_DIR
