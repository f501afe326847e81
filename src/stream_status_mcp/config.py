"""Configuration management for the stream status service."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SERVICE_DATA_DIR = Path("~/.cache/mcp-services/stream-workflow-status")


class StreamStatusSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file.

    Path defaults are derived from ``project_root`` so that every process
    pointed at the same project shares one database and one lock file.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore", populate_by_name=True
    )

    project_root: Path = Field(default_factory=Path.cwd, validation_alias="PROJECT_ROOT")
    worktree_root: Path | None = Field(default=None, validation_alias="WORKTREE_ROOT")
    database_path: Path | None = Field(default=None, validation_alias="DATABASE_PATH")
    lock_file_path: Path | None = Field(default=None, validation_alias="LOCK_FILE_PATH")
    streams_dir: Path | None = Field(default=None, validation_alias="STREAMS_DIR")
    api_port: int | None = Field(default=None, validation_alias="API_PORT")
    api_enabled: bool = Field(default=True, validation_alias="API_ENABLED")
    log_level: str = Field(default="INFO", validation_alias="STREAM_STATUS_LOG_LEVEL")
    summary_interval: float = Field(default=10.0, validation_alias="SUMMARY_INTERVAL_SECONDS")
    scan_max_commits: int = Field(default=50, validation_alias="SCAN_MAX_COMMITS")
    scan_lookback_days: int = Field(default=7, validation_alias="SCAN_LOOKBACK_DAYS")
    base_branch: str = Field(default="main", validation_alias="BASE_BRANCH")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "STREAM_STATUS_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("api_port", mode="before")
    @classmethod
    def _parse_api_port(cls, value):
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value

    @field_validator("api_port")
    @classmethod
    def _validate_api_port(cls, value: int | None) -> int | None:
        if value is not None and not 1 <= value <= 65535:
            raise ValueError(f"Invalid API_PORT: {value}. Must be between 1-65535")
        return value

    @field_validator("api_enabled", mode="before")
    @classmethod
    def _parse_api_enabled(cls, value):
        if isinstance(value, str):
            return value.strip().lower() not in {"false", "0", "no", "off"}
        return value

    @field_validator("summary_interval")
    @classmethod
    def _validate_summary_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("SUMMARY_INTERVAL_SECONDS must be > 0")
        return value

    @field_validator("scan_max_commits", "scan_lookback_days")
    @classmethod
    def _validate_scan_limits(cls, value: int) -> int:
        if value < 1:
            raise ValueError("Scan limits must be >= 1")
        return value

    @field_validator("base_branch")
    @classmethod
    def _validate_base_branch(cls, value: str) -> str:
        value = value.strip()
        if not value or value.startswith("-"):
            raise ValueError("BASE_BRANCH must be a branch name")
        return value

    @model_validator(mode="after")
    def _derive_paths(self) -> "StreamStatusSettings":
        root = self.project_root.expanduser().resolve()
        if not root.name:
            raise ValueError("PROJECT_NAME could not be determined from PROJECT_ROOT")
        self.project_root = root
        storage_dir = self.storage_dir
        if self.worktree_root is None:
            self.worktree_root = root.parent / f"{root.name}-worktrees"
        if self.database_path is None:
            self.database_path = storage_dir / "streams.db"
        if self.lock_file_path is None:
            self.lock_file_path = storage_dir / ".api-server.lock"
        if self.streams_dir is None:
            self.streams_dir = root / ".project" / "plan" / "streams"
        return self

    @property
    def project_name(self) -> str:
        return self.project_root.name

    @property
    def storage_dir(self) -> Path:
        return SERVICE_DATA_DIR.expanduser() / "projects" / self.project_name


@lru_cache(maxsize=1)
def get_settings() -> StreamStatusSettings:
    """Return cached settings instance."""

    settings = StreamStatusSettings()
    settings.worktree_root = settings.worktree_root.expanduser().resolve()
    settings.database_path = settings.database_path.expanduser().resolve()
    settings.lock_file_path = settings.lock_file_path.expanduser().resolve()
    settings.streams_dir = settings.streams_dir.expanduser().resolve()
    return settings


__all__ = ["StreamStatusSettings", "get_settings"]
