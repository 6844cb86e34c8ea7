"""Configuration management for loopvault."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .git.utils import validate_ref_name


class LoopVaultSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    home: Path = Field(default=Path("~/.loopvault"), validation_alias="LOOPVAULT_HOME")
    project_root: Path = Field(default_factory=Path.cwd, validation_alias="PROJECT_ROOT")
    context_branch: str = Field(default="ctx/log", validation_alias="LOOPVAULT_CONTEXT_BRANCH")
    git_timeout: float = Field(default=10.0, validation_alias="LOOPVAULT_GIT_TIMEOUT")
    verify_result_path: Path | None = Field(default=None, validation_alias="LOOPVAULT_VERIFY_RESULT")
    lock_path: Path | None = Field(default=None, validation_alias="LOOPVAULT_LOCK_PATH")
    log_level: str = Field(default="INFO", validation_alias="LOOPVAULT_LOG_LEVEL")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "LOOPVAULT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("context_branch")
    @classmethod
    def _validate_context_branch(cls, value: str) -> str:
        return validate_ref_name(value.strip())

    @field_validator("git_timeout")
    @classmethod
    def _validate_git_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("LOOPVAULT_GIT_TIMEOUT must be > 0")
        return value

    @property
    def context_dir(self) -> Path:
        return self.home / "context-log"

    @property
    def sessions_dir(self) -> Path:
        return self.context_dir / "sessions"

    @property
    def decisions_dir(self) -> Path:
        return self.context_dir / "decisions"

    @property
    def head_path(self) -> Path:
        return self.context_dir / "HEAD.json"

    @property
    def session_state_path(self) -> Path:
        return self.home / ".session_state.json"

    @property
    def next_session_path(self) -> Path:
        return self.home / "NEXT_SESSION.md"

    @property
    def resolved_verify_result_path(self) -> Path:
        if self.verify_result_path is not None:
            return self.verify_result_path
        return self.home / "logs" / "verify_result.json"


@lru_cache(maxsize=1)
def get_settings() -> LoopVaultSettings:
    """Return cached settings instance."""

    settings = LoopVaultSettings()
    settings.home = settings.home.expanduser().resolve()
    settings.project_root = settings.project_root.expanduser().resolve()
    if settings.verify_result_path is not None:
        settings.verify_result_path = settings.verify_result_path.expanduser().resolve()
    if settings.lock_path is not None:
        settings.lock_path = settings.lock_path.expanduser().resolve()
    return settings


__all__ = ["LoopVaultSettings", "get_settings"]
