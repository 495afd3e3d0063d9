"""Configuration management for Sandbox MCP."""

from __future__ import annotations

import shlex
from functools import lru_cache
from pathlib import Path
from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class SandboxSettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    git_path: str | None = Field(default=None, validation_alias="SANDBOX_GIT_PATH")
    devcontainer_path: str | None = Field(default=None, validation_alias="SANDBOX_DEVCONTAINER_PATH")
    docker_path: str | None = Field(default=None, validation_alias="SANDBOX_DOCKER_PATH")
    agent_command: str = Field(default="copilot", validation_alias="SANDBOX_AGENT_COMMAND")
    agent_flags: Annotated[tuple[str, ...], NoDecode] = Field(
        default=("--allow-all-tools",), validation_alias="SANDBOX_AGENT_FLAGS"
    )
    branch_prefix: str = Field(default="sandbox/", validation_alias="SANDBOX_BRANCH_PREFIX")
    worktree_dir: Path | None = Field(default=None, validation_alias="SANDBOX_WORKTREE_DIR")
    ledger_dirname: str = Field(default=".orchestrator", validation_alias="SANDBOX_LEDGER_DIR")
    log_level: str = Field(default="INFO", validation_alias="SANDBOX_LOG_LEVEL")
    progress_interval: float = Field(default=15.0, validation_alias="SANDBOX_PROGRESS_INTERVAL")
    exec_timeout: float | None = Field(default=None, validation_alias="SANDBOX_EXEC_TIMEOUT")
    forward_token: bool = Field(default=True, validation_alias="SANDBOX_FORWARD_TOKEN")
    token_env_var: str = Field(default="GH_TOKEN", validation_alias="SANDBOX_TOKEN_ENV")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "SANDBOX_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("agent_flags", mode="before")
    @classmethod
    def _parse_agent_flags(cls, value):
        if value is None:
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item) for item in value)
        if isinstance(value, str):
            return tuple(shlex.split(value))
        raise TypeError("SANDBOX_AGENT_FLAGS must be a list of flags or a shell-style string")

    @field_validator("branch_prefix")
    @classmethod
    def _validate_branch_prefix(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("SANDBOX_BRANCH_PREFIX must not be empty")
        return normalized

    @field_validator("progress_interval")
    @classmethod
    def _validate_progress_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("SANDBOX_PROGRESS_INTERVAL must be > 0")
        return value

    @field_validator("exec_timeout")
    @classmethod
    def _validate_exec_timeout(cls, value: float | None) -> float | None:
        if value is not None and value <= 0:
            raise ValueError("SANDBOX_EXEC_TIMEOUT must be > 0 when set")
        return value


@lru_cache(maxsize=1)
def get_settings() -> SandboxSettings:
    """Return cached settings instance."""

    settings = SandboxSettings()
    if settings.worktree_dir is not None:
        settings.worktree_dir = settings.worktree_dir.expanduser().resolve()
    return settings


__all__ = ["SandboxSettings", "get_settings"]
