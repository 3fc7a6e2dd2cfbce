"""Configuration management with Pydantic Settings + optional YAML."""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _user_dir(env_var: str, xdg_var: str, xdg_default: Path, windows_var: str) -> Path:
    explicit = os.environ.get(env_var)
    if explicit:
        return Path(explicit)
    if sys.platform == "win32":
        return Path(os.environ.get(windows_var, Path.home() / "AppData")) / "stepwise"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "stepwise"
    return Path(os.environ.get(xdg_var, xdg_default)) / "stepwise"


def default_config_dir() -> Path:
    """Where config.yaml is looked up when no path is given."""
    return _user_dir("STEPWISE_CONFIG_DIR", "XDG_CONFIG_HOME", Path.home() / ".config", "APPDATA")


def default_data_dir() -> Path:
    """Home of sessions.db and tool_outputs.db."""
    return _user_dir("STEPWISE_DATA_DIR", "XDG_DATA_HOME", Path.home() / ".local" / "share", "LOCALAPPDATA")


class AgentConfig(BaseModel):
    """Per-run limits. Copied onto every session."""

    max_total_llm_turns: int = Field(default=12, ge=1)
    max_tool_calls_per_step: int = Field(default=8, ge=1)
    approval_timeout_ms: int = Field(default=300_000, ge=0)
    # 0 disables the timeout for single calls
    tool_execution_timeout_ms: int = Field(default=60_000, ge=0)


class HistoryConfig(BaseModel):
    max_chars: int = 48_000
    stable_prefix_messages: int = 8
    recent_tail_messages: int = 20


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="STEPWISE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    agent: AgentConfig = Field(default_factory=AgentConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    data_dir: str = ""
    log_level: str = "INFO"
    log_json: bool = False

    def get_data_dir(self) -> Path:
        if self.data_dir:
            return Path(self.data_dir)
        return default_data_dir()

    def sessions_db_path(self) -> Path:
        return self.get_data_dir() / "sessions.db"

    def outputs_db_path(self) -> Path:
        return self.get_data_dir() / "tool_outputs.db"


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_settings(
    config_path: str | Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> Settings:
    """Load settings from env vars, optionally overlaying a YAML config."""
    yaml_data: dict[str, Any] = {}

    # Determine config file path
    if config_path is None:
        config_path = os.environ.get("STEPWISE_CONFIG")
    if config_path is None:
        default = default_config_dir() / "config.yaml"
        if default.exists():
            config_path = default

    # Load YAML if found
    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                yaml_data = yaml.safe_load(f) or {}

    if overrides:
        yaml_data = _deep_merge(yaml_data, overrides)

    # YAML values are init kwargs; env vars fill whatever YAML leaves unset
    return Settings(**yaml_data)
