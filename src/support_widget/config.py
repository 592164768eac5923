"""Configuration loader with YAML parsing, env-var interpolation, and Pydantic validation."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field


class BackendConfig(BaseModel):
    db_path: str = "./data/support_widget.db"
    storage_dir: str = "./data/storage"
    public_url: str = "http://localhost:54321"


class LocalStorageConfig(BaseModel):
    path: str = "./data/local_storage.json"
    client_token_key: str = "widget_client_token"
    active_conversation_key: str = "widget_active_conv"
    current_user_key: str = "widget_current_user"
    support_session_key: str = "support-auth"
    master_session_key: str = "master-auth"


class SyncConfig(BaseModel):
    optimistic_agent_messages: bool = True
    refetch_after_client_send: bool = True


class BucketsConfig(BaseModel):
    chat_uploads: str = "chat-uploads"
    provider_logos: str = "provider-logos"


class PresenceConfig(BaseModel):
    seen_interval_seconds: float = 10.0
    timezone: str = "UTC"


class ErrorLogConfig(BaseModel):
    enabled: bool = True
    environment: str = "dev"  # "prod" | "staging" | "dev"


class AppConfig(BaseModel):
    log_level: str = "INFO"
    log_json: bool = False  # JSON lines instead of console output
    data_dir: str = "./data"
    backend: BackendConfig = Field(default_factory=BackendConfig)
    local_storage: LocalStorageConfig = Field(default_factory=LocalStorageConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    buckets: BucketsConfig = Field(default_factory=BucketsConfig)
    presence: PresenceConfig = Field(default_factory=PresenceConfig)
    error_log: ErrorLogConfig = Field(default_factory=ErrorLogConfig)
    agent_display_name: Optional[str] = None  # fallback claimant name


_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def _interpolate_env_vars(text: str, extra: dict[str, str] | None = None) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if extra and var_name in extra:
            return extra[var_name]
        value = os.environ.get(var_name)
        if value is None:
            return match.group(0)
        return value

    return _ENV_VAR_PATTERN.sub(_replace, text)


def load_config(config_path: str | Path = "config.yaml", env_path: str | Path = ".env") -> AppConfig:
    """Load and validate configuration from YAML file with env-var interpolation."""
    env_file = Path(env_path)
    if env_file.exists():
        load_dotenv(env_file)

    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_file}")

    raw_text = config_file.read_text(encoding="utf-8")

    # data_dir may be referenced by the other paths
    raw_data = yaml.safe_load(raw_text) or {}
    data_dir = _interpolate_env_vars(str(raw_data.get("data_dir", "./data")))

    interpolated = _interpolate_env_vars(raw_text, extra={"data_dir": data_dir})
    data = yaml.safe_load(interpolated) or {}

    return AppConfig(**data)
