"""Configuration models for the browser session hub."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
ALLOWED_MODELS = (
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4o-2024-08-06",
    "gpt-4.5-preview",
)
DEFAULT_LAUNCH_ARGS = [
    "--disable-gpu",
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
]


class EngineConfig(BaseModel):
    """Settings used whenever an automation engine handle is created."""

    backend: str = Field(default="playwright")
    model_name: str = Field(default=DEFAULT_MODEL)
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    headless: bool = True
    launch_args: list[str] = Field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))
    viewport_width: int = 1280
    viewport_height: int = 720
    service_url: Optional[str] = Field(
        default=None,
        description="Base URL of the remote engine service (remote backend only).",
    )
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator("model_name")
    @classmethod
    def _fallback_model(cls, value: str) -> str:
        if value not in ALLOWED_MODELS:
            LOGGER.warning("Model %s is not supported, falling back to %s", value, DEFAULT_MODEL)
            return DEFAULT_MODEL
        return value

    def resolve_api_key(self) -> Optional[str]:
        """Return the configured key or one taken from the provider environment variables."""

        return (
            self.api_key
            or os.environ.get("OPENAI_API_KEY")
            or os.environ.get("ANTHROPIC_API_KEY")
        )


class DatabaseConfig(BaseModel):
    """Settings for the relational datastore."""

    url: str = Field(default="sqlite+aiosqlite:///./browser_session_hub.db")
    echo: bool = False


class ServerConfig(BaseModel):
    """Bind addresses for the HTTP surfaces."""

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    engine_service_port: int = Field(default=3001)


class AuthConfig(BaseModel):
    """Headers carrying the identity established by the upstream auth provider."""

    user_header: str = Field(default="X-User-Id")
    email_header: str = Field(default="X-User-Email")


class ServiceConfig(BaseSettings):
    """Top-level configuration for the session hub."""

    model_config = SettingsConfigDict(
        env_prefix="BROWSER_SESSION_HUB_",
        env_file=(".env",),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    engine: EngineConfig = Field(default_factory=EngineConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    default_start_url: str = Field(default="https://example.com")
    init_timeout: Optional[float] = Field(
        default=120.0,
        description="Seconds allowed for engine launch and initial navigation.",
    )
    action_timeout: Optional[float] = Field(
        default=120.0,
        description="Seconds allowed for a single act or extract call.",
    )
    shutdown_timeout: Optional[float] = Field(default=30.0)


def load_config(
    path: Path | None = None,
    *,
    env_file: Path | None = None,
    **overrides: object,
) -> ServiceConfig:
    """Load configuration from an optional YAML file, the environment and overrides.

    Keyword overrides beat the file, and the file beats the environment.
    Nested sections are merged key by key rather than replaced.
    """

    data = _merge(_read_yaml(path) if path else {}, overrides)
    settings_kwargs: dict[str, object] = {}
    if env_file is not None:
        settings_kwargs["_env_file"] = env_file
    config = ServiceConfig(**data, **settings_kwargs)
    if not data:
        return config
    return ServiceConfig.model_validate(_merge(config.model_dump(mode="python"), data))


def _read_yaml(path: Path) -> dict[str, Any]:
    loaded = yaml.safe_load(path.read_text())
    if loaded is None:
        return {}
    if not isinstance(loaded, Mapping):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return dict(loaded)


def _merge(base: Mapping[str, Any], updates: Mapping[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = _merge(current, value)
        else:
            merged[key] = value
    return merged
