"""Configuration management for Baton."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from baton.errors import ConfigurationError
from baton.types import ModelParams

DEFAULT_CONFIG_FILE = Path.home() / ".baton" / "config.toml"


def config_file_path() -> Path:
    raw = os.getenv("BATON_CONFIG_FILE")
    return Path(raw).expanduser() if raw else DEFAULT_CONFIG_FILE


class PluginServerConfig(BaseModel):
    """A tool plugin started as a child process speaking JSON-RPC on stdio."""

    name: str
    command: str
    args: list[str] = Field(default_factory=list)
    env: dict[str, str] = Field(default_factory=dict)


class Settings(BaseSettings):
    """Application settings.

    Sources, highest priority first: init arguments, ``BATON_*`` environment
    variables, ``.env``, then the TOML config file.
    """

    model_config = SettingsConfigDict(
        env_prefix="BATON_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Backend
    backend: str = Field(default="echo", description="Registered backend name (echo, republic)")
    model: str | None = Field(default=None, description="Model identifier, e.g. 'openai:gpt-4o-mini'")
    api_key: str | None = Field(default=None, description="API key for the model provider")
    api_base: str | None = Field(default=None, description="Optional API base URL")
    max_tokens: int = Field(default=4096, ge=1)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    system_prompt: str | None = None

    # Turn policy
    max_iterations: int = Field(default=10, ge=1, description="Maximum backend calls per turn")
    max_parallel_tools: int = Field(default=4, ge=1)
    tool_timeout_seconds: float = Field(default=120.0, gt=0)
    backend_max_retries: int = Field(default=3, ge=0)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=8.0, ge=0)
    cancel_grace_seconds: float = Field(default=2.0, ge=0)

    plugins: list[PluginServerConfig] = Field(default_factory=list)
    log_level: str = Field(default="INFO")

    @model_validator(mode="after")
    def _check_delays(self) -> Settings:
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must not be smaller than retry_base_delay")
        names = [plugin.name for plugin in self.plugins]
        if len(names) != len(set(names)):
            raise ValueError("plugin names must be unique")
        return self

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=config_file_path()),
        )

    def model_params(self) -> ModelParams:
        return ModelParams(
            model=self.model or "default",
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            system_prompt=self.system_prompt,
        )


def load_settings(**overrides: Any) -> Settings:
    """Build settings, reporting invalid values as a configuration error."""

    try:
        return Settings(**overrides)
    except ValidationError as exc:
        rows = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ())) or "settings"
            rows.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ConfigurationError("invalid settings: " + "; ".join(rows)) from exc
