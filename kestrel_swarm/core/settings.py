"""kestrel-swarm - Configuration system with Pydantic Settings"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import pydantic_settings
from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import (
    DotEnvSettingsSource,
    EnvSettingsSource,
    PydanticBaseSettingsSource,
)
from pydantic_settings.main import SettingsConfigDict

__all__ = [
    "DelegationSettings",
    "SwarmSettings",
    "InferenceSettings",
    "Settings",
    "settings",
    "get_settings",
    "reload_settings",
    "get_storage_dir",
]


class DelegationSettings(BaseModel):
    """Limits applied by the delegation engine.

    ``enabled`` is the feature flag; ``allow_sub_agents`` is the top-level
    security kill-switch. Either one being off rejects every delegation.
    """

    enabled: bool = True
    allow_sub_agents: bool = True
    max_depth: int = Field(default=3, ge=1)
    max_concurrent: int = Field(default=5, ge=1)
    default_timeout_ms: int = Field(default=300_000, gt=0)
    token_budget_default: int = Field(default=50_000, gt=0)
    token_budget_max: int = Field(default=200_000, gt=0)
    persist_transcripts: bool = True


class SwarmSettings(BaseModel):
    default_token_budget: int = Field(default=500_000, gt=0)


class InferenceSettings(BaseModel):
    base_url: str = "https://api.openai.com/v1"
    api_key: Optional[SecretStr] = None
    model: str = "gpt-4o-mini"
    request_timeout: float = Field(default=120.0, gt=0)
    max_retries: int = Field(default=3, ge=0)


class Settings(pydantic_settings.BaseSettings):
    """Application settings with type-safe validation"""

    app_name: str = Field(default="kestrel-swarm", min_length=1)
    debug: bool = False
    log_level: str = "INFO"

    storage_dir: str = Field(default_factory=lambda: str(_resolve_app_dir("data")))

    delegation: DelegationSettings = Field(default_factory=DelegationSettings)
    swarm: SwarmSettings = Field(default_factory=SwarmSettings)
    inference: InferenceSettings = Field(default_factory=InferenceSettings)

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[pydantic_settings.BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        del env_settings, dotenv_settings

        model_env_nested_delimiter = settings_cls.model_config.get("env_nested_delimiter")
        env_nested_delimiter = (
            model_env_nested_delimiter if isinstance(model_env_nested_delimiter, str) else None
        )
        model_case_sensitive = settings_cls.model_config.get("case_sensitive")
        case_sensitive = model_case_sensitive if isinstance(model_case_sensitive, bool) else None

        return (
            init_settings,
            EnvSettingsSource(
                settings_cls,
                env_prefix=ENV_PREFIX,
                env_nested_delimiter=env_nested_delimiter,
                case_sensitive=case_sensitive,
            ),
            DotEnvSettingsSource(
                settings_cls,
                env_prefix=ENV_PREFIX,
                env_file=_dotenv_paths(settings_cls),
                env_nested_delimiter=env_nested_delimiter,
                case_sensitive=case_sensitive,
            ),
            file_secret_settings,
        )

    def storage_dir_path(self) -> Path:
        """Storage directory as a Path with ~ expanded."""
        return Path(self.storage_dir).expanduser()


ENV_PREFIX = "KESTREL_SWARM_"
APP_DIR_NAME = "kestrel-swarm"


def _xdg_base_dir(env_var_name: str, fallback: Path) -> Path:
    env_value = os.getenv(env_var_name)
    if env_value:
        return Path(env_value).expanduser()
    return fallback


def _resolve_app_dir(kind: str) -> Path:
    home = Path.home()
    if kind == "config":
        base = _xdg_base_dir("XDG_CONFIG_HOME", home / ".config")
    elif kind == "data":
        base = _xdg_base_dir("XDG_DATA_HOME", home / ".local" / "share")
    else:
        raise ValueError(f"Unsupported app dir kind: {kind}")

    return base / APP_DIR_NAME


def _dotenv_paths(settings_cls: type[pydantic_settings.BaseSettings]) -> tuple[Path | str, ...]:
    explicit_env_files = settings_cls.model_config.get("env_file")
    if explicit_env_files is not None:
        if isinstance(explicit_env_files, (str, Path)):
            return (explicit_env_files,)
        return tuple(explicit_env_files)

    return (".env", _resolve_app_dir("config") / ".env")


settings: Settings = Settings()


def get_settings() -> Settings:
    """Get the global settings singleton instance."""
    return settings


def reload_settings() -> Settings:
    """Rebuild the global settings from the current environment."""
    global settings
    settings = Settings()
    return settings


def get_storage_dir() -> Path:
    return settings.storage_dir_path()
