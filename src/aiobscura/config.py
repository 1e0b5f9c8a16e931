"""
aiobscura Configuration.

Centralized configuration management using Pydantic Settings.
Loads configuration from init arguments, environment variables
(``AIOBSCURA_`` prefix, ``__`` for nested keys), a ``.env`` file and
finally ``$XDG_CONFIG_HOME/aiobscura/config.toml``.
"""

import os
import tempfile
import tomllib
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from aiobscura.exceptions import ConfigError

APP_NAME = "aiobscura"


def _xdg_dir(env_var: str, *fallback: str) -> Path:
    value = os.getenv(env_var)
    if value:
        return Path(value) / APP_NAME

    home = os.getenv("HOME")
    if home:
        return Path(home).joinpath(*fallback) / APP_NAME

    # Fallback for development/testing environments without HOME
    return Path(f".{APP_NAME}")


def get_xdg_data_dir() -> Path:
    """
    Get XDG-compliant data directory for aiobscura.

    Follows XDG Base Directory Specification:
    - Uses $XDG_DATA_HOME/aiobscura if XDG_DATA_HOME is set
    - Falls back to $HOME/.local/share/aiobscura if not set

    Returns:
        Path: Data directory (holds data.db)
    """
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def get_xdg_state_dir() -> Path:
    """
    Get XDG-compliant state directory for aiobscura logs.

    Returns:
        Path: $XDG_STATE_HOME/aiobscura or $HOME/.local/state/aiobscura
    """
    return _xdg_dir("XDG_STATE_HOME", ".local", "state")


def get_xdg_config_dir() -> Path:
    """Get $XDG_CONFIG_HOME/aiobscura (or $HOME/.config/aiobscura)."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def get_runtime_dir() -> Path:
    """
    Get the directory that holds process lock files.

    Uses $XDG_RUNTIME_DIR/aiobscura, or the system temp dir when the
    runtime dir is not set.
    """
    runtime = os.getenv("XDG_RUNTIME_DIR")
    base = Path(runtime) if runtime else Path(tempfile.gettempdir())
    return base / APP_NAME


def get_config_path() -> Path:
    """Path of the TOML config file (``AIOBSCURA_CONFIG`` overrides)."""
    override = os.getenv("AIOBSCURA_CONFIG")
    if override:
        return Path(override).expanduser()
    return get_xdg_config_dir() / "config.toml"


class AnalyticsSettings(BaseModel):
    """Analytics engine options (``[analytics]`` table)."""

    inactivity_minutes: int = 15  # Window for classifying sessions as active
    tool_call_threshold: int = 20  # Reserved trigger threshold
    timeout_ms: int = 30_000  # Default per-plugin timeout
    disabled_plugins: list[str] = Field(default_factory=list)
    plugin_timeouts: dict[str, int] = Field(default_factory=dict)


class CollectorSettings(BaseModel):
    """Remote collector options (``[collector]`` table)."""

    enabled: bool = False
    server_url: Optional[str] = None
    collector_id: Optional[str] = None
    api_key: Optional[str] = None
    batch_size: int = Field(default=20, ge=1, le=50)
    flush_interval_secs: int = 5
    timeout_secs: int = 30
    max_retries: int = 3

    def validate_ready(self) -> None:
        """
        Check that an enabled collector has everything it needs.

        Raises:
            ConfigError: If enabled and a required key is missing
        """
        if not self.enabled:
            return

        missing = [
            name
            for name in ("server_url", "collector_id", "api_key")
            if not getattr(self, name)
        ]
        if missing:
            raise ConfigError(
                "collector is enabled but missing: "
                + ", ".join(f"collector.{name}" for name in missing)
            )

    @property
    def is_ready(self) -> bool:
        """True when the collector is enabled and fully configured."""
        if not self.enabled:
            return False
        try:
            self.validate_ready()
        except ConfigError:
            return False
        return True


class LoggingSettings(BaseModel):
    """Logging options (``[logging]`` table)."""

    level: str = "INFO"
    log_dir: str = ""  # Defaults to XDG state dir if empty
    file_enabled: bool = True
    console_enabled: bool = False
    max_bytes: int = 10_485_760  # 10MB per log file
    backup_count: int = 5


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_prefix="AIOBSCURA_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    database_path: str = ""  # Defaults to $XDG_DATA_HOME/aiobscura/data.db

    # Assistant root overrides (empty = ~/.claude, ~/.codex)
    claude_code_path: str = ""
    codex_path: str = ""

    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    collector: CollectorSettings = Field(default_factory=CollectorSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

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
            TomlConfigSettingsSource(settings_cls, toml_file=get_config_path()),
        )

    @property
    def db_path(self) -> Path:
        """Get the database file path, using XDG default if not specified."""
        if self.database_path:
            return Path(self.database_path).expanduser()
        return get_xdg_data_dir() / "data.db"

    @property
    def log_directory(self) -> Path:
        """Get the log directory path, using XDG default if not specified."""
        if self.logging.log_dir:
            return Path(self.logging.log_dir).expanduser()
        return get_xdg_state_dir()


def load_settings(config_file: Optional[Path] = None) -> Settings:
    """
    Load settings, optionally from an explicit TOML file.

    Values from an explicit file take precedence over the environment.

    Raises:
        ConfigError: If the file cannot be read or parsed
    """
    if config_file is None:
        return Settings()

    try:
        with open(config_file, "rb") as f:
            data = tomllib.load(f)
    except OSError as e:
        raise ConfigError(f"failed to read config file {config_file}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"failed to parse config: {e}") from e

    try:
        return Settings(**data)
    except ValueError as e:
        raise ConfigError(f"invalid config: {e}") from e


# Global settings instance
settings = Settings()
