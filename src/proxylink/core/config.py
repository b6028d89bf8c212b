"""
ProxyLink Configuration using Pydantic Settings.

Provides strongly typed configuration with environment variable support,
validation, and sensible defaults.

Environment variables use PROXYLINK_ prefix:
- PROXYLINK_PROBE_CONNECT_TIMEOUT, PROXYLINK_PROBE_READ_TIMEOUT (probe settings)
- PROXYLINK_STORAGE_DATA_DIR (storage settings)
- PROXYLINK_LOG_LEVEL (log settings)
- PROXYLINK_HOME (project root override)
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


DEFAULT_BOOTSTRAP_URL = "http://android.httptoolkit.tech/config"
DEFAULT_CONNECT_URL = "https://android.httptoolkit.tech/connect/"


def get_project_root() -> Path:
    """Get the project root directory."""
    if env_home := os.getenv("PROXYLINK_HOME"):
        return Path(env_home)

    return Path.home() / ".proxylink"


class ProbeSettings(BaseSettings):
    """Candidate probing configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="PROXYLINK_PROBE_",
        extra="ignore",
    )

    bootstrap_url: str = Field(
        default=DEFAULT_BOOTSTRAP_URL,
        description="Plaintext URL fetched through each candidate proxy"
    )
    connect_timeout: float = Field(
        default=2.0,
        gt=0,
        description="Connect timeout per candidate in seconds"
    )
    read_timeout: float = Field(
        default=2.0,
        gt=0,
        description="Read timeout per candidate in seconds"
    )
    max_response_size: int = Field(
        default=64 * 1024,
        ge=1,
        description="Largest accepted bootstrap response body in bytes"
    )
    max_candidates: int = Field(
        default=16,
        ge=1,
        description="Largest accepted number of candidate addresses"
    )

    @field_validator('bootstrap_url')
    @classmethod
    def validate_bootstrap_url(cls, v: str) -> str:
        """Validate the bootstrap URL is plain HTTP."""
        if not v.startswith("http://"):
            raise ValueError(f"Bootstrap URL must be plain http://, got: {v}")
        return v


class StorageSettings(BaseSettings):
    """Local storage configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="PROXYLINK_STORAGE_",
        extra="ignore",
    )

    data_dir: Optional[str] = Field(
        default=None,
        description="Directory for the last proxy, trust store and tunnel profile"
    )


class LogSettings(BaseSettings):
    """Logging configuration settings."""

    model_config = SettingsConfigDict(
        env_prefix="PROXYLINK_LOG_",
        extra="ignore",
    )

    level: str = Field(
        default="INFO",
        description="Log level"
    )
    format: str = Field(
        default="console",
        description="Log format (json, console)"
    )
    file: Optional[str] = Field(
        default=None,
        description="Log file path"
    )

    @field_validator('level')
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator('format')
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format."""
        if v not in ("json", "console"):
            raise ValueError(f"Invalid log format: {v}. Must be 'json' or 'console'")
        return v


class Settings(BaseSettings):
    """
    Main application settings.

    Loads configuration from:
    1. Environment variables (PROXYLINK_* prefix)
    2. YAML config file (config/config.yaml under the project root)
    3. Default values

    Environment variables take precedence.
    """

    model_config = SettingsConfigDict(
        env_prefix="PROXYLINK_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    probe: ProbeSettings = Field(default_factory=ProbeSettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    @classmethod
    def load_from_yaml(cls, config_file: Path) -> "Settings":
        """Load settings from YAML file with environment overrides."""
        data = {}

        if config_file.exists():
            with open(config_file, 'r') as f:
                data = yaml.safe_load(f) or {}

        settings_dict = {}

        if 'probe' in data:
            settings_dict['probe'] = ProbeSettings(**data['probe'])
        if 'storage' in data:
            settings_dict['storage'] = StorageSettings(**data['storage'])
        if 'log' in data:
            settings_dict['log'] = LogSettings(**data['log'])

        return cls(**settings_dict)

    def resolve_path(self, relative_path: str) -> Path:
        """Resolve a relative path against the project root."""
        path = Path(relative_path).expanduser()
        if path.is_absolute():
            return path
        return get_project_root() / path

    def get_data_dir(self) -> Path:
        """Get the absolute path to the data directory."""
        if self.storage.data_dir:
            return self.resolve_path(self.storage.data_dir)
        return get_project_root() / "data"

    def save_to_yaml(self, config_file: Path) -> None:
        """Save settings to YAML file."""
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'probe': {
                'bootstrap_url': self.probe.bootstrap_url,
                'connect_timeout': self.probe.connect_timeout,
                'read_timeout': self.probe.read_timeout,
                'max_response_size': self.probe.max_response_size,
                'max_candidates': self.probe.max_candidates,
            },
            'storage': {
                'data_dir': self.storage.data_dir,
            },
            'log': {
                'level': self.log.level,
                'format': self.log.format,
                'file': self.log.file,
            },
        }

        with open(config_file, 'w') as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached singleton).

    First attempts to load from config/config.yaml, then applies
    environment variable overrides.
    """
    config_file = get_project_root() / "config" / "config.yaml"

    if config_file.exists():
        return Settings.load_from_yaml(config_file)

    return Settings()
