"""
ProxyLink Core Module

Core configuration, settings, and utilities.
"""

from .config import (
    DEFAULT_BOOTSTRAP_URL,
    DEFAULT_CONNECT_URL,
    Settings,
    ProbeSettings,
    StorageSettings,
    LogSettings,
    get_project_root,
    get_settings,
)
from .logging import setup_logging, get_logger

__all__ = [
    # Settings
    "DEFAULT_BOOTSTRAP_URL",
    "DEFAULT_CONNECT_URL",
    "Settings",
    "ProbeSettings",
    "StorageSettings",
    "LogSettings",
    "get_project_root",
    "get_settings",
    # Logging
    "setup_logging",
    "get_logger",
]
