"""
Configuration management for snapvault.

This module handles loading, validating, and saving configuration settings.
"""

from snapvault.config.settings import (
    ConfigurationError,
    ManifestEntry,
    Settings,
    load_config,
    save_config,
)

__all__ = [
    "Settings",
    "ManifestEntry",
    "load_config",
    "save_config",
    "ConfigurationError",
]
