"""
Config package - Configuration management.

This package contains the configuration management system
for loading stage settings from YAML files.

Modules:
    manager: ConfigManager and the built-in DEFAULT_SETTINGS
"""

from zstage_control.config.manager import DEFAULT_SETTINGS, ConfigManager, get_default_settings

__all__ = ["ConfigManager", "DEFAULT_SETTINGS", "get_default_settings"]
