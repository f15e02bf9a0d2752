# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Configuration package.

This package provides centralized configuration management:
- Settings: Pydantic-based settings loaded from environment variables
- YAML loader: Utilities for loading the schema and template files

Example:
    >>> from mealplane.core.config import get_settings
    >>> settings = get_settings()
    >>> print(settings.environment)
    'development'
"""

from mealplane.core.config.settings import (
    APISettings,
    ControlPlaneSettings,
    DatabaseSettings,
    RedisSettings,
    Settings,
    WorkerSettings,
    clear_settings_cache,
    get_settings,
)
from mealplane.core.config.yaml_loader import (
    YAMLLoadError,
    deep_merge,
    load_yaml,
    load_yaml_directory,
)

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "clear_settings_cache",
    # Subsettings
    "DatabaseSettings",
    "RedisSettings",
    "ControlPlaneSettings",
    "APISettings",
    "WorkerSettings",
    # YAML utilities
    "load_yaml",
    "load_yaml_directory",
    "deep_merge",
    "YAMLLoadError",
]
