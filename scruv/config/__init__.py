"""Configuration for RUV-III runs.

Provides YAML-based configuration loading with type-safe dataclasses.
"""

from .loader import (
    DEFAULT_CONFIG_PATH,
    RuvConfig,
    get_default_config,
    load_config,
    save_config,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "RuvConfig",
    "load_config",
    "save_config",
    "get_default_config",
]
