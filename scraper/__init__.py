"""Zhihu answers scraper package bootstrap."""

from .settings import EffectiveConfig, Settings, get_effective_config, get_settings, reset_settings_cache  # noqa: F401

__all__ = [
    "EffectiveConfig",
    "Settings",
    "get_effective_config",
    "get_settings",
    "reset_settings_cache",
]
