"""Configuration loading utilities for Rulecraft."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    GitHubAppSettings,
    GitHubOAuthSettings,
    GitHubSettings,
    Settings,
    StorageSettings,
    bootstrap_settings,
    load_settings,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "GitHubAppSettings",
    "GitHubOAuthSettings",
    "GitHubSettings",
    "Settings",
    "StorageSettings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
