"""Configuration helpers for the engine and its scripts."""

from __future__ import annotations

from .loader import AppSettings, Credentials, get_settings, reset_settings_cache

__all__ = [
    "AppSettings",
    "Credentials",
    "get_settings",
    "reset_settings_cache",
]
