"""Configuration management for cmdrelay.

Loads and validates YAML-based configuration with Pydantic models.
Supports environment variable overrides for listener ports and the
device tool path.
"""

from cmdrelay.config.settings import Settings, load_settings

__all__ = ["Settings", "load_settings"]
