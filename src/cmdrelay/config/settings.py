"""Configuration management for cmdrelay.

Loads settings from a YAML configuration file with environment variable
overrides. Supports .env files and the legacy un-prefixed ``TCP_PORT`` /
``HDC_PATH`` variables.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/cmdrelay.yaml")


class ListenerConfig(BaseModel):
    enabled: bool = Field(default=True)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3001, ge=0, le=65535)


class RelayConfig(BaseModel):
    idle_timeout: float = Field(default=300.0, gt=0, description="Seconds without inbound traffic")
    shutdown_grace: float = Field(default=2.0, ge=0)
    command_timeout: float | None = Field(default=30.0, gt=0)
    probe_timeout: float = Field(default=30.0, gt=0)
    write_timeout: float = Field(default=5.0, gt=0)
    max_frame_bytes: int = Field(default=65536, gt=0)
    tool_path: str = Field(default="hdc", min_length=1)
    welcome_text: str = Field(default="welcome to the cmdrelay TCP server")


class ApiConfig(BaseModel):
    enabled: bool = Field(default=True)
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8090, ge=1, le=65535)


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    format: str = Field(
        default="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    file: str | None = Field(default=None)


class StructuredListenerConfig(ListenerConfig):
    port: int = Field(default=8888, ge=0, le=65535)


class Settings(BaseSettings):
    """Root configuration for cmdrelay.

    Loads from YAML file and supports environment variable overrides.
    Reads .env files automatically.
    """

    model_config = {
        "env_prefix": "CMDRELAY_",
        "env_nested_delimiter": "__",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    line: ListenerConfig = Field(default_factory=ListenerConfig)
    structured: StructuredListenerConfig = Field(default_factory=StructuredListenerConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_settings(config_path: Path | str | None = None) -> Settings:
    """Build ``Settings`` from the YAML file, ``.env`` and the environment.

    Priority, highest first: ``CMDRELAY_*`` variables (including those
    set through ``.env``), the legacy ``TCP_PORT`` / ``HDC_PATH``, the
    YAML file, then the model defaults.
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    _load_dotenv()
    data = _read_yaml(path)
    _apply_env_overrides(data)

    # Values given to the constructor would shadow the environment, so
    # the prefixed variables are folded in explicitly.
    env_layer = Settings().model_dump(exclude_unset=True)
    return Settings(**_deep_merge(data, env_layer))


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        logger.warning("Config file %s not found, using defaults + env vars", path)
        return {}
    with path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top level must be a mapping")
    logger.info("Loaded configuration from %s", path)
    return data


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_dotenv(env_path: Path = Path(".env")) -> None:
    """Export ``KEY=VALUE`` lines of ``env_path`` that are not already set."""
    if not env_path.is_file():
        return
    for raw in env_path.read_text(encoding="utf-8").splitlines():
        entry = raw.strip()
        if entry.startswith("#"):
            continue
        key, sep, value = entry.partition("=")
        key = key.strip()
        if sep and key and not os.environ.get(key):
            os.environ[key] = value.strip().strip("\"'")


def _apply_env_overrides(data: dict[str, Any]) -> None:
    """Apply the legacy un-prefixed environment variables."""
    tcp_port = os.environ.get("TCP_PORT", "")
    tool_path = os.environ.get("HDC_PATH", "")

    if tcp_port:
        data.setdefault("structured", {})
        data["structured"]["port"] = tcp_port

    if tool_path:
        data.setdefault("relay", {})
        data["relay"]["tool_path"] = tool_path
