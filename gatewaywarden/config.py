"""Configuration models and loaders for gatewaywarden.

This module defines the runtime configuration schema and how values are loaded
from YAML plus environment variable overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .commands import DEFAULT_GATEWAY_PORT, DEFAULT_INSTALLER_URL, DEFAULT_SERVICE_COMMAND, parse_port

DEFAULT_CONFIG_PATH = "gatewaywarden/config.yaml"
DEFAULT_SETTINGS_PATH = "gatewaywarden/settings.yaml"


class LoggingConfig(BaseModel):
    """Logging-related configuration."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = "INFO"
    json_logs: bool = Field(default=False, alias="json")


class TimingConfig(BaseModel):
    """Delays, attempt budgets and timeouts of the lifecycle and loops."""

    model_config = ConfigDict(extra="forbid")

    start_grace_ms: int = 300
    start_poll_attempts: int = 12
    start_poll_interval_ms: int = 500
    probe_timeout_seconds: float = 2.0
    reachability_attempts: int = 12
    reachability_interval_seconds: float = 1.0
    health_interval_seconds: float = 5.0
    clipboard_watch_seconds: float = 600.0
    clipboard_poll_seconds: float = 1.0

    @field_validator(
        "start_grace_ms",
        "start_poll_attempts",
        "start_poll_interval_ms",
        "probe_timeout_seconds",
        "reachability_attempts",
        "reachability_interval_seconds",
        "health_interval_seconds",
        "clipboard_watch_seconds",
        "clipboard_poll_seconds",
    )
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("timing values must be >= 0")
        return value


class ControllerConfig(BaseModel):
    """Top-level controller configuration."""

    model_config = ConfigDict(extra="forbid")

    service_base_url: str = "http://127.0.0.1:18790"
    bridge_executable: str = "wsl.exe"
    service_command: str = DEFAULT_SERVICE_COMMAND
    installer_url: str = DEFAULT_INSTALLER_URL
    distro: str | None = None
    gateway_port: int | None = None
    settings_path: str | None = None
    clipboard_command: list[str] | None = None
    health_paths: list[str] | None = None
    timings: TimingConfig | None = None
    logging: LoggingConfig | None = None

    @field_validator("gateway_port")
    @classmethod
    def _validate_port(cls, value: int | None) -> int | None:
        if value is None:
            return None
        if parse_port(value) is None:
            raise ValueError("gateway_port must be in 1..65535")
        return value

    @field_validator("health_paths")
    @classmethod
    def _validate_health_paths(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        if not value or any(not path.startswith("/") for path in value):
            raise ValueError("health_paths must be a non-empty list of paths starting with '/'")
        return value

    @model_validator(mode="after")
    def _fill_defaults(self) -> "ControllerConfig":
        """Validate the control API address and fill in defaults."""
        parsed = urlparse(self.service_base_url)
        if not parsed.hostname or parsed.port is None:
            raise ValueError("service_base_url must include host and port, e.g. http://127.0.0.1:18790")
        if self.gateway_port is None:
            self.gateway_port = DEFAULT_GATEWAY_PORT
        if self.settings_path is None:
            self.settings_path = DEFAULT_SETTINGS_PATH
        if self.health_paths is None:
            self.health_paths = ["/health", "/healthz", "/api/health", "/"]
        if self.timings is None:
            self.timings = TimingConfig()
        if self.logging is None:
            self.logging = LoggingConfig()
        return self


def _load_yaml(path: str | None) -> dict[str, Any]:
    """Load a YAML file into a dictionary.

    Missing files are treated as empty config for environment-only setups.
    """
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        return {}
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config root must be object: {path}")
    return data


def _override_from_env(data: dict[str, Any]) -> dict[str, Any]:
    """Apply environment variable overrides on top of file configuration."""
    env_map = {
        "service_base_url": "GATEWAYWARDEN_SERVICE_BASE_URL",
        "bridge_executable": "GATEWAYWARDEN_BRIDGE",
        "distro": "GATEWAYWARDEN_DISTRO",
        "gateway_port": "GATEWAYWARDEN_GATEWAY_PORT",
        "settings_path": "GATEWAYWARDEN_SETTINGS_PATH",
        "logging.level": "GATEWAYWARDEN_LOG_LEVEL",
        "logging.json_logs": "GATEWAYWARDEN_LOG_JSON",
    }

    out = dict(data)
    out["logging"] = dict(out.get("logging") or {})

    for key, env_name in env_map.items():
        value = os.getenv(env_name)
        if value is None:
            continue

        if key == "gateway_port":
            out[key] = int(value)
        elif key == "logging.json_logs":
            out["logging"]["json"] = value.lower() in {"1", "true", "yes", "on"}
        elif key == "logging.level":
            out["logging"]["level"] = value
        else:
            out[key] = value

    return out


def resolve_config_path(path: str | None = None) -> str:
    return path or os.getenv("GATEWAYWARDEN_CONFIG") or DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> ControllerConfig:
    """Load, merge, and validate controller configuration."""
    raw = _load_yaml(resolve_config_path(path))
    raw = _override_from_env(raw)
    return ControllerConfig.model_validate(raw)
