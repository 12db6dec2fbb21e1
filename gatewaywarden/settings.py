"""Persisted user settings (distro, ports, token) stored as YAML."""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .commands import parse_port

LOG = logging.getLogger(__name__)


class GatewaySettings(BaseModel):
    """Settings payload exchanged with the persistence collaborator."""

    model_config = ConfigDict(populate_by_name=True)

    distro: str | None = None
    gateway_port: int | None = Field(default=None, alias="gatewayPort")
    monitor_port: int | None = Field(default=None, alias="monitorPort")
    gateway_token: str | None = Field(default=None, alias="gatewayToken")

    @field_validator("gateway_port", "monitor_port", mode="before")
    @classmethod
    def _drop_invalid_port(cls, value: Any) -> int | None:
        """Invalid stored ports are ignored rather than rejected."""
        if value is None:
            return None
        return parse_port(value)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class SettingsStore:
    """Load and save `GatewaySettings` in one YAML file."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load(self) -> GatewaySettings:
        """Read settings; a missing or unreadable file yields defaults."""
        if not self.path.exists():
            return GatewaySettings()
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as exc:
            LOG.warning("Failed to read settings %s, using defaults: %s", self.path, exc)
            return GatewaySettings()
        if not isinstance(data, dict):
            LOG.warning("Settings root must be a mapping: %s", self.path)
            return GatewaySettings()
        return GatewaySettings.model_validate(data)

    def save(self, settings: GatewaySettings) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(self.path.suffix + ".tmp")
            with tmp.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(settings.to_payload(), handle, sort_keys=False, allow_unicode=True)
            tmp.replace(self.path)

    def update(self, **changes: Any) -> GatewaySettings:
        """Merge field changes into the stored settings and save them."""
        current = self.load()
        updated = current.model_copy(update=changes)
        self.save(updated)
        return updated
