"""Administrative per-host connection settings loaded from YAML or JSON."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .models import PROTOCOL_ORDER, Protocol
from .connection_record import normalize_hostname

logger = logging.getLogger(__name__)


class HostConfigError(ValueError):
    """Raised when the host configuration file cannot be used."""


def parse_protocol_names(names: Iterable[str]) -> List[Protocol]:
    """Map protocol names (case-insensitive) to ``Protocol`` in priority order."""

    lookup = {p.value.lower(): p for p in PROTOCOL_ORDER}
    selected = set()
    for name in names:
        key = str(name).strip().lower()
        if not key:
            continue
        if key not in lookup:
            valid = ", ".join(p.value for p in PROTOCOL_ORDER)
            raise ValueError(f"Unknown protocol '{name}'. Valid protocols: {valid}")
        selected.add(lookup[key])
    return [p for p in PROTOCOL_ORDER if p in selected]


class HostConnectionSettings(BaseModel):
    """Overrides applied when a host's connection record is first created."""

    enabled_protocols: Optional[List[Protocol]] = None
    prefer_good_credential: Optional[bool] = None
    prefer_implicit_credential: Optional[bool] = None

    @field_validator("enabled_protocols", mode="before")
    @classmethod
    def _parse_protocols(cls, value: Any) -> Any:
        if value is None:
            return None
        if isinstance(value, str):
            value = value.split(",")
        return parse_protocol_names(value)


class HostConfiguration(BaseModel):
    """Top-level document: ``hosts`` keyed by hostname."""

    hosts: Dict[str, HostConnectionSettings] = Field(default_factory=dict)

    def for_host(self, hostname: str) -> Optional[HostConnectionSettings]:
        return self.hosts.get(normalize_hostname(hostname))


def parse_host_configuration(content: str, *, fmt: str = "yaml") -> HostConfiguration:
    """Parse a host configuration document."""

    try:
        if fmt == "json":
            data = json.loads(content) if content.strip() else {}
        else:
            data = yaml.safe_load(content) or {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise HostConfigError(f"Failed to parse host configuration: {exc}") from exc

    if not isinstance(data, dict):
        raise HostConfigError("Host configuration must be a mapping with a 'hosts' key")

    raw_hosts = data.get("hosts") or {}
    if not isinstance(raw_hosts, dict):
        raise HostConfigError("'hosts' must map hostnames to settings")

    try:
        return HostConfiguration(
            hosts={
                normalize_hostname(name): HostConnectionSettings.model_validate(value or {})
                for name, value in raw_hosts.items()
            }
        )
    except ValidationError as exc:
        raise HostConfigError(f"Invalid host configuration: {exc}") from exc


def load_host_configuration(path: str) -> HostConfiguration:
    """Load host configuration from a ``.json``, ``.yaml`` or ``.yml`` file."""

    config_path = Path(path)
    try:
        content = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise HostConfigError(f"Unable to read host configuration {config_path}: {exc}") from exc

    fmt = "json" if config_path.suffix.lower() == ".json" else "yaml"
    configuration = parse_host_configuration(content, fmt=fmt)
    logger.info(
        "Loaded host connection settings for %d host(s) from %s",
        len(configuration.hosts),
        config_path,
    )
    return configuration


__all__ = [
    "HostConfigError",
    "HostConfiguration",
    "HostConnectionSettings",
    "load_host_configuration",
    "parse_host_configuration",
    "parse_protocol_names",
]
