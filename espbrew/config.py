"""Cluster configuration: defaults, config files and environment overrides."""

from __future__ import annotations

import json
import os
import re
import tomllib
from dataclasses import dataclass, fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "ESPBREW"

_NS_PER_UNIT = {
    "ns": 1,
    "us": 1_000,
    "\u00b5s": 1_000,
    "\u03bcs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|\u00b5s|\u03bcs|ms|h|m|s)")


@dataclass
class ClusterConfig:
    """Settings of one cluster node."""

    cluster_name: str = "espbrew-cluster"
    role: str = "standalone"  # leader, peer or standalone
    bind_address: str = "0.0.0.0"
    http_port: int = 8080
    leader_address: str = ""  # used by peers
    heartbeat_interval: timedelta = timedelta(seconds=5)
    node_timeout: timedelta = timedelta(seconds=30)
    log_level: str = "info"


def default() -> ClusterConfig:
    """Return the default configuration."""
    return ClusterConfig()


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as '300ms', '1m30s' or '-1.5h'."""
    original = text
    text = text.strip()
    sign = 1
    if text and text[0] in "+-":
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration {original!r}")
    total_ns = 0.0
    pos = 0
    while pos < len(text):
        match = _COMPONENT.match(text, pos)
        if match is None:
            raise ValueError(f"invalid duration {original!r}")
        total_ns += float(match.group(1)) * _NS_PER_UNIT[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=sign * total_ns / 1000)


def _to_duration(value: Any) -> timedelta:
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        # Bare numbers count nanoseconds.
        return timedelta(microseconds=value / 1000)
    return parse_duration(str(value))


def _coerce(kind: Any, value: Any) -> Any:
    if kind in (timedelta, "timedelta"):
        return _to_duration(value)
    if kind in (int, "int"):
        if isinstance(value, bool):
            raise ValueError(f"invalid integer {value!r}")
        return int(value)
    return str(value)


def _read_file(path: Path) -> dict[str, Any]:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text)
    elif suffix == ".toml":
        data = tomllib.loads(text)
    else:
        raise ValueError(f"unsupported config type {suffix!r}")
    if not isinstance(data, dict):
        raise ValueError(f"config file {path} does not hold a mapping")
    return {str(key).lower(): value for key, value in data.items()}


def load(cfg_path: str | os.PathLike | None = None) -> ClusterConfig:
    """Load the configuration from an optional file, then ESPBREW_* variables."""
    values: dict[str, Any] = {}
    if cfg_path:
        values = _read_file(Path(cfg_path))

    updates: dict[str, Any] = {}
    for field in fields(ClusterConfig):
        env_value = os.environ.get(f"{ENV_PREFIX}_{field.name.upper()}")
        if env_value is not None:
            updates[field.name] = _coerce(field.type, env_value)
        elif values.get(field.name) is not None:
            updates[field.name] = _coerce(field.type, values[field.name])
    return replace(default(), **updates)