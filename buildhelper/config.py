"""Relay server configuration: defaults, YAML loading and merging."""

from __future__ import annotations

from copy import deepcopy
from pathlib import Path
from typing import Any, Optional

import yaml


DEFAULT_CONFIG: dict[str, Any] = {
    "server": {
        "host": "127.0.0.1",
        "port": 3000,
        "cors_origins": ["*"],
    },
    "upstream": {
        "scheme": "https",
        "timeout_seconds": 30,
    },
    # Log endpoint is scoped to one job, whatever job the trigger targeted.
    "logs": {
        "server_host": "jenkins.mycareimw.com",
        "job_name": "imw-client-setup",
    },
    "polling": {
        "queue_interval_seconds": 3,
        "log_interval_seconds": 5,
    },
}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = deepcopy(value)
    return merged


def build_default_config() -> dict[str, Any]:
    return deepcopy(DEFAULT_CONFIG)


def write_default_config(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(build_default_config(), sort_keys=False), encoding="utf-8")


def load_config(path: Optional[Path] = None) -> dict[str, Any]:
    if path is None or not path.exists():
        return build_default_config()
    loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(loaded, dict):
        raise ValueError(f"{path} must contain a YAML mapping")
    return _deep_merge(DEFAULT_CONFIG, loaded)


def resolve_server_config(
    config: dict[str, Any],
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> dict[str, Any]:
    """Apply CLI overrides on top of a loaded config."""
    resolved = deepcopy(config)
    server = dict(resolved.get("server", {}))
    if host:
        server["host"] = host
    if port is not None:
        if port <= 0 or port > 65535:
            raise ValueError(f"Port out of range: {port}")
        server["port"] = port
    resolved["server"] = server

    polling = resolved.get("polling", {})
    for key in ("queue_interval_seconds", "log_interval_seconds"):
        if float(polling.get(key, 0)) <= 0:
            raise ValueError(f"polling.{key} must be > 0")

    return resolved
