"""Persistent console settings: credentials, target job and parameter definitions.

Settings live in one YAML document, loaded once and written back only by an
explicit ``save_settings`` call.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml

from buildhelper.errors import SettingsError, ValidationError
from buildhelper.models import ConsoleSettings, ParameterDefinition

SETTINGS_ENV_VAR = "BUILDHELPER_SETTINGS"

_SCALAR_FIELDS = {
    "username": "username",
    "apiToken": "api_token",
    "serverHost": "server_host",
    "jobName": "job_name",
}


def default_settings_path() -> Path:
    override = os.environ.get(SETTINGS_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".buildhelper" / "settings.yaml"


def _parse_parameters(raw: Any) -> list[ParameterDefinition]:
    if not isinstance(raw, list):
        raise SettingsError("'parameters' must be a list of {key, defaultValue} entries")
    definitions: list[ParameterDefinition] = []
    for item in raw:
        if not isinstance(item, dict) or not str(item.get("key", "")).strip():
            raise SettingsError(f"Invalid parameter definition: {item!r}")
        default = item.get("defaultValue", "")
        definitions.append(ParameterDefinition(str(item["key"]).strip(), "" if default is None else str(default)))
    return definitions


def settings_from_dict(data: dict[str, Any]) -> ConsoleSettings:
    settings = ConsoleSettings()
    for key, attr in _SCALAR_FIELDS.items():
        if data.get(key) is not None:
            setattr(settings, attr, str(data[key]))
    if "parameters" in data:
        settings.parameters = _parse_parameters(data["parameters"])
    return settings


def load_settings(path: Optional[Path] = None) -> ConsoleSettings:
    path = path or default_settings_path()
    if not path.exists():
        return ConsoleSettings()
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise SettingsError(f"Could not read settings from {path}: {exc}") from exc
    if not isinstance(loaded, dict):
        raise SettingsError(f"{path} must contain a YAML mapping")
    return settings_from_dict(loaded)


def save_settings(settings: ConsoleSettings, path: Optional[Path] = None) -> Path:
    path = path or default_settings_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(settings.to_dict(), sort_keys=False), encoding="utf-8")
    # The file holds an API token.
    path.chmod(0o600)
    return path


def update_settings(settings: ConsoleSettings, **changes: Optional[str]) -> ConsoleSettings:
    """Set scalar fields by their JSON names (``serverHost``) or attribute names."""
    attrs = set(_SCALAR_FIELDS.values())
    for key, value in changes.items():
        if value is None:
            continue
        attr = _SCALAR_FIELDS.get(key, key)
        if attr not in attrs:
            raise SettingsError(f"Unknown setting: {key}")
        setattr(settings, attr, value.strip())
    return settings


def add_parameter(settings: ConsoleSettings, key: str, default_value: str = "") -> ParameterDefinition:
    key = key.strip()
    if not key:
        raise ValidationError("Parameter key must not be empty")
    for item in settings.parameters:
        if item.key == key:
            item.default_value = default_value
            return item
    definition = ParameterDefinition(key, default_value)
    settings.parameters.append(definition)
    return definition


def remove_parameter(settings: ConsoleSettings, key: str) -> bool:
    before = len(settings.parameters)
    settings.parameters = [item for item in settings.parameters if item.key != key]
    return len(settings.parameters) != before


def missing_fields(settings: ConsoleSettings) -> list[str]:
    return [key for key, attr in _SCALAR_FIELDS.items() if not str(getattr(settings, attr)).strip()]


def resolve_trigger_values(
    definitions: list[ParameterDefinition],
    overrides: Optional[dict[str, str]] = None,
) -> dict[str, str]:
    """Merge defaults with user values; required parameters must end up non-blank."""
    overrides = overrides or {}
    values: dict[str, str] = {}
    for definition in definitions:
        value = overrides.get(definition.key, definition.default_value)
        if definition.required and not str(value).strip():
            raise ValidationError(f"Please provide a value for {definition.key}")
        values[definition.key] = value
    for key, value in overrides.items():
        values.setdefault(key, value)
    return values


def parse_assignments(items: list[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` command-line pairs."""
    values: dict[str, str] = {}
    for item in items:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValidationError(f"Expected KEY=VALUE, got '{item}'")
        values[key.strip()] = value
    return values
