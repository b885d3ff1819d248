"""Request and response shapes passed between the console, relay and poller."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from buildhelper.errors import ValidationError

# Accepted JSON keys per field; jenkinsUrl/jenkinsJobName are legacy names.
_FIELD_ALIASES = {
    "serverHost": ("serverHost", "jenkinsUrl"),
    "jobName": ("jobName", "jenkinsJobName"),
    "username": ("username",),
    "apiToken": ("apiToken",),
}


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def require_fields(values: dict[str, Any], message: str = "Missing required parameters") -> None:
    """Raise ValidationError naming every empty field in ``values``."""
    missing = [name for name, value in values.items() if not _as_text(value)]
    if missing:
        raise ValidationError(f"{message}: {', '.join(missing)}")


@dataclass(frozen=True)
class TriggerRequest:
    parameters: dict[str, str]
    server_host: str
    job_name: str
    username: str
    api_token: str

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "TriggerRequest":
        """Build a request from the JSON body posted to ``/api/trigger``."""
        if not isinstance(payload, dict):
            raise ValidationError("Request body must be a JSON object")

        resolved: dict[str, str] = {}
        for name, keys in _FIELD_ALIASES.items():
            value = ""
            for key in keys:
                value = _as_text(payload.get(key))
                if value:
                    break
            resolved[name] = value

        parameters = payload.get("parameters")
        missing = [name for name, value in resolved.items() if not value]
        if parameters is None:
            missing.insert(0, "parameters")
        if missing:
            raise ValidationError(f"Missing required parameters: {', '.join(missing)}")
        if not isinstance(parameters, dict):
            raise ValidationError("'parameters' must be an object of key/value pairs")

        return cls(
            parameters={str(key): "" if value is None else str(value) for key, value in parameters.items()},
            server_host=resolved["serverHost"],
            job_name=resolved["jobName"],
            username=resolved["username"],
            api_token=resolved["apiToken"],
        )

    def validate(self) -> None:
        if self.parameters is None:
            raise ValidationError("Missing required parameters: parameters")
        require_fields(
            {
                "serverHost": self.server_host,
                "jobName": self.job_name,
                "username": self.username,
                "apiToken": self.api_token,
            }
        )


@dataclass(frozen=True)
class ExecutableReference:
    build_number: int
    build_url: str


def parse_executable(status: Any) -> Optional[ExecutableReference]:
    """Return the running build from a queue item body, or None while still queued."""
    if not isinstance(status, dict):
        return None
    executable = status.get("executable")
    if not isinstance(executable, dict) or executable.get("number") is None:
        return None
    try:
        number = int(executable["number"])
    except (TypeError, ValueError):
        return None
    return ExecutableReference(build_number=number, build_url=str(executable.get("url", "")))


@dataclass
class ParameterDefinition:
    key: str
    default_value: str = ""

    @property
    def required(self) -> bool:
        return self.default_value == ""

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "defaultValue": self.default_value}


@dataclass
class ConsoleSettings:
    username: str = ""
    api_token: str = ""
    server_host: str = "jenkins.mycareimw.com"
    job_name: str = "imw-client-setup"
    parameters: list[ParameterDefinition] = field(
        default_factory=lambda: [
            ParameterDefinition("CLIENT_NAME", ""),
            ParameterDefinition("BRANCH_NAME", "origin/IMW-uat-changes"),
        ]
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "username": self.username,
            "apiToken": self.api_token,
            "serverHost": self.server_host,
            "jobName": self.job_name,
            "parameters": [item.to_dict() for item in self.parameters],
        }
