"""Preflight checks for Build Helper settings and build server access."""

from __future__ import annotations

import sys
import urllib.error
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from buildhelper import __version__
from buildhelper.errors import SettingsError
from buildhelper.models import ConsoleSettings
from buildhelper.relay import basic_auth_header
from buildhelper.settings import load_settings, missing_fields


@dataclass
class HealthCheck:
    """Single health-check result."""

    name: str
    required: bool
    ok: bool
    details: str
    fix: str

    @property
    def status(self) -> str:
        return "PASS" if self.ok else "FAIL"


def _check_python_version() -> HealthCheck:
    version_info = sys.version_info
    return HealthCheck(
        name="Python version",
        required=True,
        ok=version_info >= (3, 9),
        details=f"{version_info.major}.{version_info.minor}.{version_info.micro}",
        fix="Install Python 3.9+ and recreate your virtual environment.",
    )


def _check_version() -> HealthCheck:
    ok = bool(__version__)
    return HealthCheck(
        name="Build Helper version",
        required=True,
        ok=ok,
        details=__version__ if ok else "version not set",
        fix="Reinstall Build Helper: pip install -e .",
    )


def _check_settings_file(path: Path) -> tuple[HealthCheck, Optional[ConsoleSettings]]:
    try:
        settings = load_settings(path)
    except SettingsError as exc:
        return (
            HealthCheck(
                name="Settings file",
                required=True,
                ok=False,
                details=str(exc),
                fix=f"Fix or delete {path} and run 'buildhelper settings set'.",
            ),
            None,
        )
    details = str(path) if path.exists() else f"{path} (not created yet, using defaults)"
    return HealthCheck(name="Settings file", required=True, ok=True, details=details, fix="-"), settings


def _check_settings_complete(settings: ConsoleSettings) -> HealthCheck:
    missing = missing_fields(settings)
    return HealthCheck(
        name="Required settings",
        required=True,
        ok=not missing,
        details="all set" if not missing else f"missing: {', '.join(missing)}",
        fix="buildhelper settings set --username <user> --api-token <token>",
    )


def check_server_reachable(settings: ConsoleSettings, timeout: float = 5.0) -> HealthCheck:
    """Call the build server root API with the configured credentials."""
    url = f"https://{settings.server_host.strip().strip('/')}/api/json"
    request = urllib.request.Request(
        url,
        headers={"Authorization": basic_auth_header(settings.username, settings.api_token)},
        method="GET",
    )
    fix = "Check serverHost, network access, and that the API token is valid."
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            status = int(getattr(response, "status", 0) or 0)
    except urllib.error.HTTPError as exc:
        reason = "credentials rejected" if exc.code in (401, 403) else "unexpected response"
        return HealthCheck(
            name="Build server reachable",
            required=True,
            ok=False,
            details=f"{url} (HTTP {exc.code}, {reason})",
            fix=fix,
        )
    except (urllib.error.URLError, TimeoutError, OSError) as exc:
        return HealthCheck(
            name="Build server reachable",
            required=True,
            ok=False,
            details=f"{url} ({getattr(exc, 'reason', exc)})",
            fix=fix,
        )
    return HealthCheck(
        name="Build server reachable",
        required=True,
        ok=200 <= status < 400,
        details=f"{url} (HTTP {status})",
        fix=fix,
    )


def run_doctor_checks(settings_path: Path, check_server: bool = True) -> list[HealthCheck]:
    """Run all doctor checks."""
    checks: list[HealthCheck] = [_check_python_version(), _check_version()]
    settings_check, settings = _check_settings_file(settings_path)
    checks.append(settings_check)
    if settings is None:
        return checks

    complete = _check_settings_complete(settings)
    checks.append(complete)
    if check_server and complete.ok:
        checks.append(check_server_reachable(settings))
    return checks


def strict_failures(checks: list[HealthCheck]) -> int:
    """Count failed required checks."""
    return sum(1 for item in checks if item.required and not item.ok)
