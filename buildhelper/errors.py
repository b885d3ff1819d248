"""Error taxonomy shared by the relay, the poller and the CLI."""

from __future__ import annotations


class RelayError(Exception):
    """Base error for relay operations."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"error": self.message}


class ValidationError(RelayError):
    """Required input was missing or empty."""

    status_code = 400


class UpstreamProtocolError(RelayError):
    """The build server answered in a way that breaks its expected contract."""


class UpstreamUnreachableError(RelayError):
    """The build server could not be reached (network, DNS, timeout)."""


class SettingsError(Exception):
    """Settings file could not be read or has an invalid shape."""
