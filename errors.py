"""Failure types raised at their origin and absorbed at component boundaries."""

from typing import Any


class MeterError(Exception):
    """Base exception for usage-meter failures."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}


class CredentialUnavailable(MeterError):
    """No OAuth token could be found. Degraded availability, not a fault."""


class RemoteFetchFailed(MeterError):
    """The rate-limit API call failed at the network, HTTP or parse level."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        error_details = details or {}
        if status is not None:
            error_details["status"] = status
        super().__init__(message, error_details)
        self.status = status


class LedgerReadFailed(MeterError):
    """The local usage ledger could not be read."""


class NotifierUnsupported(MeterError):
    """The host platform has no way to show a notification."""
