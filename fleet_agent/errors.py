from __future__ import annotations

from typing import Literal


PermissionScope = Literal["foreground", "background"]

_REMEDIATION = {
    "foreground": (
        "Foreground location permission denied. "
        "Location access is required to track the assigned vehicle."
    ),
    "background": (
        "Background location permission denied. "
        "Open Settings > Apps > Fleet Tracker > Permissions > Location and select "
        '"Allow all the time" so tracking continues while the screen is off.'
    ),
}


class PermissionDenied(RuntimeError):
    """Raised when the platform refuses a positioning permission.

    `scope` is "foreground" or "background". The message carries remediation
    text suitable for showing to the operator.
    """

    def __init__(self, scope: PermissionScope, message: str | None = None) -> None:
        super().__init__(message or _REMEDIATION[scope])
        self.scope: PermissionScope = scope

    @property
    def remediation(self) -> str:
        return str(self)


class AcquisitionCapabilityUnavailable(RuntimeError):
    """The platform cannot run background-capable acquisition."""


class DeliveryFailure(RuntimeError):
    """A single-sample or batch delivery did not get a 2xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FlushFailure(RuntimeError):
    """A flush stopped before draining the queue."""


class PollFailure(RuntimeError):
    """The shift-status endpoint could not be read."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RegistrationFailure(RuntimeError):
    """Operator registration was rejected or could not reach the collector."""


class SessionStateError(RuntimeError):
    """Operation is not valid in the current session state."""


class ConfigError(ValueError):
    """Invalid agent configuration."""
