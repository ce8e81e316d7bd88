"""
Exception hierarchy for the tournament desk.
"""

from typing import Optional


class OcheError(Exception):
    """Base class for all tournament desk errors."""


class ConfigurationError(OcheError):
    """Raised when the configuration cannot be used."""


class ValidationError(OcheError):
    """Raised when user supplied data is invalid."""


class NotFoundError(OcheError):
    """Raised when a requested record does not exist."""


class SchedulingError(OcheError):
    """Raised when a schedule or bracket cannot be built."""


class SupervisorError(OcheError):
    """Raised when a supervised child process fails to start."""


class EmailDeliveryError(OcheError):
    """Raised when the email provider rejects a message."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
