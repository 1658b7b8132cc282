"""
Error taxonomy shared by the workflows, service clients and the daemon.

Identity failures (no client match) are not exceptions; they are written
to the unmatched audit table by the caller.
"""


class ConsultflowError(Exception):
    """Base class for all consultflow errors."""


class ConfigurationError(ConsultflowError):
    """A required setting (API key, secret, id) is missing or invalid.

    Terminal for the affected feature: the batch logs it once and stops.
    """


class ExternalServiceError(ConsultflowError):
    """Non-success or malformed response from an external service."""

    def __init__(self, service: str, message: str, status: int | None = None):
        self.service = service
        self.status = status
        detail = f"{service} error"
        if status is not None:
            detail += f" ({status})"
        super().__init__(f"{detail}: {message}")


class SafetyViolation(ConsultflowError):
    """Attempted mutation of a filter or label the system does not own."""
