"""
Error taxonomy for provisioning.

Vendor error codes are translated into these classes at the client
boundary; the engine only ever branches on the exception type.
"""


class ProvisioningError(Exception):
    """Base exception for provisioning operations."""

    def __init__(self, message: str, error_code: str | None = None, recoverable: bool = False):
        super().__init__(message)
        self.error_code = error_code
        self.recoverable = recoverable

    @property
    def user_message(self) -> str:
        """Short text safe to show on a chat card."""
        return str(self)


class TransientUpstreamError(ProvisioningError):
    """Rate limited, server-side or expired-token failure. Retried by the clients."""

    def __init__(self, message: str, error_code: str | None = None, status_code: int | None = None):
        super().__init__(message, error_code=error_code, recoverable=True)
        self.status_code = status_code


class UpstreamError(ProvisioningError):
    """Permanent failure reported by an upstream platform."""

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        response_data: dict | None = None,
    ):
        super().__init__(message, error_code=error_code, recoverable=False)
        self.status_code = status_code
        self.response_data = response_data or {}


class EmailCommitError(ProvisioningError):
    """Writing the work email failed for a reason other than a duplicate."""


class RideProvisioningError(ProvisioningError):
    """Ride-service account could not be created."""


class AllSuffixesExhaustedError(ProvisioningError):
    """Every candidate address for a name is already claimed."""

    def __init__(self, name: str, phase: str = "check"):
        super().__init__(
            f"All email suffixes exhausted for {name}", error_code="suffixes_exhausted"
        )
        self.name = name
        self.phase = phase


class InvalidNameError(ProvisioningError):
    """The display name produced an empty slug."""

    def __init__(self, name: str):
        super().__init__(
            f"Cannot build an email handle from name {name!r}", error_code="invalid_name"
        )
        self.name = name


class ActionParseError(ProvisioningError):
    """Card callback payload could not be decoded."""


class UnknownActionError(ProvisioningError):
    """Card callback carried an action tag the bot does not handle."""

    def __init__(self, action: str):
        super().__init__(f"Unknown action: {action}", error_code="unknown_action")
        self.action = action
