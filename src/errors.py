"""
Error taxonomy for the control plane reconciler.

Store errors are raised by the record store and propagated untouched to
the scheduler, which applies backoff. Only NotFoundError is ever treated
as benign, and only at the call sites that document it.
"""


class StoreError(Exception):
    """Base class for record store failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(StoreError):
    """Raised when a record or dependent object does not exist."""


class ConflictError(StoreError):
    """Raised when a write carries a stale resource version."""

    def __init__(self, message: str, expected_version: int = 0):
        self.expected_version = expected_version
        super().__init__(message)


class TransientStoreError(StoreError):
    """Raised when the store is unreachable or the connection failed."""


class ProvisioningError(Exception):
    """
    Raised when a machine or one of its external objects cannot be created.

    The reason is also recorded on the MachinesCreated condition of the
    control plane before the error is raised.
    """

    def __init__(self, reason: str, message: str):
        self.reason = reason
        self.message = message
        super().__init__(f"{reason}: {message}")


class InvariantViolation(Exception):
    """Raised when desired/observed accounting is internally inconsistent."""
