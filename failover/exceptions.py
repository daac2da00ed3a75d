"""Failover exception classes."""


class FailoverError(Exception):
    """Base exception for failover operations."""

    pass


class CloudError(FailoverError):
    """Base exception for control-plane errors."""

    def __init__(self, message: str, operation: str = "", code: str = ""):
        super().__init__(message)
        self.message = message
        self.operation = operation
        self.code = code


class TransientCloudError(CloudError):
    """Throttling or momentary control-plane unavailability."""

    pass


class CloudRetryExhaustedError(CloudError):
    """A transient error persisted past the retry budget."""

    pass


class AttachConflictError(CloudError):
    """Attach rejected because the resource is still in use elsewhere."""

    pass


class CloudAPIError(CloudError):
    """Non-retriable control-plane error."""

    pass


class MetadataUnavailableError(FailoverError):
    """Instance metadata service unreachable or returned no data."""

    pass


class StateFileError(FailoverError):
    """Persisted floating resource state is missing or malformed."""

    def __init__(self, message: str, path: str):
        self.path = path
        super().__init__(f"{path}: {message}")


class LocalNetworkError(FailoverError):
    """Local ip command failed."""

    def __init__(self, message: str, interface: str):
        self.interface = interface
        super().__init__(f"{interface}: {message}")


class ReconcileTimeoutError(FailoverError):
    """Reconciliation exceeded its run deadline."""

    pass


class InvalidRoleError(FailoverError):
    """Role token is not one the adapter understands."""

    def __init__(self, token: str):
        self.token = token
        super().__init__(f"Unknown role token: {token!r}")
