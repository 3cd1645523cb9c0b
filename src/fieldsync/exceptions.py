"""Exceptions raised by the fieldsync core."""


class FieldSyncError(Exception):
    """Base class for all fieldsync errors."""

    pass


class StorageError(FieldSyncError):
    """Raised when the local store fails (quota, corruption, locked file).

    Callers treat this as recoverable: log it, surface it, keep the
    sync pipeline alive.
    """

    pass


class SchemaVersionError(StorageError):
    """Raised when the database was written by a newer schema version."""

    pass


class InvalidTransitionError(FieldSyncError):
    """Raised when a status change is not allowed by the transition table."""

    def __init__(self, kind: str, current: str, target: str) -> None:
        self.kind = kind
        self.current = current
        self.target = target
        super().__init__(f"Illegal {kind} transition: {current} -> {target}")


class ApiError(FieldSyncError):
    """Raised when the remote API rejects a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class NetworkError(ApiError):
    """Raised when the remote API could not be reached at all."""

    pass
