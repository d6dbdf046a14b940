"""
Exception classes for pgacl.

Storage failures are not wrapped: psycopg errors reach the caller as-is.
These classes cover misuse of the backend itself.
"""


class AclBackendError(Exception):
    """Base exception for pgacl operations."""

    pass


class BackendValidationError(AclBackendError):
    """Raised when arguments have the wrong shape, before any query runs."""

    pass


class BackendClosedError(AclBackendError):
    """Raised when the backend is used after close()."""

    pass
