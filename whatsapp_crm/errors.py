"""
Error taxonomy for the CRM.

Every user-visible failure carries a stable machine-readable code and an
HTTP status. Routes render them as ``{"ok": false, "error": code}``.
"""

from typing import Optional


class CRMError(Exception):
    """Base error with a stable code and HTTP status."""

    status_code: int = 500
    default_code: str = "SERVER_ERROR"

    def __init__(
        self,
        code: Optional[str] = None,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code or self.default_code
        super().__init__(message or self.code)
        if status_code is not None:
            self.status_code = status_code


class ValidationError(CRMError):
    """Missing or invalid required field (amount, id, code)."""

    status_code = 400
    default_code = "INVALID_PAYLOAD"


class NotFoundError(CRMError):
    """No record for the given id."""

    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(CRMError):
    """The record is not in a state that allows the change."""

    status_code = 409
    default_code = "CONFLICT"


class StorageUnavailableError(CRMError):
    """Transient key-value backend failure (connection, timeout)."""

    status_code = 503
    default_code = "STORAGE_UNAVAILABLE"


class ConfigurationMissingError(CRMError):
    """A required external credential or URL is absent."""

    status_code = 503
    default_code = "CONFIGURATION_MISSING"
