"""Exception taxonomy for the billing core."""

from typing import Any


class BillingError(Exception):
    """Base exception for billing core errors."""

    status_code: int | None = None

    def __init__(self, message: str, status_code: int | None = None, details: Any = None):
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code
        self.details = details


class ValidationError(BillingError):
    """A required write field is missing or invalid."""

    status_code = 400


class AuthorizationError(BillingError):
    """The caller's role may not perform the requested operation."""

    status_code = 403


class NotFoundError(BillingError):
    """Unknown id, or permanent delete attempted on a non-archived entity."""

    status_code = 404


class ConflictError(BillingError):
    """Unique-constraint violation in a store."""

    status_code = 409


class UpstreamFetchError(BillingError):
    """A reconciliation source could not be reached.

    Raised inside the reconciler's fetch wrapper and always isolated there;
    callers of ``LedgerReconciler.refresh`` only see it as a warning string.
    """

    def __init__(self, source: str, message: str, details: Any = None):
        super().__init__(f"Source '{source}' failed: {message}", details=details)
        self.source = source
