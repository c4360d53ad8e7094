"""
Domain errors raised by the counting services.

The API layer maps them to HTTP responses:
- ValidationError -> 400 (NotFoundError -> 404)
- ConflictError   -> 409
StockOracleError never reaches the API; callers fall back to stored snapshots.
"""
from typing import Dict, Optional


class CountingError(Exception):
    """Base exception for count reconciliation errors."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(CountingError):
    """Malformed input or reference to an unknown user/item/round."""


class NotFoundError(ValidationError):
    """Referenced record does not exist."""


class ConflictError(CountingError):
    """Operation conflicts with the current state; nothing was changed."""


class GroupStartedError(ConflictError):
    """Group has count logs and can no longer be deleted."""


class DuplicateAuditError(ConflictError):
    """An active audit already exists for the product."""


class RoundTransitionError(ConflictError):
    """Round state transition is not allowed."""


class StockOracleError(CountingError):
    """Transient failure looking up live stock in the ERP."""
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message, {"status_code": status_code} if status_code else None)
