"""
Exception hierarchy for shared_expenses.

Everything inherits from SharedExpensesError so callers at the API boundary
can map a single base class to user-facing messages.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional


class SharedExpensesError(Exception):
    """Base exception for all shared_expenses errors"""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(SharedExpensesError):
    """Malformed input; carries the complete list of violations"""

    def __init__(self, errors: Iterable[str], details: Optional[dict[str, Any]] = None):
        self.errors = list(errors)
        super().__init__("Validation failed: " + "; ".join(self.errors), details)


class PreconditionError(SharedExpensesError):
    """Operation is not allowed in the current state of the ledger"""
    pass


class NotFoundError(PreconditionError):
    """Referenced transaction, settlement, user or group does not exist"""
    pass


class InvalidStateError(PreconditionError):
    """Entity exists but is in the wrong state for the operation"""
    pass


class PermissionDeniedError(PreconditionError):
    """Actor is not allowed to perform the operation"""
    pass


class InvariantViolation(SharedExpensesError):
    """A ledger invariant failed; signals a defect upstream"""
    pass


class DependencyFailure(SharedExpensesError):
    """The backing store was unavailable while refreshing derived data"""
    pass
