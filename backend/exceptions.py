"""
Error taxonomy for the subscription and affiliate ledgers.

Pure resolvers never raise. Ledger operations validate their preconditions
and raise one of these before any write; the HTTP layer maps them to status
codes via ``LedgerError.status_code``.
"""

from http import HTTPStatus
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """
    Base exception for all ledger errors.

    Attributes:
        message: Human readable error message
        status_code: HTTP status code the route layer should answer with
        code: Stable machine readable error code
        details: Additional error details
        retryable: Whether the caller may retry the same request unchanged
    """

    status_code: int = HTTPStatus.INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        code: Optional[str] = None
    ):
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "retryable": self.retryable
            }
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class NotFoundError(LedgerError):
    """Missing subscription, plan, invoice, affiliate, commission or withdrawal."""

    status_code = HTTPStatus.NOT_FOUND

    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            message=f"{resource} not found",
            details={"resource": resource, "id": str(identifier)}
        )


class ValidationError(LedgerError):
    """Bad amount, invalid plan, withdrawal below minimum and similar input errors."""

    status_code = HTTPStatus.BAD_REQUEST


class ConflictError(LedgerError):
    """Duplicate pending renewal, balance exhausted at completion time."""

    status_code = HTTPStatus.CONFLICT


class ReconciliationRequired(ConflictError):
    """A reversal would push an affiliate balance below zero; needs manual handling."""


class GatewayError(LedgerError):
    """Payment gateway unreachable or returned malformed data."""

    status_code = HTTPStatus.BAD_GATEWAY
    retryable = True


class InvariantViolation(LedgerError):
    """A ledger invariant failed after a mutation; the mutation is rolled back."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
