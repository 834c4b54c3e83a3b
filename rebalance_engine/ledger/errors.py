"""
Ledger error taxonomy and result type.

Ledger operations never raise for business failures. They return a
LedgerResult carrying either a value or a LedgerError, and callers branch on
the error's category.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

T = TypeVar("T")


class ErrorCategory(str, Enum):
    """How a failure must be handled by callers."""

    PERMISSION = "permission"  # never retried, triggers mirror reconciliation
    RESOURCE = "resource"  # never retried
    VALIDATION = "validation"  # malformed input, never retried
    TRANSIENT = "transient"  # retried with backoff
    SYSTEMIC = "systemic"  # halts all submission


class ErrorCode(str, Enum):
    """Concrete failure codes."""

    NOT_AUTHORIZED = "NotAuthorized"
    DESTINATION_NOT_APPROVED = "DestinationNotApproved"
    DESTINATION_NOT_REGISTERED = "DestinationNotRegistered"
    DESTINATION_IN_USE = "DestinationInUse"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    INVALID_AMOUNT = "InvalidAmount"
    INVALID_MOVE = "InvalidMove"
    ADAPTER_UNAVAILABLE = "AdapterUnavailable"
    SUBMISSION_TIMEOUT = "SubmissionTimeout"
    CIRCUIT_BREAKER_TRIPPED = "CircuitBreakerTripped"
    COMPENSATION_FAILED = "CompensationFailed"

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self]


_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.NOT_AUTHORIZED: ErrorCategory.PERMISSION,
    ErrorCode.DESTINATION_NOT_APPROVED: ErrorCategory.PERMISSION,
    ErrorCode.DESTINATION_NOT_REGISTERED: ErrorCategory.PERMISSION,
    ErrorCode.DESTINATION_IN_USE: ErrorCategory.PERMISSION,
    ErrorCode.INSUFFICIENT_FUNDS: ErrorCategory.RESOURCE,
    ErrorCode.INVALID_AMOUNT: ErrorCategory.VALIDATION,
    ErrorCode.INVALID_MOVE: ErrorCategory.VALIDATION,
    ErrorCode.ADAPTER_UNAVAILABLE: ErrorCategory.TRANSIENT,
    ErrorCode.SUBMISSION_TIMEOUT: ErrorCategory.TRANSIENT,
    ErrorCode.CIRCUIT_BREAKER_TRIPPED: ErrorCategory.SYSTEMIC,
    ErrorCode.COMPENSATION_FAILED: ErrorCategory.SYSTEMIC,
}


@dataclass(frozen=True)
class LedgerError:
    """A classified ledger failure."""

    code: ErrorCode
    message: str

    @property
    def category(self) -> ErrorCategory:
        return self.code.category

    @property
    def is_permission(self) -> bool:
        return self.category == ErrorCategory.PERMISSION

    @property
    def is_transient(self) -> bool:
        return self.category == ErrorCategory.TRANSIENT

    @property
    def is_systemic(self) -> bool:
        return self.category == ErrorCategory.SYSTEMIC

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


@dataclass(frozen=True)
class LedgerResult(Generic[T]):
    """Outcome of a ledger operation: a value or an error, never both."""

    value: T | None = None
    error: LedgerError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> "LedgerResult[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> "LedgerResult[T]":
        return cls(error=LedgerError(code, message))

    def unwrap(self) -> T:
        """Return the value, raising if the result is a failure."""
        if self.error is not None:
            raise LedgerOperationError(self.error)
        return self.value  # type: ignore[return-value]


class LedgerOperationError(Exception):
    """Raised by LedgerResult.unwrap() on a failed result."""

    def __init__(self, error: LedgerError):
        super().__init__(str(error))
        self.error = error
