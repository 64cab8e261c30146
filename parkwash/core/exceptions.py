"""
Custom Exception Hierarchy

Every recoverable outcome of the wallet ledger and the booking state machine
has a typed exception here. Services hand them back inside an
``OperationResult``; the HTTP layer unwraps and the exception handler in
``parkwash.core.middleware`` renders them.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Generic, TypeVar
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    ALREADY_PROCESSED = "ERR_1003"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"

    # Booking errors (2xxx)
    BOOKING_NOT_FOUND = "ERR_2001"
    SLOT_UNAVAILABLE = "ERR_2002"
    DUPLICATE_ACTIVE_BOOKING = "ERR_2003"
    SERVICE_ORDER_NOT_FOUND = "ERR_2004"

    # Wallet errors (4xxx)
    INSUFFICIENT_FUNDS = "ERR_4001"
    INVALID_AMOUNT = "ERR_4002"
    INVALID_CODE = "ERR_4003"
    TRANSACTION_NOT_FOUND = "ERR_4004"
    TRANSACTION_NOT_PENDING = "ERR_4005"
    TRANSACTION_NOT_VERIFIED = "ERR_4006"
    PAYMENT_FAILED = "ERR_4007"

    # State machine errors (6xxx)
    INVALID_STATE_TRANSITION = "ERR_6001"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class AlreadyProcessedError(AppException):
    """Idempotency guard tripped: the operation already happened"""

    def __init__(self, resource: str, identifier: Any, current_status: str | None = None):
        super().__init__(
            message=f"{resource} {identifier} was already processed",
            error_code=ErrorCode.ALREADY_PROCESSED,
            status_code=409,
            details={
                "resource": resource,
                "identifier": str(identifier),
                "current_status": current_status,
            }
        )


# ==================== Wallet ====================

class WalletException(AppException):
    """Base exception for wallet-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_id: int | None = None,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if user_id:
            self.details["user_id"] = user_id


class InsufficientFundsError(WalletException):
    """Raised when a debit would take the wallet below zero"""

    def __init__(self, user_id: int, current_balance: Decimal, required_amount: Decimal):
        super().__init__(
            message="Insufficient wallet balance. Please top up your wallet first.",
            error_code=ErrorCode.INSUFFICIENT_FUNDS,
            user_id=user_id,
            status_code=422,
            details={
                "current_balance": str(current_balance),
                "required_amount": str(required_amount),
                "shortage": str(required_amount - current_balance),
            }
        )
        self.current_balance = current_balance
        self.required_amount = required_amount


class InvalidAmountError(WalletException):
    def __init__(self, amount: Any, reason: str):
        super().__init__(
            message=f"Invalid amount {amount}: {reason}",
            error_code=ErrorCode.INVALID_AMOUNT,
            details={"amount": str(amount)}
        )


class InvalidCodeError(WalletException):
    """Topup verification code mismatch"""

    def __init__(self, reference: str):
        super().__init__(
            message="Invalid verification code",
            error_code=ErrorCode.INVALID_CODE,
            details={"reference": reference}
        )


class TransactionStatusError(WalletException):
    """Topup is not in the status the operation needs"""

    def __init__(self, reference: str, current_status: str, required_status: str):
        error_code = (
            ErrorCode.TRANSACTION_NOT_PENDING
            if required_status == "pending"
            else ErrorCode.TRANSACTION_NOT_VERIFIED
        )
        super().__init__(
            message=f"Transaction {reference} is '{current_status}', required '{required_status}'",
            error_code=error_code,
            status_code=409,
            details={"current_status": current_status, "required_status": required_status}
        )


class PaymentFailedError(WalletException):
    """A transition needed a wallet charge and it did not go through"""

    def __init__(self, reason: str, cause: AppException | None = None):
        details = {"reason": reason}
        if cause is not None:
            details.update(cause.details)
            details["cause"] = cause.error_code.value
        super().__init__(
            message=f"Payment failed: {reason}",
            error_code=ErrorCode.PAYMENT_FAILED,
            status_code=422,
            details=details
        )
        self.cause = cause


# ==================== Bookings ====================

class BookingException(AppException):
    """Base exception for booking errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        booking_id: int | None = None,
        status_code: int = 400,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        if booking_id:
            self.details["booking_id"] = booking_id


class SlotUnavailableError(BookingException):
    def __init__(self, slot_id: int):
        super().__init__(
            message="Selected slot is not available",
            error_code=ErrorCode.SLOT_UNAVAILABLE,
            status_code=422,
            details={"slot_id": slot_id}
        )


class DuplicateActiveBookingError(BookingException):
    def __init__(self, booking_id: int, parking_id: int):
        super().__init__(
            message="You already have an active booking in this parking",
            error_code=ErrorCode.DUPLICATE_ACTIVE_BOOKING,
            booking_id=booking_id,
            status_code=422,
            details={"parking_id": parking_id}
        )


class InvalidStateTransitionError(AppException):
    """Raised when state transition is not allowed"""

    def __init__(
        self,
        kind: str,
        entity_id: int | None,
        current_state: str,
        target_state: str,
    ):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            details={
                "kind": kind,
                "entity_id": entity_id,
                "current_state": current_state,
                "target_state": target_state,
            }
        )


# ==================== Result type ====================

T = TypeVar("T")


@dataclass
class OperationResult(Generic[T]):
    """Outcome of one ledger or state-machine command.

    ``error`` holds the typed exception when ``ok`` is False; nothing was
    persisted in that case.
    """

    ok: bool
    value: T | None = None
    error: AppException | None = None
    meta: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, value: T | None = None, **meta: Any) -> "OperationResult[T]":
        return cls(ok=True, value=value, meta=meta)

    @classmethod
    def failure(cls, error: AppException, **meta: Any) -> "OperationResult[T]":
        return cls(ok=False, error=error, meta=meta)

    @property
    def error_code(self) -> ErrorCode | None:
        return self.error.error_code if self.error else None

    def unwrap(self) -> T:
        """Value on success, raise the typed error otherwise"""
        if not self.ok:
            raise self.error
        return self.value
