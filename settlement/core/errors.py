"""Settlement error taxonomy.

Every error carries a stable code and a user-safe message so the UI can
prompt corrective action (e.g. reduce quantity, use another voucher).
"""

from dataclasses import dataclass
from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    VALIDATION_FAILED = "VALIDATION_FAILED"
    EVENT_NOT_FOUND = "EVENT_NOT_FOUND"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    EVENT_UNAVAILABLE = "EVENT_UNAVAILABLE"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    VOUCHER_NOT_FOUND = "VOUCHER_NOT_FOUND"
    VOUCHER_INACTIVE = "VOUCHER_INACTIVE"
    VOUCHER_EXPIRED = "VOUCHER_EXPIRED"
    VOUCHER_ZERO_BALANCE = "VOUCHER_ZERO_BALANCE"
    VOUCHER_EVENT_MISMATCH = "VOUCHER_EVENT_MISMATCH"
    VOUCHER_BALANCE_CONFLICT = "VOUCHER_BALANCE_CONFLICT"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    CODE_ALLOCATION_FAILED = "CODE_ALLOCATION_FAILED"
    GATEWAY_ERROR = "GATEWAY_ERROR"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"


@dataclass(eq=False)
class SettlementError(Exception):
    """Base error with code and user-safe message."""

    code: ErrorCode
    message: str

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(SettlementError):
    """Malformed input."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.VALIDATION_FAILED, message=message)


class NotFoundError(SettlementError):
    """Unknown event, voucher or booking."""


class ConflictError(SettlementError):
    """State does not allow the operation, or a race was lost."""


class GatewayError(SettlementError):
    """Payment gateway unreachable or rejected the request."""

    def __init__(self, message: str) -> None:
        super().__init__(code=ErrorCode.GATEWAY_ERROR, message=message)


class SignatureError(SettlementError):
    """Webhook payload failed verification."""

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(code=ErrorCode.INVALID_SIGNATURE, message=message)


class EventNotFoundError(NotFoundError):
    def __init__(self, event_id: str) -> None:
        super().__init__(code=ErrorCode.EVENT_NOT_FOUND, message="Event not found")
        self.event_id = event_id


class BookingNotFoundError(NotFoundError):
    def __init__(self, booking_id: str) -> None:
        super().__init__(code=ErrorCode.BOOKING_NOT_FOUND, message="Booking not found")
        self.booking_id = booking_id


class EventUnavailableError(ConflictError):
    def __init__(self, status: str) -> None:
        super().__init__(code=ErrorCode.EVENT_UNAVAILABLE, message="Event is not open for booking")
        self.status = status


class InsufficientInventoryError(ConflictError):
    """Raised when fewer tickets remain than requested."""

    def __init__(self, requested: int, available: int | None = None) -> None:
        super().__init__(
            code=ErrorCode.INSUFFICIENT_INVENTORY,
            message="Not enough tickets available",
        )
        self.requested = requested
        self.available = available


class VoucherNotFoundError(NotFoundError):
    def __init__(self, code: str) -> None:
        super().__init__(code=ErrorCode.VOUCHER_NOT_FOUND, message="Voucher not found")
        self.voucher_code = code


class VoucherInactiveError(ConflictError):
    def __init__(self, status: str) -> None:
        super().__init__(code=ErrorCode.VOUCHER_INACTIVE, message="Voucher is not active")
        self.status = status


class VoucherExpiredError(ConflictError):
    def __init__(self) -> None:
        super().__init__(code=ErrorCode.VOUCHER_EXPIRED, message="Voucher has expired")


class VoucherZeroBalanceError(ConflictError):
    def __init__(self) -> None:
        super().__init__(code=ErrorCode.VOUCHER_ZERO_BALANCE, message="Voucher has no balance left")


class VoucherEventMismatchError(ConflictError):
    def __init__(self, allowed_event_id: str) -> None:
        super().__init__(
            code=ErrorCode.VOUCHER_EVENT_MISMATCH,
            message="Voucher is only valid for a specific event",
        )
        self.allowed_event_id = allowed_event_id


class VoucherBalanceConflictError(ConflictError):
    """The voucher balance changed under us and cannot cover the amount."""

    def __init__(self, requested: int) -> None:
        super().__init__(
            code=ErrorCode.VOUCHER_BALANCE_CONFLICT,
            message="Voucher balance is no longer sufficient",
        )
        self.requested = requested


class InvalidTransitionError(ConflictError):
    def __init__(self, kind: str, current: str, target: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"{kind} cannot move from {current} to {target}",
        )
        self.current = current
        self.target = target


class CodeAllocationError(ConflictError):
    def __init__(self, what: str) -> None:
        super().__init__(
            code=ErrorCode.CODE_ALLOCATION_FAILED,
            message=f"Could not allocate a unique {what}",
        )
