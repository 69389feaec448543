"""Domain errors for the inventory, reservation, payment and issuance paths.

Every error carries a stable ``ErrorCode`` and the HTTP status the server
answers with. Messages are user-safe; internal causes are logged, not
returned.
"""

from enum import Enum


class ErrorCode(Enum):
    NOT_FOUND = "NOT_FOUND"
    INVALID_REQUEST = "INVALID_REQUEST"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    SOLD_OUT = "SOLD_OUT"
    RESERVATION_CONFLICT = "RESERVATION_CONFLICT"
    INVALID_STATE = "INVALID_STATE"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    PAYMENT_VERIFICATION_FAILED = "PAYMENT_VERIFICATION_FAILED"
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"
    ISSUANCE_FAILED = "ISSUANCE_FAILED"
    LEDGER_INVARIANT_VIOLATION = "LEDGER_INVARIANT_VIOLATION"


class DomainError(Exception):
    """Base domain error with code, user-safe message and HTTP status."""

    code = ErrorCode.INVALID_REQUEST
    status_code = 400

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class NotFound(DomainError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class InvalidRequest(DomainError):
    code = ErrorCode.INVALID_REQUEST
    status_code = 400


class InsufficientInventory(DomainError):
    """Raised by the ledger when a hold does not fit the remaining capacity."""

    code = ErrorCode.INSUFFICIENT_INVENTORY
    status_code = 409

    def __init__(self, tier_id: str, requested: int) -> None:
        super().__init__(f"Not enough tickets left for tier {tier_id}")
        self.tier_id = tier_id
        self.requested = requested


class SoldOut(DomainError):
    """User-facing form of InsufficientInventory; retry with fewer tickets."""

    code = ErrorCode.SOLD_OUT
    status_code = 409

    def __init__(self, tier_id: str, requested: int) -> None:
        super().__init__("Sold out for the requested quantity")
        self.tier_id = tier_id
        self.requested = requested


class ReservationConflict(DomainError):
    code = ErrorCode.RESERVATION_CONFLICT
    status_code = 409


class InvalidState(DomainError):
    code = ErrorCode.INVALID_STATE
    status_code = 409


class AmountMismatch(DomainError):
    code = ErrorCode.AMOUNT_MISMATCH
    status_code = 400

    def __init__(self, expected: int, got: int) -> None:
        super().__init__("Paid amount does not match the order total")
        self.expected = expected
        self.got = got


class PaymentVerificationFailed(DomainError):
    code = ErrorCode.PAYMENT_VERIFICATION_FAILED
    status_code = 400

    def __init__(self, reason: str = "") -> None:
        super().__init__("Payment could not be verified")
        # never shown to the client
        self.reason = reason


class PaymentGatewayError(DomainError):
    code = ErrorCode.PAYMENT_GATEWAY_ERROR
    status_code = 502


class IssuanceFailed(DomainError):
    """Transactional abort while issuing; safe to retry ``issue``."""

    code = ErrorCode.ISSUANCE_FAILED
    status_code = 503

    def __init__(self, reservation_id: str, cause: str) -> None:
        super().__init__("Tickets could not be issued, please retry")
        self.reservation_id = reservation_id
        self.cause = cause


class LedgerInvariantViolation(DomainError):
    code = ErrorCode.LEDGER_INVARIANT_VIOLATION
    status_code = 500
