"""
Rejection taxonomy for the allocation engine.

Services raise AllocationError subclasses while deciding an outcome. The public
service functions catch them and hand back a Rejection value, so business
failures never escape the allocation boundary as exceptions. Callers branch on
`Rejection.code`, never on the message text.

StorageConflict is different: it is a transient infrastructure failure raised
by run_in_transaction once the retry budget is spent.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RejectionKind(str, Enum):
    CAPACITY_EXHAUSTED = "CapacityExhausted"
    CHANNEL_CLOSED = "ChannelClosed"
    DUPLICATE_IDENTITY = "DuplicateIdentity"
    INVALID_ACCESS_CODE = "InvalidAccessCode"
    RESERVATION_EXPIRED = "ReservationExpired"
    INVALID_REQUEST = "InvalidRequest"
    NOT_FOUND = "NotFound"
    INVALID_TRANSITION = "InvalidTransition"
    INVALID_SETTING = "InvalidSetting"


class RejectionCode(str, Enum):
    # Capacity
    FULL = "FULL"
    PAID_FULL = "PAID_FULL"
    # Channel toggles
    FREE_CLOSED = "FREE_CLOSED"
    PAID_CLOSED = "PAID_CLOSED"
    VIP_CLOSED = "VIP_CLOSED"
    VOL_CLOSED = "VOL_CLOSED"
    DRAW_CLOSED = "DRAW_CLOSED"
    # Identity
    DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
    # Access codes
    INVALID = "INVALID"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    CODE_FULL = "CODE_FULL"
    CODE_USED = "CODE_USED"
    EMAIL_MISMATCH = "EMAIL_MISMATCH"
    # Reservations
    TIMEOUT = "TIMEOUT"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    TOO_MANY_TICKETS = "TOO_MANY_TICKETS"
    # Generic
    INVALID_REQUEST = "INVALID_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    # Policy edits
    FCFS_EXCEEDS_CAP = "FCFS_EXCEEDS_CAP"
    UNKNOWN_SETTING = "UNKNOWN_SETTING"
    INVALID_SETTING = "INVALID_SETTING"


@dataclass(frozen=True)
class Rejection:
    kind: RejectionKind
    code: RejectionCode
    message: str
    existing_status: Optional[str] = None

    def as_dict(self) -> dict:
        body = {"error": self.message, "code": self.code.value, "kind": self.kind.value}
        if self.existing_status is not None:
            body["status"] = self.existing_status
        return body


class AllocationError(Exception):
    """Base class for recoverable business rejections."""

    kind: RejectionKind = RejectionKind.INVALID_REQUEST
    default_code: RejectionCode = RejectionCode.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        code: Optional[RejectionCode] = None,
        existing_status: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.existing_status = existing_status

    def to_rejection(self) -> Rejection:
        return Rejection(
            kind=self.kind,
            code=self.code,
            message=self.message,
            existing_status=self.existing_status,
        )


class CapacityExhausted(AllocationError):
    kind = RejectionKind.CAPACITY_EXHAUSTED
    default_code = RejectionCode.FULL


class ChannelClosed(AllocationError):
    kind = RejectionKind.CHANNEL_CLOSED
    default_code = RejectionCode.FREE_CLOSED


class DuplicateIdentity(AllocationError):
    kind = RejectionKind.DUPLICATE_IDENTITY
    default_code = RejectionCode.DUPLICATE_EMAIL


class InvalidAccessCode(AllocationError):
    kind = RejectionKind.INVALID_ACCESS_CODE
    default_code = RejectionCode.INVALID


class ReservationExpired(AllocationError):
    kind = RejectionKind.RESERVATION_EXPIRED
    default_code = RejectionCode.TIMEOUT


class InvalidRequest(AllocationError):
    kind = RejectionKind.INVALID_REQUEST
    default_code = RejectionCode.INVALID_REQUEST


class RecordNotFound(AllocationError):
    kind = RejectionKind.NOT_FOUND
    default_code = RejectionCode.NOT_FOUND


class InvalidTransition(AllocationError):
    kind = RejectionKind.INVALID_TRANSITION
    default_code = RejectionCode.INVALID_TRANSITION


class InvalidSetting(AllocationError):
    kind = RejectionKind.INVALID_SETTING
    default_code = RejectionCode.INVALID_SETTING


class StorageConflict(Exception):
    """A transactional write kept losing races; safe for the caller to retry later."""

    def __init__(self, attempts: int):
        super().__init__(f"Transaction aborted after {attempts} conflicting attempts")
        self.attempts = attempts
