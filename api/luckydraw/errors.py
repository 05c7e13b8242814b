"""Error taxonomy raised by the redemption core.

Every error carries a machine code, a user-safe message and the HTTP status
the web layer answers with. Nothing here is fatal to the process.
"""

from enum import Enum
from typing import Any


class ErrorCode(Enum):
    """Machine-readable error codes."""

    ACTIVITY_NOT_FOUND = "ACTIVITY_NOT_FOUND"
    ACTIVITY_NOT_ELIGIBLE = "ACTIVITY_NOT_ELIGIBLE"
    CODE_NOT_FOUND = "CODE_NOT_FOUND"
    CODE_ALREADY_USED = "CODE_ALREADY_USED"
    CODE_ALREADY_REDEEMED = "CODE_ALREADY_REDEEMED"
    CODE_ALREADY_INVALID = "CODE_ALREADY_INVALID"
    CODE_ALREADY_EXISTS = "CODE_ALREADY_EXISTS"
    CODE_LIMIT_EXCEEDED = "CODE_LIMIT_EXCEEDED"
    UNSUPPORTED_CODE_FORMAT = "UNSUPPORTED_CODE_FORMAT"
    INSUFFICIENT_CODE_SPACE = "INSUFFICIENT_CODE_SPACE"
    PRIZE_NOT_FOUND = "PRIZE_NOT_FOUND"
    PRIZE_IN_USE = "PRIZE_IN_USE"
    TOTAL_BELOW_AWARDED = "TOTAL_BELOW_AWARDED"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    OVER_RESTORE = "OVER_RESTORE"
    PROBABILITY_OVERFLOW = "PROBABILITY_OVERFLOW"
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"


class EligibilityReason(str, Enum):
    NOT_ACTIVE = "not_active"
    NOT_STARTED = "not_started"
    ENDED = "ended"


class LotteryError(Exception):
    """Base error with code and user-safe message."""

    code: ErrorCode
    status_code: int = 400

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code.value, "details": self.details}


class NotFoundError(LotteryError):
    status_code = 404


class PreconditionError(LotteryError):
    """Client-side precondition failed; nothing was changed."""


class ContentionError(LotteryError):
    """Lost a race for shared inventory."""

    status_code = 409


class ConfigurationError(LotteryError):
    """An admin mutation would break an activity invariant."""

    status_code = 422


class ActivityNotFound(NotFoundError):
    code = ErrorCode.ACTIVITY_NOT_FOUND

    def __init__(self, activity_id: int) -> None:
        super().__init__("Activity not found", {"activity_id": activity_id})
        self.activity_id = activity_id


class ActivityNotEligible(PreconditionError):
    code = ErrorCode.ACTIVITY_NOT_ELIGIBLE

    MESSAGES = {
        EligibilityReason.NOT_ACTIVE: "Activity is not active",
        EligibilityReason.NOT_STARTED: "Activity has not started yet",
        EligibilityReason.ENDED: "Activity has ended",
    }

    def __init__(self, reason: EligibilityReason) -> None:
        super().__init__(self.MESSAGES[reason], {"reason": reason.value})
        self.reason = reason


class CodeNotFound(NotFoundError):
    code = ErrorCode.CODE_NOT_FOUND

    def __init__(self, code: str | None = None) -> None:
        super().__init__("Lottery code does not exist or does not belong to this activity")
        self.lottery_code = code


class CodeAlreadyUsed(PreconditionError):
    code = ErrorCode.CODE_ALREADY_USED

    def __init__(self, status: str | None = None) -> None:
        super().__init__("Lottery code has already been used", {"status": status} if status else None)


class CodeAlreadyRedeemed(PreconditionError):
    code = ErrorCode.CODE_ALREADY_REDEEMED

    def __init__(self) -> None:
        super().__init__("Lottery code has already taken part in a draw")


class CodeAlreadyInvalid(PreconditionError):
    code = ErrorCode.CODE_ALREADY_INVALID

    def __init__(self) -> None:
        super().__init__("Lottery code is already invalid")


class CodeAlreadyExists(PreconditionError):
    code = ErrorCode.CODE_ALREADY_EXISTS
    status_code = 409

    def __init__(self, codes: list[str]) -> None:
        super().__init__("Lottery code already exists", {"codes": codes})
        self.codes = codes


class CodeLimitExceeded(ConfigurationError):
    code = ErrorCode.CODE_LIMIT_EXCEEDED

    def __init__(self, limit: int) -> None:
        super().__init__(f"Activity allows at most {limit} lottery codes", {"limit": limit})


class UnsupportedCodeFormat(ConfigurationError):
    code = ErrorCode.UNSUPPORTED_CODE_FORMAT

    def __init__(self, code_format: str) -> None:
        super().__init__(f"Unsupported lottery code format: {code_format}")


class InsufficientCodeSpace(ConfigurationError):
    code = ErrorCode.INSUFFICIENT_CODE_SPACE

    def __init__(self, code_format: str, requested: int, keyspace: int) -> None:
        super().__init__(
            "Code format cannot supply enough unique codes",
            {"format": code_format, "requested": requested, "keyspace": keyspace},
        )


class PrizeNotFound(NotFoundError):
    code = ErrorCode.PRIZE_NOT_FOUND

    def __init__(self, prize_id: int) -> None:
        super().__init__("Prize does not exist or does not belong to this activity", {"prize_id": prize_id})


class PrizeInUse(ConfigurationError):
    code = ErrorCode.PRIZE_IN_USE
    status_code = 409

    def __init__(self, prize_id: int, awarded: int) -> None:
        super().__init__(
            "Prize has already been awarded and cannot be deleted",
            {"prize_id": prize_id, "awarded": awarded},
        )


class TotalBelowAwarded(ConfigurationError):
    code = ErrorCode.TOTAL_BELOW_AWARDED

    def __init__(self, prize_id: int, total: int, awarded: int) -> None:
        super().__init__(
            "Total quantity cannot be lower than the number already awarded",
            {"prize_id": prize_id, "total_quantity": total, "awarded": awarded},
        )


class OutOfStock(ContentionError):
    code = ErrorCode.OUT_OF_STOCK

    def __init__(self, prize_id: int) -> None:
        super().__init__("Prize is out of stock", {"prize_id": prize_id})
        self.prize_id = prize_id


class OverRestore(ConfigurationError):
    code = ErrorCode.OVER_RESTORE

    def __init__(self, prize_id: int) -> None:
        super().__init__("Restored stock cannot exceed the total quantity", {"prize_id": prize_id})


class ProbabilityOverflow(ConfigurationError):
    code = ErrorCode.PROBABILITY_OVERFLOW

    def __init__(self, attempted_sum: float) -> None:
        super().__init__(
            f"Prize probabilities would sum to {attempted_sum:.4f}, which exceeds 1",
            {"attempted_sum": round(attempted_sum, 4)},
        )
        self.attempted_sum = attempted_sum


class RecordNotFound(NotFoundError):
    code = ErrorCode.RECORD_NOT_FOUND

    def __init__(self, record_id: int) -> None:
        super().__init__("Lottery record not found", {"record_id": record_id})
