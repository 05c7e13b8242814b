"""Redemption code registry: generation, identity and usage state."""

import random
import secrets
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .activities import check_eligibility, get_activity
from .errors import (
    ActivityNotEligible, CodeAlreadyExists, CodeAlreadyInvalid, CodeAlreadyUsed, CodeLimitExceeded, CodeNotFound,
    InsufficientCodeSpace, UnsupportedCodeFormat,
)
from .logger import get_logger
from .models import Activity, CodeStatus, LotteryCode
from .schemas import ActivitySettings, CodeCheck, ParticipantInfo
from .utils import as_utc, utcnow

logger = get_logger(__name__)

DIGITS = "0123456789"
LOWER = "abcdefghijklmnopqrstuvwxyz"
UPPER = LOWER.upper()

CODE_FORMATS = {
    "4_digit_number": {"length": 4, "charset": DIGITS, "description": "4 digits"},
    "8_digit_number": {"length": 8, "charset": DIGITS, "description": "8 digits"},
    "8_digit_alphanumeric": {"length": 8, "charset": DIGITS + LOWER, "description": "8 digits or lowercase letters"},
    "12_digit_number": {"length": 12, "charset": DIGITS, "description": "12 digits"},
    "12_digit_alphanumeric": {"length": 12, "charset": DIGITS + LOWER + UPPER, "description": "12 digits or letters"},
}

# attempts allowed per requested code before giving up
ATTEMPTS_PER_CODE = 10

_secure_random = secrets.SystemRandom()


def _format(code_format: str) -> dict:
    try:
        return CODE_FORMATS[code_format]
    except KeyError:
        raise UnsupportedCodeFormat(code_format) from None


def keyspace(code_format: str) -> int:
    fmt = _format(code_format)
    return len(fmt["charset"]) ** fmt["length"]


def generate_code(code_format: str, rng: random.Random | None = None) -> str:
    fmt = _format(code_format)
    rng = rng or _secure_random
    return "".join(rng.choice(fmt["charset"]) for _ in range(fmt["length"]))


def generate_batch_codes(
    code_format: str,
    count: int,
    existing: set[str] | list[str] = (),
    rng: random.Random | None = None,
) -> list[str]:
    """Generate ``count`` new codes that collide neither with each other nor ``existing``.

    Raises InsufficientCodeSpace up front when the format cannot hold that many
    codes, and after ``ATTEMPTS_PER_CODE * count`` draws when random collisions
    keep it from getting there.
    """
    if count < 0:
        raise ValueError("count must not be negative")
    if count == 0:
        return []

    taken = set(existing)
    space = keyspace(code_format)
    if len(taken) + count > space:
        raise InsufficientCodeSpace(code_format, count, space)

    new_codes: list[str] = []
    attempts = 0
    max_attempts = count * ATTEMPTS_PER_CODE
    while len(new_codes) < count and attempts < max_attempts:
        candidate = generate_code(code_format, rng)
        if candidate not in taken:
            taken.add(candidate)
            new_codes.append(candidate)
        attempts += 1

    if len(new_codes) < count:
        raise InsufficientCodeSpace(code_format, count, space)
    return new_codes


def validate_code_format(code: str, code_format: str) -> bool:
    fmt = _format(code_format)
    return len(code) == fmt["length"] and all(ch in fmt["charset"] for ch in code)


def supported_formats() -> list[dict]:
    return [
        {"format": name, "description": fmt["description"], "example": generate_code(name)}
        for name, fmt in CODE_FORMATS.items()
    ]


# --- registry ---

def lookup(db: Session, activity_id: int, code: str, *, for_update: bool = False) -> LotteryCode:
    stmt = select(LotteryCode).where(LotteryCode.activity_id == activity_id, LotteryCode.code == code)
    if for_update:
        stmt = stmt.with_for_update()
    found = db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
    if found is None:
        raise CodeNotFound(code)
    return found


def get_code(db: Session, code_id: int) -> LotteryCode:
    found = db.get(LotteryCode, code_id, populate_existing=True)
    if found is None:
        raise CodeNotFound()
    return found


def mark_used(db: Session, lottery_code: LotteryCode, now: datetime | None = None) -> None:
    """unused -> used, guarded on the stored state so only one caller wins."""
    now = as_utc(now) or utcnow()
    result = db.execute(
        update(LotteryCode)
        .where(LotteryCode.id == lottery_code.id, LotteryCode.status == CodeStatus.UNUSED)
        .values(status=CodeStatus.USED, used_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current = get_code(db, lottery_code.id)
        raise CodeAlreadyUsed(current.status.value)
    db.refresh(lottery_code)


def mark_unused(db: Session, lottery_code: LotteryCode) -> None:
    # administrative override, not a normal transition
    lottery_code.status = CodeStatus.UNUSED
    lottery_code.used_at = None
    db.flush()


def mark_invalid(db: Session, lottery_code: LotteryCode) -> None:
    if lottery_code.status == CodeStatus.INVALID:
        raise CodeAlreadyInvalid()
    lottery_code.status = CodeStatus.INVALID
    db.flush()


def invalidate(db: Session, code_id: int) -> LotteryCode:
    try:
        lottery_code = get_code(db, code_id)
        mark_invalid(db, lottery_code)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Invalidated lottery code %s", code_id)
    return lottery_code


def count_codes(db: Session, activity_id: int, status: CodeStatus | None = None) -> int:
    stmt = select(func.count(LotteryCode.id)).where(LotteryCode.activity_id == activity_id)
    if status is not None:
        stmt = stmt.where(LotteryCode.status == status)
    return db.scalar(stmt) or 0


def existing_codes(db: Session, activity_id: int) -> set[str]:
    return set(db.scalars(select(LotteryCode.code).where(LotteryCode.activity_id == activity_id)))


def find_duplicates(db: Session, activity_id: int, codes: list[str]) -> list[str]:
    if not codes:
        return []
    return list(
        db.scalars(
            select(LotteryCode.code).where(
                LotteryCode.activity_id == activity_id, LotteryCode.code.in_(codes)
            )
        )
    )


def _participant_dict(info: ParticipantInfo | dict | None) -> dict | None:
    if info is None:
        return None
    if isinstance(info, ParticipantInfo):
        return info.model_dump(mode="json", exclude_none=True)
    return dict(info)


def _insert(db: Session, activity: Activity, values: list[tuple[str, dict | None]]) -> list[LotteryCode]:
    settings = ActivitySettings.model_validate(activity.settings or {})
    if count_codes(db, activity.id) + len(values) > settings.max_lottery_codes:
        raise CodeLimitExceeded(settings.max_lottery_codes)

    duplicates = find_duplicates(db, activity.id, [code for code, _ in values])
    if duplicates:
        raise CodeAlreadyExists(duplicates)

    created = [
        LotteryCode(activity_id=activity.id, code=code, participant_info=info, status=CodeStatus.UNUSED)
        for code, info in values
    ]
    db.add_all(created)
    try:
        db.flush()
    except IntegrityError as exc:
        # a concurrent insert won the unique (activity_id, code) slot
        raise CodeAlreadyExists([code for code, _ in values]) from exc
    return created


def create_code(
    db: Session, activity: Activity, code: str, participant_info: ParticipantInfo | dict | None = None
) -> LotteryCode:
    try:
        (created,) = _insert(db, activity, [(code, _participant_dict(participant_info))])
        db.commit()
    except Exception:
        db.rollback()
        raise
    return created


def create_batch(
    db: Session, activity: Activity, count: int, rng: random.Random | None = None
) -> list[LotteryCode]:
    """Generate and store ``count`` codes in the activity's configured format."""
    settings = ActivitySettings.model_validate(activity.settings or {})
    try:
        new_codes = generate_batch_codes(
            settings.lottery_code_format, count, existing_codes(db, activity.id), rng
        )
        created = _insert(db, activity, [(code, None) for code in new_codes])
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Generated %d lottery codes for activity %s", len(created), activity.id)
    return created


def update_participant_info(db: Session, code_id: int, info: ParticipantInfo | dict | None) -> LotteryCode:
    try:
        lottery_code = get_code(db, code_id)
        lottery_code.participant_info = _participant_dict(info)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return lottery_code


def check_codes(db: Session, activity_id: int, codes: list[str], now: datetime | None = None) -> list[CodeCheck]:
    """Report, per code, whether it could be drawn right now."""
    now = as_utc(now) or utcnow()
    rows = {
        c.code: c
        for c in db.scalars(
            select(LotteryCode).where(LotteryCode.activity_id == activity_id, LotteryCode.code.in_(codes))
        )
    }
    try:
        check_eligibility(get_activity(db, activity_id), now)
        blocked = None
    except ActivityNotEligible as exc:
        blocked = exc.reason.value

    results = []
    for code in codes:
        found = rows.get(code)
        if found is None:
            results.append(CodeCheck(code=code, valid=False, reason="not_found"))
        elif blocked:
            results.append(CodeCheck(code=code, valid=False, reason=blocked))
        elif found.status != CodeStatus.UNUSED:
            results.append(CodeCheck(code=code, valid=False, reason=found.status.value))
        else:
            results.append(CodeCheck(code=code, valid=True, lottery_code_id=found.id))
    return results
