"""Activity lifecycle and draw eligibility."""

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .errors import ActivityNotEligible, ActivityNotFound, EligibilityReason
from .logger import get_logger
from .models import Activity, ActivityStatus, CodeStatus, LotteryCode, LotteryRecord
from .schemas import ActivityIn, ActivitySettings, ActivityStatistics, ActivityUpdate
from .utils import as_utc, percent, utcnow
from . import inventory

logger = get_logger(__name__)


def get_activity(db: Session, activity_id: int) -> Activity:
    stmt = select(Activity).where(Activity.id == activity_id)
    activity = db.execute(stmt.execution_options(populate_existing=True)).scalar_one_or_none()
    if activity is None:
        raise ActivityNotFound(activity_id)
    return activity


def activity_settings(activity: Activity) -> ActivitySettings:
    return ActivitySettings.model_validate(activity.settings or {})


def create_activity(db: Session, data: ActivityIn, created_by: int | None = None) -> Activity:
    activity = Activity(
        name=data.name,
        description=data.description,
        start_time=data.start_time,
        end_time=data.end_time,
        status=data.status,
        settings=data.settings.model_dump(mode="json"),
        created_by=created_by,
    )
    db.add(activity)
    db.commit()
    logger.info("Created activity %s (%s)", activity.id, activity.strategy.value)
    return activity


def update_activity(db: Session, activity_id: int, data: ActivityUpdate) -> Activity:
    activity = get_activity(db, activity_id)
    changes = data.model_dump(exclude_unset=True, exclude={"settings"})
    for field, value in changes.items():
        setattr(activity, field, value)
    if data.settings is not None:
        activity.settings = data.settings.model_dump(mode="json")
    start, end = as_utc(activity.start_time), as_utc(activity.end_time)
    if start and end and end < start:
        db.rollback()
        raise ValueError("end_time must not be earlier than start_time")
    db.commit()
    return activity


def set_status(db: Session, activity_id: int, status: ActivityStatus) -> Activity:
    activity = get_activity(db, activity_id)
    activity.status = status
    db.commit()
    logger.info("Activity %s is now %s", activity.id, status.value)
    return activity


def delete_activity(db: Session, activity_id: int) -> None:
    activity = get_activity(db, activity_id)
    db.delete(activity)
    db.commit()
    logger.info("Deleted activity %s", activity_id)


def check_eligibility(activity: Activity, now: datetime | None = None) -> None:
    """Raise ActivityNotEligible unless the activity accepts draws at ``now``."""
    now = as_utc(now) or utcnow()
    if activity.status != ActivityStatus.ACTIVE:
        raise ActivityNotEligible(EligibilityReason.NOT_ACTIVE)
    start = as_utc(activity.start_time)
    if start and now < start:
        raise ActivityNotEligible(EligibilityReason.NOT_STARTED)
    end = as_utc(activity.end_time)
    if end and now > end:
        raise ActivityNotEligible(EligibilityReason.ENDED)


def activity_statistics(db: Session, activity_id: int) -> ActivityStatistics:
    get_activity(db, activity_id)

    total_codes = db.scalar(
        select(func.count(LotteryCode.id)).where(LotteryCode.activity_id == activity_id)
    ) or 0
    used_codes = db.scalar(
        select(func.count(LotteryCode.id)).where(
            LotteryCode.activity_id == activity_id, LotteryCode.status == CodeStatus.USED
        )
    ) or 0
    total_records = db.scalar(
        select(func.count(LotteryRecord.id)).where(LotteryRecord.activity_id == activity_id)
    ) or 0
    total_winners = db.scalar(
        select(func.count(LotteryRecord.id)).where(
            LotteryRecord.activity_id == activity_id, LotteryRecord.is_winner.is_(True)
        )
    ) or 0

    return ActivityStatistics(
        total_codes=total_codes,
        used_codes=used_codes,
        remaining_codes=total_codes - used_codes,
        total_records=total_records,
        total_winners=total_winners,
        win_rate=percent(total_winners, total_records),
        prize_statistics=inventory.prize_statistics(db, activity_id),
    )
