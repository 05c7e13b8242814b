"""Prize stock and probability bookkeeping for one activity.

This module is the only writer of ``Prize.remaining_quantity``. Every change
is a single conditional UPDATE whose WHERE clause carries the guard, so two
transactions racing for the last unit cannot both succeed.
"""

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from .errors import (
    ActivityNotFound, OutOfStock, OverRestore, PrizeInUse, PrizeNotFound, ProbabilityOverflow, TotalBelowAwarded,
)
from .logger import get_logger
from .models import Activity, Prize
from .schemas import PrizeIn, PrizeStatistics, PrizeUpdate, ProbabilityCheck
from .utils import percent

logger = get_logger(__name__)

EPSILON = 1e-9


def get_prize(db: Session, prize_id: int, activity_id: int | None = None) -> Prize:
    prize = db.get(Prize, prize_id, populate_existing=True)
    if prize is None or (activity_id is not None and prize.activity_id != activity_id):
        raise PrizeNotFound(prize_id)
    return prize


def list_prizes(db: Session, activity_id: int) -> list[Prize]:
    return list(
        db.scalars(
            select(Prize)
            .where(Prize.activity_id == activity_id)
            .order_by(Prize.sort_order.asc(), Prize.id.asc())
            .execution_options(populate_existing=True)
        )
    )


def list_active(db: Session, activity_id: int) -> list[Prize]:
    """Prizes that still have stock, in ``sort_order``."""
    return list(
        db.scalars(
            select(Prize)
            .where(Prize.activity_id == activity_id, Prize.remaining_quantity > 0)
            .order_by(Prize.sort_order.asc(), Prize.id.asc())
            .execution_options(populate_existing=True)
        )
    )


def deduct(db: Session, prize_id: int, n: int = 1) -> Prize:
    if n < 1:
        raise ValueError("deduct amount must be positive")
    result = db.execute(
        update(Prize)
        .where(Prize.id == prize_id, Prize.remaining_quantity >= n)
        .values(remaining_quantity=Prize.remaining_quantity - n)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        get_prize(db, prize_id)
        raise OutOfStock(prize_id)
    return get_prize(db, prize_id)


def restore(db: Session, prize_id: int, n: int = 1) -> Prize:
    if n < 1:
        raise ValueError("restore amount must be positive")
    result = db.execute(
        update(Prize)
        .where(Prize.id == prize_id, Prize.remaining_quantity + n <= Prize.total_quantity)
        .values(remaining_quantity=Prize.remaining_quantity + n)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        get_prize(db, prize_id)
        raise OverRestore(prize_id)
    return get_prize(db, prize_id)


def adjust_stock(db: Session, prize_id: int, delta: int) -> Prize:
    """Manual stock edit by an administrator, committed on its own."""
    try:
        if delta < 0:
            deduct(db, prize_id, -delta)
        elif delta > 0:
            restore(db, prize_id, delta)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Adjusted stock of prize %s by %+d", prize_id, delta)
    return get_prize(db, prize_id)


def probability_sum(db: Session, activity_id: int, exclude_prize_id: int | None = None) -> float:
    stmt = select(func.coalesce(func.sum(Prize.probability), 0)).where(Prize.activity_id == activity_id)
    if exclude_prize_id is not None:
        stmt = stmt.where(Prize.id != exclude_prize_id)
    return float(db.scalar(stmt) or 0)


def validate_probability_sum(db: Session, activity_id: int) -> ProbabilityCheck:
    """Sum of explicit probabilities over every prize, in stock or not."""
    total = probability_sum(db, activity_id)
    count = db.scalar(select(func.count(Prize.id)).where(Prize.activity_id == activity_id)) or 0
    return ProbabilityCheck(valid=total <= 1 + EPSILON, sum=round(total, 4), prizes=count)


def ensure_probability_fits(
    db: Session, activity_id: int, probability: float, prize_id: int | None = None
) -> float:
    """Return the sum ``probability`` would produce, or raise ProbabilityOverflow."""
    attempted = probability_sum(db, activity_id, exclude_prize_id=prize_id) + (probability or 0)
    if attempted > 1 + EPSILON:
        raise ProbabilityOverflow(attempted)
    return attempted


def activity_lock(activity_id: int):
    return select(Activity.id).where(Activity.id == activity_id).with_for_update()


def lock_activity(db: Session, activity_id: int) -> None:
    """Hold the activity row so concurrent prize writes check the probability sum one at a time."""
    if db.scalar(activity_lock(activity_id)) is None:
        raise ActivityNotFound(activity_id)


def create_prize(db: Session, activity_id: int, data: PrizeIn) -> Prize:
    try:
        lock_activity(db, activity_id)
        ensure_probability_fits(db, activity_id, data.probability)
        prize = Prize(
            activity_id=activity_id,
            name=data.name,
            description=data.description,
            total_quantity=data.total_quantity,
            remaining_quantity=data.total_quantity,
            probability=data.probability,
            sort_order=data.sort_order,
        )
        db.add(prize)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Created prize %s for activity %s", prize.id, activity_id)
    return prize


def update_prize(db: Session, prize_id: int, data: PrizeUpdate) -> Prize:
    try:
        prize = get_prize(db, prize_id)
        lock_activity(db, prize.activity_id)
        changes = data.model_dump(exclude_unset=True)
        new_total = changes.pop("total_quantity", None)

        if changes.get("probability") is not None:
            ensure_probability_fits(db, prize.activity_id, changes["probability"], prize_id=prize.id)
        for field, value in changes.items():
            if value is not None:
                setattr(prize, field, value)
        db.flush()

        if new_total is not None:
            # awarded units stay awarded; the guard reads the row as it is now
            awarded = Prize.total_quantity - Prize.remaining_quantity
            result = db.execute(
                update(Prize)
                .where(Prize.id == prize.id, awarded <= new_total)
                .values(total_quantity=new_total, remaining_quantity=new_total - awarded)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                current = get_prize(db, prize.id)
                raise TotalBelowAwarded(prize.id, new_total, current.awarded_count)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return get_prize(db, prize_id)


def delete_prize(db: Session, prize_id: int) -> None:
    try:
        prize = get_prize(db, prize_id)
        if prize.awarded_count > 0:
            raise PrizeInUse(prize.id, prize.awarded_count)
        db.delete(prize)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Deleted prize %s", prize_id)


def prize_statistics(db: Session, activity_id: int) -> list[PrizeStatistics]:
    return [
        PrizeStatistics(
            id=p.id,
            name=p.name,
            total_quantity=p.total_quantity,
            remaining_quantity=p.remaining_quantity,
            awarded_count=p.awarded_count,
            award_rate=percent(p.awarded_count, p.total_quantity),
        )
        for p in list_prizes(db, activity_id)
    ]
