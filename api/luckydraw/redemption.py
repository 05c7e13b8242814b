"""Redemption coordinator.

One draw is one database transaction: load the activity, check it is open,
load and lock the code, refuse anything already used or recorded, pick a
prize, take one unit of stock, flip the code to ``used`` and append the
record. Any failure rolls all of it back.

Losing a stock race is not an error for the participant: if the chosen prize
runs out between selection and deduction, the draw becomes a no-win.
"""

import random
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from . import activities, allocation, codes, inventory, ledger
from .errors import CodeAlreadyRedeemed, CodeAlreadyUsed, LotteryError, OutOfStock
from .ledger import ClientInfo
from .logger import get_logger
from .models import CodeStatus, LotteryCode, LotteryRecord, Prize
from .schemas import CodeSummary, DrawResponse, PrizeSummary, RecordSummary
from .utils import as_utc, utcnow

logger = get_logger(__name__)

WIN_MESSAGE = "Congratulations, you won a prize!"
NO_WIN_MESSAGE = "Sorry, no prize this time."


@dataclass
class DrawOutcome:
    record: LotteryRecord
    lottery_code: LotteryCode
    prize: Optional[Prize] = None
    # the engine picked a prize that a concurrent draw emptied first
    stock_raced: bool = False

    @property
    def is_winner(self) -> bool:
        return self.prize is not None

    def as_response(self) -> DrawResponse:
        return DrawResponse(
            is_winner=self.is_winner,
            prize=PrizeSummary(id=self.prize.id, name=self.prize.name, description=self.prize.description)
            if self.prize else None,
            record=RecordSummary(id=self.record.id, created_at=self.record.created_at),
            lottery_code=CodeSummary(
                code=self.lottery_code.code, participant_info=self.lottery_code.participant_info or {}
            ),
            message=WIN_MESSAGE if self.is_winner else NO_WIN_MESSAGE,
        )


def _take_chosen(db: Session, prize: Prize) -> bool:
    try:
        inventory.deduct(db, prize.id, 1)
    except OutOfStock:
        return False
    return True


def _redeem(
    db: Session,
    activity_id: int,
    code: str,
    *,
    operator_id: int | None,
    client: ClientInfo | None,
    forced_prize_id: int | None,
    now: datetime,
    rng: random.Random | None,
) -> DrawOutcome:
    activity = activities.get_activity(db, activity_id)
    activities.check_eligibility(activity, now)

    lottery_code = codes.lookup(db, activity_id, code, for_update=True)
    if lottery_code.status != CodeStatus.UNUSED:
        raise CodeAlreadyUsed(lottery_code.status.value)
    if ledger.has_record(db, lottery_code.id):
        raise CodeAlreadyRedeemed()

    stock_raced = False
    if forced_prize_id is not None:
        prize = inventory.get_prize(db, forced_prize_id, activity_id=activity_id)
        # an operator asked for this prize: running out is a real error here
        inventory.deduct(db, prize.id, 1)
    else:
        prize = allocation.select_prize(inventory.list_active(db, activity_id), activity.strategy, rng)
        if prize is not None and not _take_chosen(db, prize):
            logger.warning(
                "Prize %s ran out during draw of code %s; recording no-win", prize.id, lottery_code.id
            )
            prize, stock_raced = None, True

    codes.mark_used(db, lottery_code, now)
    record = ledger.append_record(
        db,
        activity_id=activity_id,
        lottery_code_id=lottery_code.id,
        prize_id=prize.id if prize else None,
        operator_id=operator_id,
        client=client,
    )
    return DrawOutcome(record=record, lottery_code=lottery_code, prize=prize, stock_raced=stock_raced)


def _run_draw(db: Session, activity_id: int, code: str, **kwargs) -> DrawOutcome:
    try:
        outcome = _redeem(db, activity_id, code, **kwargs)
        db.commit()
    except LotteryError as exc:
        db.rollback()
        logger.info("Draw rejected for activity %s: %s", activity_id, exc.code.value)
        raise
    except Exception:
        db.rollback()
        raise

    logger.info(
        "%s draw on activity %s, code %s -> %s",
        outcome.record.draw_type,
        activity_id,
        outcome.lottery_code.id,
        f"prize {outcome.prize.id}" if outcome.prize else "no win",
    )
    return outcome


def draw(
    db: Session,
    activity_id: int,
    code: str,
    client: ClientInfo | None = None,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> DrawOutcome:
    """Online draw by an anonymous participant."""
    return _run_draw(
        db,
        activity_id,
        code,
        operator_id=None,
        client=client,
        forced_prize_id=None,
        now=as_utc(now) or utcnow(),
        rng=rng,
    )


def offline_draw(
    db: Session,
    activity_id: int,
    code: str,
    operator_id: int,
    client: ClientInfo | None = None,
    forced_prize_id: int | None = None,
    *,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> DrawOutcome:
    """Operator-assisted draw; ``forced_prize_id`` awards that prize directly."""
    return _run_draw(
        db,
        activity_id,
        code,
        operator_id=operator_id,
        client=client,
        forced_prize_id=forced_prize_id,
        now=as_utc(now) or utcnow(),
        rng=rng,
    )


def _undo(db: Session, record: LotteryRecord) -> None:
    if record.prize_id is not None:
        inventory.restore(db, record.prize_id, 1)
    lottery_code = codes.get_code(db, record.lottery_code_id)
    codes.mark_unused(db, lottery_code)
    db.delete(record)
    db.flush()


def delete_record(db: Session, record_id: int) -> None:
    """Administrative undo: give the stock back, reopen the code, drop the record."""
    try:
        record = ledger.get_record(db, record_id)
        _undo(db, record)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Deleted lottery record %s (prize %s)", record_id, record.prize_id)


def delete_records(db: Session, record_ids: list[int]) -> int:
    """Undo several records in one transaction; all or nothing."""
    try:
        for record_id in dict.fromkeys(record_ids):
            _undo(db, ledger.get_record(db, record_id))
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Deleted %d lottery records", len(set(record_ids)))
    return len(set(record_ids))
