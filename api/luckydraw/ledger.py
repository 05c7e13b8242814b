"""Append-only history of redemption outcomes, plus the read-side statistics."""

from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .errors import CodeAlreadyRedeemed, RecordNotFound
from .models import CodeStatus, LotteryCode, LotteryRecord, Prize
from .schemas import DayCount, InventoryStats, PrizeCount, WinningStats
from .utils import as_utc, percent


@dataclass(frozen=True)
class ClientInfo:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


def has_record(db: Session, lottery_code_id: int) -> bool:
    return db.scalar(
        select(func.count(LotteryRecord.id)).where(LotteryRecord.lottery_code_id == lottery_code_id)
    ) > 0


def append_record(
    db: Session,
    *,
    activity_id: int,
    lottery_code_id: int,
    prize_id: int | None,
    operator_id: int | None = None,
    client: ClientInfo | None = None,
) -> LotteryRecord:
    client = client or ClientInfo()
    record = LotteryRecord(
        activity_id=activity_id,
        lottery_code_id=lottery_code_id,
        prize_id=prize_id,
        is_winner=prize_id is not None,
        operator_id=operator_id,
        ip_address=client.ip,
        user_agent=client.user_agent,
    )
    db.add(record)
    try:
        db.flush()
    except IntegrityError as exc:
        # unique lottery_code_id: another transaction recorded this code first
        raise CodeAlreadyRedeemed() from exc
    return record


def get_record(db: Session, record_id: int) -> LotteryRecord:
    record = db.get(LotteryRecord, record_id, populate_existing=True)
    if record is None:
        raise RecordNotFound(record_id)
    return record


def _in_range(stmt, start: datetime | None, end: datetime | None):
    # compare in UTC; SQLite keeps wall-clock time only
    start, end = as_utc(start), as_utc(end)
    if start is not None:
        stmt = stmt.where(LotteryRecord.created_at >= start)
    if end is not None:
        stmt = stmt.where(LotteryRecord.created_at <= end)
    return stmt


def list_records(
    db: Session,
    *,
    activity_id: int | None = None,
    winner_only: bool = False,
    operator_id: int | None = None,
    draw_type: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[LotteryRecord], int]:
    stmt = select(LotteryRecord)
    if activity_id is not None:
        stmt = stmt.where(LotteryRecord.activity_id == activity_id)
    if winner_only:
        stmt = stmt.where(LotteryRecord.is_winner.is_(True))
    if operator_id is not None:
        stmt = stmt.where(LotteryRecord.operator_id == operator_id)
    if draw_type == "online":
        stmt = stmt.where(LotteryRecord.operator_id.is_(None))
    elif draw_type == "offline":
        stmt = stmt.where(LotteryRecord.operator_id.is_not(None))
    stmt = _in_range(stmt, start, end)

    total = db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
    rows = db.scalars(
        stmt.order_by(LotteryRecord.created_at.desc(), LotteryRecord.id.desc())
        .limit(limit)
        .offset((page - 1) * limit)
    ).all()
    return list(rows), total


def inventory_stats(db: Session, activity_id: int) -> InventoryStats:
    counts = dict(
        db.execute(
            select(LotteryCode.status, func.count(LotteryCode.id))
            .where(LotteryCode.activity_id == activity_id)
            .group_by(LotteryCode.status)
        ).all()
    )
    used = counts.get(CodeStatus.USED, 0)
    unused = counts.get(CodeStatus.UNUSED, 0)
    invalid = counts.get(CodeStatus.INVALID, 0)
    total = used + unused + invalid
    return InventoryStats(
        activity_id=activity_id,
        total_codes=total,
        used_codes=used,
        unused_codes=unused,
        invalid_codes=invalid,
        usage_rate=percent(used, total),
    )


def winning_stats(
    db: Session, activity_id: int, start: datetime | None = None, end: datetime | None = None
) -> WinningStats:
    winners = _in_range(
        select(LotteryRecord).where(
            LotteryRecord.activity_id == activity_id, LotteryRecord.is_winner.is_(True)
        ),
        start,
        end,
    ).subquery()

    per_prize = db.execute(
        select(Prize.id, Prize.name, func.count(winners.c.id))
        .join(winners, winners.c.prize_id == Prize.id)
        .group_by(Prize.id, Prize.name, Prize.sort_order)
        .order_by(Prize.sort_order.asc(), Prize.id.asc())
    ).all()

    days = Counter(as_utc(created).date() for created in db.scalars(select(winners.c.created_at)))

    return WinningStats(
        total_winners=sum(days.values()),
        per_prize_counts=[PrizeCount(prize_id=pid, name=name, count=n) for pid, name, n in per_prize],
        per_day_counts=[DayCount(date=day, count=n) for day, n in sorted(days.items())],
    )
