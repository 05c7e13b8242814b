import enum
from datetime import datetime

from sqlalchemy import (
    JSON, Boolean, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base
from .utils import utcnow


class ActivityStatus(str, enum.Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    ENDED = "ended"


class CodeStatus(str, enum.Enum):
    UNUSED = "unused"
    USED = "used"
    INVALID = "invalid"


class LotteryStrategy(str, enum.Enum):
    PROBABILITY = "probability"
    GUARANTEED = "guaranteed"


def _values(enum_cls):
    return [member.value for member in enum_cls]


class Activity(Base):
    __tablename__ = "activities"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[ActivityStatus] = mapped_column(
        Enum(ActivityStatus, native_enum=False, values_callable=_values, length=16),
        default=ActivityStatus.DRAFT,
        nullable=False,
    )
    settings: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    prizes: Mapped[list["Prize"]] = relationship(
        back_populates="activity", cascade="all, delete-orphan", order_by="Prize.sort_order"
    )
    codes: Mapped[list["LotteryCode"]] = relationship(
        back_populates="activity", cascade="all, delete-orphan"
    )
    records: Mapped[list["LotteryRecord"]] = relationship(
        back_populates="activity", cascade="all, delete-orphan"
    )

    @property
    def strategy(self) -> LotteryStrategy:
        return LotteryStrategy((self.settings or {}).get("lottery_strategy", LotteryStrategy.PROBABILITY.value))


class Prize(Base):
    __tablename__ = "prizes"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # 0 means "implicit": shares whatever the explicit prizes leave over
    probability: Mapped[float] = mapped_column(Numeric(5, 4, asdecimal=False), nullable=False, default=0)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    activity: Mapped[Activity] = relationship(back_populates="prizes")

    @property
    def awarded_count(self) -> int:
        return self.total_quantity - self.remaining_quantity

    def has_stock(self) -> bool:
        return self.remaining_quantity > 0


class LotteryCode(Base):
    __tablename__ = "lottery_codes"
    __table_args__ = (UniqueConstraint("activity_id", "code", name="uq_lottery_codes_activity_code"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[CodeStatus] = mapped_column(
        Enum(CodeStatus, native_enum=False, values_callable=_values, length=16),
        default=CodeStatus.UNUSED,
        nullable=False,
    )
    participant_info: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    activity: Mapped[Activity] = relationship(back_populates="codes")
    record: Mapped["LotteryRecord | None"] = relationship(back_populates="lottery_code", uselist=False)


class LotteryRecord(Base):
    __tablename__ = "lottery_records"
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    activity_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("activities.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # unique: one redemption per code, even if two transactions race past the status check
    lottery_code_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("lottery_codes.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    prize_id: Mapped[int | None] = mapped_column(Integer, ForeignKey("prizes.id"), nullable=True)
    is_winner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    operator_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    activity: Mapped[Activity] = relationship(back_populates="records")
    lottery_code: Mapped[LotteryCode] = relationship(back_populates="record")
    prize: Mapped[Prize | None] = relationship()

    @property
    def draw_type(self) -> str:
        return "offline" if self.operator_id is not None else "online"
