from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from datetime import date, datetime
from typing import Literal, Optional, List

from .config import settings
from .models import ActivityStatus, CodeStatus, LotteryStrategy
from .utils import as_utc

CodeFormatName = Literal[
    "4_digit_number",
    "8_digit_number",
    "8_digit_alphanumeric",
    "12_digit_number",
    "12_digit_alphanumeric",
]


class ActivitySettings(BaseModel):
    lottery_strategy: LotteryStrategy = LotteryStrategy.PROBABILITY
    lottery_code_format: CodeFormatName = settings.default_code_format
    max_lottery_codes: int = Field(default=settings.default_max_lottery_codes, ge=0)
    allow_duplicate_phone: bool = False


class ParticipantInfo(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    phone: Optional[str] = None
    email: Optional[EmailStr] = None


# --- activities ---

class ActivityIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: ActivityStatus = ActivityStatus.DRAFT
    settings: ActivitySettings = Field(default_factory=ActivitySettings)

    @field_validator("start_time", "end_time")
    @classmethod
    def store_as_utc(cls, value):
        return as_utc(value)

    @model_validator(mode="after")
    def check_window(self):
        if self.start_time and self.end_time and self.end_time < self.start_time:
            raise ValueError("end_time must not be earlier than start_time")
        return self


class ActivityUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    settings: Optional[ActivitySettings] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def store_as_utc(cls, value):
        return as_utc(value)


class ActivityStatusIn(BaseModel):
    status: ActivityStatus


class ActivityOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: ActivityStatus
    settings: ActivitySettings


# --- prizes ---

class PrizeIn(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    total_quantity: int = Field(ge=0)
    probability: float = Field(default=0, ge=0, le=1)
    sort_order: int = Field(default=0, ge=0)


class PrizeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    total_quantity: Optional[int] = Field(default=None, ge=0)
    probability: Optional[float] = Field(default=None, ge=0, le=1)
    sort_order: Optional[int] = Field(default=None, ge=0)


class PrizeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    activity_id: int
    name: str
    description: Optional[str] = None
    total_quantity: int
    remaining_quantity: int
    probability: float
    sort_order: int


class StockAdjustIn(BaseModel):
    delta: int


class ProbabilityCheck(BaseModel):
    valid: bool
    sum: float
    prizes: int


class PrizeStatistics(BaseModel):
    id: int
    name: str
    total_quantity: int
    remaining_quantity: int
    awarded_count: int
    award_rate: float


# --- codes ---

class CodeIn(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    participant_info: Optional[ParticipantInfo] = None


class CodeBatchIn(BaseModel):
    count: int = Field(ge=1, le=settings.max_batch_codes)


class CodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    code: str
    status: CodeStatus
    participant_info: Optional[dict] = None
    used_at: Optional[datetime] = None


class CodeBatchOut(BaseModel):
    created_count: int
    lottery_codes: List[CodeOut]


class CodeCheckIn(BaseModel):
    codes: List[str] = Field(min_length=1, max_length=100)


class CodeCheck(BaseModel):
    code: str
    valid: bool
    reason: Optional[str] = None
    lottery_code_id: Optional[int] = None


# --- draws ---

class DrawRequest(BaseModel):
    lottery_code: str = Field(min_length=1, max_length=50)


class OfflineDrawRequest(DrawRequest):
    prize_id: Optional[int] = Field(default=None, ge=1)


class PrizeSummary(BaseModel):
    id: int
    name: str
    description: Optional[str] = None


class RecordSummary(BaseModel):
    id: int
    created_at: datetime


class CodeSummary(BaseModel):
    code: str
    participant_info: dict = Field(default_factory=dict)


class DrawResponse(BaseModel):
    is_winner: bool
    prize: Optional[PrizeSummary] = None
    record: RecordSummary
    lottery_code: CodeSummary
    message: str


class RecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    activity_id: int
    lottery_code_id: int
    prize_id: Optional[int] = None
    is_winner: bool
    operator_id: Optional[int] = None
    draw_type: Literal["online", "offline"]
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime


class RecordPage(BaseModel):
    records: List[RecordOut]
    total: int
    page: int
    limit: int


class RecordIdsIn(BaseModel):
    ids: List[int] = Field(min_length=1)


# --- statistics ---

class InventoryStats(BaseModel):
    activity_id: int
    total_codes: int
    used_codes: int
    unused_codes: int
    invalid_codes: int
    usage_rate: float


class PrizeCount(BaseModel):
    prize_id: int
    name: str
    count: int


class DayCount(BaseModel):
    date: date
    count: int


class WinningStats(BaseModel):
    total_winners: int
    per_prize_counts: List[PrizeCount]
    per_day_counts: List[DayCount]


class ActivityStatistics(BaseModel):
    total_codes: int
    used_codes: int
    remaining_codes: int
    total_records: int
    total_winners: int
    win_rate: float
    prize_statistics: List[PrizeStatistics]


# --- auth ---

class AdminLoginRequest(BaseModel):
    password: str

class AdminLoginResponse(BaseModel):
    token: str
