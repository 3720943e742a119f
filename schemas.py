from datetime import datetime
from typing import Annotated, Any, Literal, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from models import EntryType, Frequency, HolidayAdjustment, PaymentMethodType
from periods import parse_instant, to_naive_utc


def _instant(value: Any) -> Any:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return parse_instant(value)
    if isinstance(value, datetime):
        return to_naive_utc(value)
    return value


def _optional_text(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip()
        return value or None
    return value


def _stripped(value: Any) -> Any:
    return value.strip() if isinstance(value, str) else value


Instant = Annotated[Optional[datetime], BeforeValidator(_instant)]
Reference = Annotated[Optional[str], BeforeValidator(_optional_text)]


def _base_updated_at() -> Any:
    return Field(
        default=None,
        validation_alias=AliasChoices("base_updated_at", "client_updated_at"),
    )


class EntryIn(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    entry_type: EntryType
    amount: int = Field(..., gt=0)
    entry_category_id: Reference = None
    payment_method_id: Reference = None
    memo: Optional[str] = None
    occurred_at: Instant = None
    recurring_rule_id: Reference = None
    base_updated_at: Instant = _base_updated_at()


class EntryPatch(BaseModel):
    entry_type: Optional[EntryType] = None
    amount: Optional[int] = Field(default=None, gt=0)
    entry_category_id: Reference = None
    payment_method_id: Reference = None
    memo: Optional[str] = None
    occurred_at: Instant = None
    recurring_rule_id: Reference = None
    base_updated_at: Instant = _base_updated_at()


class EntryCategoryIn(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Annotated[str, BeforeValidator(_stripped)] = Field(
        ..., min_length=1, max_length=100
    )
    type: Annotated[str, BeforeValidator(_stripped)] = Field(
        ..., min_length=1, max_length=40
    )
    icon_key: Optional[str] = Field(default=None, max_length=60)
    color: Optional[str] = Field(default=None, max_length=9)
    sort_order: int = 0
    base_updated_at: Instant = _base_updated_at()


class CategoryMergeIn(BaseModel):
    merged_to_id: str = Field(..., min_length=1, max_length=64)


class PaymentMethodIn(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    name: Annotated[str, BeforeValidator(_stripped)] = Field(
        ..., min_length=1, max_length=100
    )
    type: PaymentMethodType
    icon_key: Reference = None
    color: Reference = None
    card_closing_day: Optional[int] = Field(default=None, ge=1, le=31)
    card_payment_day: Optional[int] = Field(default=None, ge=1, le=31)
    linked_bank_payment_method_id: Reference = None
    sort_order: int = 0
    base_updated_at: Instant = _base_updated_at()

    @field_validator("card_closing_day", "card_payment_day", mode="before")
    @classmethod
    def _blank_day(cls, value: Any) -> Any:
        return None if value == "" else value

    @model_validator(mode="after")
    def _card_only_fields(self) -> "PaymentMethodIn":
        if self.type != PaymentMethodType.card:
            self.card_closing_day = None
            self.card_payment_day = None
            self.linked_bank_payment_method_id = None
        return self


class RecurringRuleIn(BaseModel):
    id: Optional[str] = Field(default=None, min_length=1, max_length=64)
    entry_type: EntryType
    amount: int = Field(..., gt=0)
    entry_category_id: Reference = None
    payment_method_id: Reference = None
    memo: Optional[str] = None
    frequency: Frequency = Frequency.monthly
    day_of_month: Optional[int] = None
    holiday_adjustment: HolidayAdjustment = HolidayAdjustment.none
    start_at: Instant = None
    end_at: Instant = None
    is_active: bool = True
    base_updated_at: Instant = _base_updated_at()

    @model_validator(mode="after")
    def _day_matches_frequency(self) -> "RecurringRuleIn":
        if self.day_of_month is None:
            return self
        if self.frequency == Frequency.weekly:
            if not 0 <= self.day_of_month <= 6:
                raise ValueError("day_of_month must be a weekday index 0-6")
        elif not 1 <= self.day_of_month <= 31:
            raise ValueError("day_of_month must be between 1 and 31")
        return self


class MonthlyBalanceIn(BaseModel):
    balance: int
    is_closed: bool = False


class FatalConflictError(BaseModel):
    kind: Literal["fatal_conflict"] = "fatal_conflict"
    code: str
    message: str
    entity_type: str
    entity_id: str
    server_snapshot: Optional[dict[str, Any]] = None
    resolution_hint: str
    retryable: Literal[False] = False


class FatalConflictEnvelope(BaseModel):
    error: FatalConflictError


class SyncChangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: str
    entity_id: str
    action: Literal["upsert", "delete"]
    payload: Optional[dict[str, Any]] = None
    created_at: str


class SyncPageOut(BaseModel):
    changes: list[SyncChangeOut]
    next_cursor: int
    server_time: str
