from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from periods import isoformat_utc, utcnow


class EntryType(str, Enum):
    income = "income"
    expense = "expense"


class PaymentMethodType(str, Enum):
    cash = "cash"
    bank = "bank"
    emoney = "emoney"
    card = "card"


class Frequency(str, Enum):
    weekly = "weekly"
    monthly = "monthly"
    bimonthly = "bimonthly"
    yearly = "yearly"


class HolidayAdjustment(str, Enum):
    none = "none"
    previous = "previous"
    next = "next"


class ChangeAction(str, Enum):
    upsert = "upsert"
    delete = "delete"


class EntityType(str, Enum):
    entries = "entries"
    entry_categories = "entry_categories"
    payment_methods = "payment_methods"
    recurring_rules = "recurring_rules"
    monthly_balance = "monthly_balance"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(String(120))
    avatar_url: Mapped[Optional[str]] = mapped_column(Text)


class EntryCategory(Base, TimestampMixin):
    __tablename__ = "entry_categories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[str] = mapped_column(String(40), nullable=False)
    icon_key: Mapped[Optional[str]] = mapped_column(String(60))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    merged_to_id: Mapped[Optional[str]] = mapped_column(String(64))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_entry_categories_family_sort", "family_id", "sort_order", "name"),
    )


class PaymentMethod(Base, TimestampMixin):
    __tablename__ = "payment_methods"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[PaymentMethodType] = mapped_column(
        SAEnum(PaymentMethodType), nullable=False
    )
    icon_key: Mapped[Optional[str]] = mapped_column(String(60))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    card_closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    card_payment_day: Mapped[Optional[int]] = mapped_column(Integer)
    linked_bank_payment_method_id: Mapped[Optional[str]] = mapped_column(String(64))
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    __table_args__ = (
        Index("ix_payment_methods_family_sort", "family_id", "sort_order", "name"),
        CheckConstraint(
            "card_closing_day IS NULL OR card_closing_day BETWEEN 1 AND 31",
            name="ck_payment_methods_closing_day",
        ),
        CheckConstraint(
            "card_payment_day IS NULL OR card_payment_day BETWEEN 1 AND 31",
            name="ck_payment_methods_payment_day",
        ),
    )


class RecurringRule(Base, TimestampMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_type: Mapped[EntryType] = mapped_column(SAEnum(EntryType), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_category_id: Mapped[Optional[str]] = mapped_column(String(64))
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(64))
    memo: Mapped[Optional[str]] = mapped_column(Text)
    frequency: Mapped[Frequency] = mapped_column(
        SAEnum(Frequency), default=Frequency.monthly, nullable=False
    )
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    holiday_adjustment: Mapped[HolidayAdjustment] = mapped_column(
        SAEnum(HolidayAdjustment), default=HolidayAdjustment.none, nullable=False
    )
    start_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_recurring_rules_amount_positive"),
        Index("ix_recurring_rules_active", "is_active"),
    )


class Entry(Base, TimestampMixin):
    __tablename__ = "entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_type: Mapped[EntryType] = mapped_column(SAEnum(EntryType), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    entry_category_id: Mapped[Optional[str]] = mapped_column(String(64))
    payment_method_id: Mapped[Optional[str]] = mapped_column(String(64))
    memo: Mapped[Optional[str]] = mapped_column(Text)
    occurred_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    occurred_on: Mapped[date] = mapped_column(Date, nullable=False)
    # Plain id association; rules never own the entries they generate.
    recurring_rule_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_by_user_id: Mapped[Optional[str]] = mapped_column(String(64))
    created_by_user_name: Mapped[Optional[str]] = mapped_column(String(120))
    created_by_avatar_url: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        Index("ix_entries_family_updated", "family_id", "updated_at"),
        Index("ix_entries_family_occurred_on", "family_id", "occurred_on"),
        Index("ix_entries_rule_occurred_on", "recurring_rule_id", "occurred_on"),
        CheckConstraint("amount > 0", name="ck_entries_amount_positive"),
    )


class RecurringOccurrence(Base):
    """One row per (rule, local date) the generator has materialized.

    Outlives the entry it produced, so a deleted occurrence stays deleted.
    """

    __tablename__ = "recurring_occurrences"

    rule_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    occurred_on: Mapped[date] = mapped_column(Date, primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )


class MonthlyBalance(Base):
    __tablename__ = "monthly_balances"

    family_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    ym: Mapped[str] = mapped_column(String(7), primary_key=True)
    balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_closed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class ChangeLog(Base):
    __tablename__ = "change_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[ChangeAction] = mapped_column(SAEnum(ChangeAction), nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_change_logs_family_id", "family_id", "id"),
        {"sqlite_autoincrement": True},
    )


class MutationReceipt(Base):
    __tablename__ = "mutation_receipts"

    request_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    status: Mapped[int] = mapped_column(Integer, nullable=False)
    response_body: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("ix_mutation_receipts_family_created", "family_id", "created_at"),
        Index("ix_mutation_receipts_expires", "expires_at"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    target_type: Mapped[str] = mapped_column(String(40), nullable=False)
    target_id: Mapped[str] = mapped_column(String(64), nullable=False)
    summary: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (Index("ix_audit_logs_family_created", "family_id", "created_at"),)


class EntryAmountChange(Base):
    __tablename__ = "entry_amount_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entry_id: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    next_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    changed_by_user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    changed_by_user_name: Mapped[Optional[str]] = mapped_column(String(120))
    changed_by_avatar_url: Mapped[Optional[str]] = mapped_column(Text)
    changed_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index(
            "ix_entry_amount_changes_family_entry",
            "family_id",
            "entry_id",
            "changed_at",
        ),
    )


def snapshot(row: Base) -> dict[str, Any]:
    """JSON-ready copy of a row's column values."""
    data: dict[str, Any] = {}
    for column in row.__table__.columns:
        value = getattr(row, column.key)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = isoformat_utc(value)
        elif isinstance(value, date):
            value = value.isoformat()
        data[column.key] = value
    return data
