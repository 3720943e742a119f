import logging
import uuid
from datetime import date, datetime, timedelta
from typing import Iterator, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from models import (
    ChangeAction,
    EntityType,
    Entry,
    Frequency,
    HolidayAdjustment,
    RecurringOccurrence,
    RecurringRule,
    snapshot,
)
from periods import (
    days_in_month,
    local_date,
    local_midnight,
    min_ym,
    utcnow,
    ym_of,
)
from services import (
    SYSTEM_ACTOR,
    recalculate_monthly_balances,
    record_audit,
    record_change,
)


logger = logging.getLogger(__name__)

OCCURRENCE_NAMESPACE = uuid.UUID("6f1c2a4e-9b3d-5e7f-8a21-4c0d9e3b7a15")

# A weekend base date moves at most two days, so only dates this close to
# the target can land on it.
MAX_SHIFT_DAYS = 2


def occurrence_id(rule_id: str, occurrence_date: date) -> str:
    return str(uuid.uuid5(OCCURRENCE_NAMESPACE, f"{rule_id}:{occurrence_date.isoformat()}"))


def sunday_weekday(day: date) -> int:
    """Weekday index with 0 = Sunday and 6 = Saturday."""
    return (day.weekday() + 1) % 7


def due_day(rule: RecurringRule, year: int, month: int) -> int:
    configured = rule.day_of_month or local_date(rule.start_at).day
    return min(configured, days_in_month(year, month))


def adjust_for_weekend(day: date, policy: HolidayAdjustment) -> date:
    if policy == HolidayAdjustment.none:
        return day
    weekday = sunday_weekday(day)
    if policy == HolidayAdjustment.previous:
        if weekday == 0:
            return day - timedelta(days=2)
        if weekday == 6:
            return day - timedelta(days=1)
    elif policy == HolidayAdjustment.next:
        if weekday == 0:
            return day + timedelta(days=1)
        if weekday == 6:
            return day + timedelta(days=2)
    return day


def _within_bounds(rule: RecurringRule, day: date) -> bool:
    if day < local_date(rule.start_at):
        return False
    if rule.end_at is not None and day > local_date(rule.end_at):
        return False
    return True


def is_base_date(rule: RecurringRule, day: date) -> bool:
    """Whether ``day`` is a scheduled date before any weekend shift."""
    if not _within_bounds(rule, day):
        return False

    start = local_date(rule.start_at)
    if rule.frequency == Frequency.weekly:
        if rule.day_of_month is not None and 0 <= rule.day_of_month <= 6:
            weekday = rule.day_of_month
        else:
            weekday = sunday_weekday(start)
        return sunday_weekday(day) == weekday

    month_diff = (day.year - start.year) * 12 + day.month - start.month
    if rule.frequency == Frequency.bimonthly and month_diff % 2 != 0:
        return False
    if rule.frequency == Frequency.yearly and day.month != start.month:
        return False
    return day.day == due_day(rule, day.year, day.month)


def _candidates(target: date) -> Iterator[date]:
    for offset in range(-MAX_SHIFT_DAYS, MAX_SHIFT_DAYS + 1):
        yield target + timedelta(days=offset)


def should_generate(rule: RecurringRule, target: date) -> bool:
    if not rule.is_active or not _within_bounds(rule, target):
        return False
    for base in _candidates(target):
        if is_base_date(rule, base) and adjust_for_weekend(
            base, rule.holiday_adjustment
        ) == target:
            return True
    return False


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session

    def active_rules(self) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .where(RecurringRule.is_active.is_(True))
            .order_by(RecurringRule.family_id, RecurringRule.id)
        )
        return list(self.session.scalars(stmt).all())

    def generate(self, now: Optional[datetime] = None) -> int:
        """Materialize today's occurrences for every active rule.

        Safe to call repeatedly: an occurrence made earlier is skipped, even
        when its entry has since been deleted.
        """
        target = local_date(now or utcnow())
        earliest: dict[str, str] = {}
        created = 0

        for rule in self.active_rules():
            if not should_generate(rule, target):
                continue
            if not self._materialize(rule, target):
                continue
            created += 1
            ym = ym_of(target)
            previous = earliest.get(rule.family_id)
            earliest[rule.family_id] = min_ym(previous, ym) if previous else ym

        for family_id, start_ym in earliest.items():
            recalculate_monthly_balances(self.session, family_id, start_ym, today=target)

        logger.info(f"recurring_generate: date={target.isoformat()} created={created}")
        return created

    def _materialize(self, rule: RecurringRule, occurrence_date: date) -> bool:
        if self.session.get(RecurringOccurrence, (rule.id, occurrence_date)) is not None:
            return False

        entry_id = occurrence_id(rule.id, occurrence_date)
        now = utcnow()
        occurred_at = local_midnight(occurrence_date)
        entry = Entry(
            id=entry_id,
            family_id=rule.family_id,
            entry_type=rule.entry_type,
            amount=rule.amount,
            entry_category_id=rule.entry_category_id,
            payment_method_id=rule.payment_method_id,
            memo=rule.memo,
            occurred_at=occurred_at,
            occurred_on=occurrence_date,
            recurring_rule_id=rule.id,
            created_by_user_id=SYSTEM_ACTOR,
            created_by_user_name=SYSTEM_ACTOR,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.session.begin_nested():
                self.session.add(
                    RecurringOccurrence(
                        rule_id=rule.id,
                        occurred_on=occurrence_date,
                        family_id=rule.family_id,
                        entry_id=entry_id,
                        created_at=now,
                    )
                )
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            logger.info(
                f"recurring_duplicate: rule={rule.id} date={occurrence_date.isoformat()}"
            )
            return False

        record_audit(
            self.session,
            rule.family_id,
            SYSTEM_ACTOR,
            "create",
            EntityType.entries,
            entry_id,
            f"recurring {rule.entry_type.value} {rule.amount}",
        )
        record_change(
            self.session,
            rule.family_id,
            EntityType.entries,
            entry_id,
            ChangeAction.upsert,
            {"entry": snapshot(entry)},
        )
        self.session.commit()
        return True
