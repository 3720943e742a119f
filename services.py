from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from conflicts import ConflictClassifier, FatalConflict, ValidationProblem, WriteOutcome
from models import (
    AuditLog,
    ChangeAction,
    ChangeLog,
    EntityType,
    Entry,
    EntryAmountChange,
    EntryCategory,
    EntryType,
    MonthlyBalance,
    PaymentMethod,
    PaymentMethodType,
    RecurringRule,
    User,
    snapshot,
)
from periods import (
    add_months_to_ym,
    is_valid_ym,
    isoformat_utc,
    local_date,
    local_today,
    min_ym,
    month_bounds,
    utcnow,
    ym_from_index,
    ym_of,
    ym_to_index,
)
from schemas import (
    EntryCategoryIn,
    EntryIn,
    EntryPatch,
    MonthlyBalanceIn,
    PaymentMethodIn,
    RecurringRuleIn,
)


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def record_change(
    session: Session,
    family_id: str,
    entity_type: EntityType,
    entity_id: str,
    action: ChangeAction,
    payload: Optional[dict[str, Any]] = None,
) -> ChangeLog:
    """Append one change-log row to the caller's unit of work."""
    change = ChangeLog(
        family_id=family_id,
        entity_type=entity_type.value,
        entity_id=entity_id,
        action=action,
        payload=json.dumps(payload) if payload is not None else None,
        created_at=utcnow(),
    )
    session.add(change)
    return change


def record_audit(
    session: Session,
    family_id: str,
    actor_user_id: str,
    action: str,
    target_type: EntityType,
    target_id: str,
    summary: Optional[str] = None,
) -> None:
    session.add(
        AuditLog(
            family_id=family_id,
            actor_user_id=actor_user_id,
            action=action,
            target_type=target_type.value,
            target_id=target_id,
            summary=summary,
            created_at=utcnow(),
        )
    )


@dataclass(frozen=True)
class ActorProfile:
    id: str
    name: Optional[str] = None
    avatar_url: Optional[str] = None


def load_actor_profile(session: Session, actor_user_id: str) -> ActorProfile:
    user = session.get(User, actor_user_id)
    if user is None:
        return ActorProfile(id=actor_user_id)
    return ActorProfile(id=user.id, name=user.name, avatar_url=user.avatar_url)


def _month_totals(session: Session, family_id: str, ym: str) -> tuple[int, int]:
    start, end = month_bounds(ym)
    rows = session.execute(
        select(Entry.entry_type, func.coalesce(func.sum(Entry.amount), 0))
        .where(
            Entry.family_id == family_id,
            Entry.occurred_on >= start,
            Entry.occurred_on < end,
        )
        .group_by(Entry.entry_type)
    ).all()
    income = 0
    expense = 0
    for entry_type, total in rows:
        if entry_type == EntryType.income:
            income = int(total or 0)
        elif entry_type == EntryType.expense:
            expense = int(total or 0)
    return income, expense


def recalculate_monthly_balances(
    session: Session,
    family_id: str,
    start_ym: str,
    today: Optional[date] = None,
) -> list[MonthlyBalance]:
    """Carry running balances forward from ``start_ym`` to the current month.

    Months whose stored balance already matches are left untouched and get
    no change row. Each month is committed on its own. A failure part way
    through leaves the earlier months in place and rerunning from the same
    ``start_ym`` rebuilds the rest, since every value is derived from stored
    entries.
    """
    current_ym = ym_of(today or local_today())
    start_index = ym_to_index(start_ym)
    end_index = ym_to_index(current_ym)
    if start_index > end_index:
        return []

    previous = session.get(MonthlyBalance, (family_id, add_months_to_ym(start_ym, -1)))
    previous_balance = previous.balance if previous is not None else 0

    updated: list[MonthlyBalance] = []
    for index in range(start_index, end_index + 1):
        ym = ym_from_index(index)
        income, expense = _month_totals(session, family_id, ym)
        balance = previous_balance + income - expense

        row = session.get(MonthlyBalance, (family_id, ym))
        if row is None or row.balance != balance:
            if row is None:
                row = MonthlyBalance(family_id=family_id, ym=ym, is_closed=False)
                session.add(row)
            row.balance = balance
            row.updated_at = utcnow()
            session.flush()

            record_change(
                session,
                family_id,
                EntityType.monthly_balance,
                ym,
                ChangeAction.upsert,
                {"monthly_balance": snapshot(row)},
            )
            session.commit()

        updated.append(row)
        previous_balance = balance

    logger.info(
        f"balance_recalc: family={family_id} from={start_ym} to={current_ym} "
        f"months={len(updated)}"
    )
    return updated


def run_month_start_balance_update(session: Session, now: datetime) -> int:
    """On the first local day of a month, settle last month for every family."""
    today = local_date(now)
    if today.day != 1:
        return 0

    previous_ym = add_months_to_ym(ym_of(today), -1)
    family_ids = set(session.scalars(select(Entry.family_id).distinct()).all())
    family_ids.update(session.scalars(select(MonthlyBalance.family_id).distinct()).all())

    for family_id in sorted(family_ids):
        recalculate_monthly_balances(session, family_id, previous_ym, today=today)
    return len(family_ids)


class FamilyService:
    def __init__(
        self,
        session: Session,
        family_id: str,
        actor_user_id: str = "unknown",
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.family_id = family_id
        self.actor_user_id = actor_user_id
        self.today = today
        self.classifier = ConflictClassifier(session, family_id)

    def _owned(self, model: type, entity_id: str, entity_type: EntityType) -> Any:
        row = self.session.get(model, entity_id)
        if row is None:
            return None
        if row.family_id != self.family_id:
            raise FatalConflict(
                code="RESOURCE_STATE_INVALID",
                message="id belongs to another family",
                entity_type=entity_type.value,
                entity_id=entity_id,
                resolution_hint="mint a new id for this record",
            )
        return row

    def _recalculate(self, start_ym: str) -> None:
        recalculate_monthly_balances(
            self.session, self.family_id, start_ym, today=self.today
        )


class EntryService(FamilyService):
    def list(self, since: Optional[datetime] = None) -> list[Entry]:
        stmt = (
            select(Entry)
            .where(Entry.family_id == self.family_id)
            .order_by(Entry.occurred_at.desc(), Entry.updated_at.desc())
        )
        if since is not None:
            stmt = stmt.where(Entry.updated_at > since)
        return list(self.session.scalars(stmt).all())

    def get(self, entry_id: str) -> Optional[Entry]:
        return self._owned(Entry, entry_id, EntityType.entries)

    def upsert(self, data: EntryIn) -> tuple[Entry, WriteOutcome]:
        entry_id = data.id or str(uuid4())
        occurred_at = data.occurred_at or utcnow()
        values = {
            "entry_type": data.entry_type,
            "amount": data.amount,
            "entry_category_id": data.entry_category_id,
            "payment_method_id": data.payment_method_id,
            "memo": data.memo,
            "occurred_at": occurred_at,
            "occurred_on": local_date(occurred_at),
            "recurring_rule_id": data.recurring_rule_id,
        }
        self.classifier.check_references(
            entry_category_id=data.entry_category_id,
            payment_method_id=data.payment_method_id,
            recurring_rule_id=data.recurring_rule_id,
        )
        existing = self.get(entry_id)
        return self._write(entry_id, existing, values, data.base_updated_at)

    def update(self, entry_id: str, data: EntryPatch) -> tuple[Entry, WriteOutcome]:
        existing = self.get(entry_id)
        if existing is None:
            raise FatalConflict(
                code="ENTRY_TARGET_MISSING",
                message="entry does not exist",
                entity_type=EntityType.entries.value,
                entity_id=entry_id,
                resolution_hint="sync latest entries before editing",
            )

        provided = data.model_fields_set
        occurred_at = data.occurred_at or existing.occurred_at

        def pick(field: str, required: bool = False) -> Any:
            value = getattr(data, field)
            if field not in provided or (required and value is None):
                return getattr(existing, field)
            return value

        values = {
            "entry_type": pick("entry_type", required=True),
            "amount": pick("amount", required=True),
            "entry_category_id": pick("entry_category_id"),
            "payment_method_id": pick("payment_method_id"),
            "memo": pick("memo"),
            "occurred_at": occurred_at,
            "occurred_on": local_date(occurred_at),
            "recurring_rule_id": pick("recurring_rule_id"),
        }
        self.classifier.check_references(
            entry_category_id=values["entry_category_id"],
            payment_method_id=values["payment_method_id"],
            recurring_rule_id=values["recurring_rule_id"],
        )
        return self._write(entry_id, existing, values, data.base_updated_at)

    def _write(
        self,
        entry_id: str,
        existing: Optional[Entry],
        values: dict[str, Any],
        base_updated_at: Optional[datetime],
    ) -> tuple[Entry, WriteOutcome]:
        outcome = self.classifier.classify(existing, values, base_updated_at)
        if outcome.idempotent:
            return existing, outcome

        actor = load_actor_profile(self.session, self.actor_user_id)
        now = utcnow()
        if existing is None:
            entry = Entry(
                id=entry_id,
                family_id=self.family_id,
                created_by_user_id=actor.id,
                created_by_user_name=actor.name,
                created_by_avatar_url=actor.avatar_url,
                created_at=now,
                **values,
            )
            self.session.add(entry)
            start_ym = ym_of(values["occurred_on"])
        else:
            entry = existing
            old_occurred_on = entry.occurred_on
            previous_amount = entry.amount
            for key, value in values.items():
                setattr(entry, key, value)
            if previous_amount != entry.amount:
                self.session.add(
                    EntryAmountChange(
                        family_id=self.family_id,
                        entry_id=entry.id,
                        previous_amount=previous_amount,
                        next_amount=entry.amount,
                        changed_by_user_id=actor.id,
                        changed_by_user_name=actor.name,
                        changed_by_avatar_url=actor.avatar_url,
                        changed_at=now,
                    )
                )
            # A moved entry shifts every balance between its old and new month.
            start_ym = min_ym(ym_of(old_occurred_on), ym_of(entry.occurred_on))
        entry.updated_at = now

        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            "create" if existing is None else "update",
            EntityType.entries,
            entry_id,
            f"entry {entry.entry_type.value} {entry.amount}",
        )
        self.session.flush()
        record_change(
            self.session,
            self.family_id,
            EntityType.entries,
            entry_id,
            ChangeAction.upsert,
            {"entry": snapshot(entry)},
        )
        self.session.commit()
        self._recalculate(start_ym)
        return entry, outcome

    def delete(self, entry_id: str) -> None:
        existing = self.get(entry_id)
        old_occurred_on = existing.occurred_on if existing is not None else None
        if existing is not None:
            self.session.delete(existing)
        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            "delete",
            EntityType.entries,
            entry_id,
        )
        record_change(
            self.session,
            self.family_id,
            EntityType.entries,
            entry_id,
            ChangeAction.delete,
            {"id": entry_id},
        )
        self.session.commit()
        if old_occurred_on is not None:
            self._recalculate(ym_of(old_occurred_on))

    def amount_history(self, entry_id: str) -> list[EntryAmountChange]:
        stmt = (
            select(EntryAmountChange)
            .where(
                EntryAmountChange.family_id == self.family_id,
                EntryAmountChange.entry_id == entry_id,
            )
            .order_by(EntryAmountChange.changed_at, EntryAmountChange.id)
        )
        return list(self.session.scalars(stmt).all())


class EntryCategoryService(FamilyService):
    def list(self) -> list[EntryCategory]:
        stmt = (
            select(EntryCategory)
            .where(EntryCategory.family_id == self.family_id)
            .order_by(EntryCategory.sort_order, EntryCategory.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, category_id: str) -> Optional[EntryCategory]:
        return self._owned(EntryCategory, category_id, EntityType.entry_categories)

    def require(self, category_id: str) -> EntryCategory:
        category = self.get(category_id)
        if category is None:
            raise FatalConflict(
                code="ENTRY_CATEGORY_INVALID",
                message="entry category not found",
                entity_type=EntityType.entry_categories.value,
                entity_id=category_id,
                resolution_hint="sync latest categories and choose a valid one",
            )
        return category

    def upsert(self, data: EntryCategoryIn) -> tuple[EntryCategory, WriteOutcome]:
        category_id = data.id or str(uuid4())
        existing = self.get(category_id)
        if existing is not None:
            self.classifier.check_category_usable(existing)

        values = {
            "name": data.name,
            "type": data.type,
            "icon_key": data.icon_key,
            "color": data.color,
            "sort_order": data.sort_order,
        }
        outcome = self.classifier.classify(existing, values, data.base_updated_at)
        if outcome.idempotent:
            return existing, outcome

        now = utcnow()
        if existing is None:
            category = EntryCategory(
                id=category_id, family_id=self.family_id, created_at=now, **values
            )
            self.session.add(category)
        else:
            category = existing
            for key, value in values.items():
                setattr(category, key, value)
        category.updated_at = now
        self._commit_upsert(category, "create" if existing is None else "update")
        return category, outcome

    def archive(self, category_id: str) -> tuple[EntryCategory, WriteOutcome]:
        category = self.require(category_id)
        if category.is_archived:
            return category, WriteOutcome(idempotent=True)
        category.is_archived = True
        category.updated_at = utcnow()
        self._commit_upsert(category, "update", "archived")
        return category, WriteOutcome()

    def merge(
        self, category_id: str, merged_to_id: str
    ) -> tuple[EntryCategory, WriteOutcome]:
        category = self.require(category_id)
        if category.merged_to_id == merged_to_id:
            return category, WriteOutcome(idempotent=True)
        if merged_to_id == category_id:
            raise ValidationProblem("a category cannot be merged into itself")
        target = self.require(merged_to_id)
        self.classifier.check_category_usable(target)
        category.merged_to_id = target.id
        category.updated_at = utcnow()
        self._commit_upsert(category, "update", f"merged into {target.id}")
        return category, WriteOutcome()

    def delete(self, category_id: str) -> None:
        existing = self.get(category_id)
        if existing is not None:
            self.session.delete(existing)
        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            "delete",
            EntityType.entry_categories,
            category_id,
        )
        record_change(
            self.session,
            self.family_id,
            EntityType.entry_categories,
            category_id,
            ChangeAction.delete,
            {"id": category_id},
        )
        self.session.commit()

    def _commit_upsert(
        self, category: EntryCategory, action: str, summary: Optional[str] = None
    ) -> None:
        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            action,
            EntityType.entry_categories,
            category.id,
            summary or category.name,
        )
        self.session.flush()
        record_change(
            self.session,
            self.family_id,
            EntityType.entry_categories,
            category.id,
            ChangeAction.upsert,
            {"entry_category": snapshot(category)},
        )
        self.session.commit()


class PaymentMethodService(FamilyService):
    def list(self) -> list[PaymentMethod]:
        stmt = (
            select(PaymentMethod)
            .where(PaymentMethod.family_id == self.family_id)
            .order_by(PaymentMethod.sort_order, PaymentMethod.name)
        )
        return list(self.session.scalars(stmt).all())

    def get(self, payment_method_id: str) -> Optional[PaymentMethod]:
        return self._owned(PaymentMethod, payment_method_id, EntityType.payment_methods)

    def upsert(self, data: PaymentMethodIn) -> tuple[PaymentMethod, WriteOutcome]:
        payment_method_id = data.id or str(uuid4())
        linked_id = data.linked_bank_payment_method_id
        if linked_id:
            linked = self.session.get(PaymentMethod, linked_id)
            if (
                linked is None
                or linked.family_id != self.family_id
                or linked.type != PaymentMethodType.bank
            ):
                raise ValidationProblem(
                    "linked_bank_payment_method_id must be a bank account"
                )

        existing = self.get(payment_method_id)
        values = {
            "name": data.name,
            "type": data.type,
            "icon_key": data.icon_key,
            "color": data.color,
            "card_closing_day": data.card_closing_day,
            "card_payment_day": data.card_payment_day,
            "linked_bank_payment_method_id": linked_id,
            "sort_order": data.sort_order,
        }
        outcome = self.classifier.classify(existing, values, data.base_updated_at)
        if outcome.idempotent:
            return existing, outcome

        now = utcnow()
        if existing is None:
            payment_method = PaymentMethod(
                id=payment_method_id, family_id=self.family_id, created_at=now, **values
            )
            self.session.add(payment_method)
        else:
            payment_method = existing
            for key, value in values.items():
                setattr(payment_method, key, value)
        payment_method.updated_at = now

        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            "create" if existing is None else "update",
            EntityType.payment_methods,
            payment_method_id,
            data.name,
        )
        self.session.flush()
        record_change(
            self.session,
            self.family_id,
            EntityType.payment_methods,
            payment_method_id,
            ChangeAction.upsert,
            {"payment_method": snapshot(payment_method)},
        )
        self.session.commit()
        return payment_method, outcome

    def delete(self, payment_method_id: str) -> None:
        existing = self.get(payment_method_id)
        if existing is not None:
            self.session.delete(existing)
        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            "delete",
            EntityType.payment_methods,
            payment_method_id,
        )
        record_change(
            self.session,
            self.family_id,
            EntityType.payment_methods,
            payment_method_id,
            ChangeAction.delete,
            {"id": payment_method_id},
        )
        self.session.commit()


class RecurringRuleService(FamilyService):
    def list(self) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .where(RecurringRule.family_id == self.family_id)
            .order_by(RecurringRule.created_at.desc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, rule_id: str) -> Optional[RecurringRule]:
        return self._owned(RecurringRule, rule_id, EntityType.recurring_rules)

    def upsert(self, data: RecurringRuleIn) -> tuple[RecurringRule, WriteOutcome]:
        rule_id = data.id or str(uuid4())
        self.classifier.check_category(data.entry_category_id)
        self.classifier.check_payment_method(data.payment_method_id)

        existing = self.get(rule_id)
        start_at = data.start_at
        if start_at is None:
            start_at = existing.start_at if existing is not None else utcnow()
        values = {
            "entry_type": data.entry_type,
            "amount": data.amount,
            "entry_category_id": data.entry_category_id,
            "payment_method_id": data.payment_method_id,
            "memo": data.memo,
            "frequency": data.frequency,
            "day_of_month": data.day_of_month,
            "holiday_adjustment": data.holiday_adjustment,
            "start_at": start_at,
            "end_at": data.end_at,
            "is_active": data.is_active,
        }
        if data.end_at is not None and data.end_at < start_at:
            raise ValidationProblem("end_at must not be before start_at")

        outcome = self.classifier.classify(existing, values, data.base_updated_at)
        if outcome.idempotent:
            return existing, outcome

        now = utcnow()
        if existing is None:
            rule = RecurringRule(
                id=rule_id, family_id=self.family_id, created_at=now, **values
            )
            self.session.add(rule)
        else:
            rule = existing
            for key, value in values.items():
                setattr(rule, key, value)
        rule.updated_at = now

        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            "create" if existing is None else "update",
            EntityType.recurring_rules,
            rule_id,
            data.memo or "",
        )
        self.session.flush()
        record_change(
            self.session,
            self.family_id,
            EntityType.recurring_rules,
            rule_id,
            ChangeAction.upsert,
            {"recurring_rule": snapshot(rule)},
        )
        self.session.commit()
        return rule, outcome

    def delete(self, rule_id: str) -> None:
        existing = self.get(rule_id)
        if existing is not None:
            self.session.delete(existing)
        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            "delete",
            EntityType.recurring_rules,
            rule_id,
        )
        record_change(
            self.session,
            self.family_id,
            EntityType.recurring_rules,
            rule_id,
            ChangeAction.delete,
            {"id": rule_id},
        )
        self.session.commit()


class MonthlyBalanceService(FamilyService):
    def get(self, ym: str) -> Optional[MonthlyBalance]:
        if not is_valid_ym(ym):
            raise ValidationProblem("ym must be YYYY-MM")
        return self.session.get(MonthlyBalance, (self.family_id, ym))

    def list_range(self, from_ym: str, to_ym: str) -> list[MonthlyBalance]:
        if not is_valid_ym(from_ym) or not is_valid_ym(to_ym):
            raise ValidationProblem("from/to must be YYYY-MM")
        stmt = (
            select(MonthlyBalance)
            .where(
                MonthlyBalance.family_id == self.family_id,
                MonthlyBalance.ym >= from_ym,
                MonthlyBalance.ym <= to_ym,
            )
            .order_by(MonthlyBalance.ym)
        )
        return list(self.session.scalars(stmt).all())

    def put(self, ym: str, data: MonthlyBalanceIn) -> MonthlyBalance:
        """Seed a month by hand; later months are carried forward from it."""
        row = self.get(ym)
        if row is None:
            row = MonthlyBalance(family_id=self.family_id, ym=ym)
            self.session.add(row)
        row.balance = data.balance
        row.is_closed = data.is_closed
        row.updated_at = utcnow()

        record_audit(
            self.session,
            self.family_id,
            self.actor_user_id,
            "update",
            EntityType.monthly_balance,
            ym,
        )
        self.session.flush()
        record_change(
            self.session,
            self.family_id,
            EntityType.monthly_balance,
            ym,
            ChangeAction.upsert,
            {"monthly_balance": snapshot(row)},
        )
        self.session.commit()
        self._recalculate(add_months_to_ym(ym, 1))
        return row


class SyncService(FamilyService):
    def head(self) -> Optional[int]:
        return self.session.execute(
            select(func.max(ChangeLog.id)).where(ChangeLog.family_id == self.family_id)
        ).scalar_one_or_none()

    def pull(self, cursor: int, limit: int, max_limit: int = 500) -> dict[str, Any]:
        cursor = max(0, cursor)
        limit = max(0, min(max_limit, limit))
        server_time = isoformat_utc(utcnow())

        if limit == 0:
            latest = self.head()
            return {
                "changes": [],
                "next_cursor": latest if latest is not None else cursor,
                "server_time": server_time,
            }

        stmt = (
            select(ChangeLog)
            .where(ChangeLog.family_id == self.family_id, ChangeLog.id > cursor)
            .order_by(ChangeLog.id.asc())
            .limit(limit)
        )
        changes = [
            {
                "id": row.id,
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "action": row.action.value,
                "payload": json.loads(row.payload) if row.payload else None,
                "created_at": isoformat_utc(row.created_at),
            }
            for row in self.session.scalars(stmt).all()
        ]
        next_cursor = changes[-1]["id"] if changes else cursor
        return {"changes": changes, "next_cursor": next_cursor, "server_time": server_time}

    def bootstrap(self) -> dict[str, Any]:
        # Head is read first; a write racing the snapshot is then replayed
        # by the next pull instead of being skipped.
        latest = self.head()
        balances = self.session.scalars(
            select(MonthlyBalance)
            .where(MonthlyBalance.family_id == self.family_id)
            .order_by(MonthlyBalance.ym)
        ).all()
        return {
            "entries": [snapshot(row) for row in EntryService(self.session, self.family_id).list()],
            "entry_categories": [
                snapshot(row)
                for row in EntryCategoryService(self.session, self.family_id).list()
            ],
            "payment_methods": [
                snapshot(row)
                for row in PaymentMethodService(self.session, self.family_id).list()
            ],
            "recurring_rules": [
                snapshot(row)
                for row in RecurringRuleService(self.session, self.family_id).list()
            ],
            "monthly_balances": [snapshot(row) for row in balances],
            "next_cursor": latest if latest is not None else 0,
            "server_time": isoformat_utc(utcnow()),
        }


class AuditService(FamilyService):
    def list_recent(self, limit: int = 50) -> list[AuditLog]:
        limit = max(1, min(200, limit))
        stmt = (
            select(AuditLog)
            .where(AuditLog.family_id == self.family_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())
