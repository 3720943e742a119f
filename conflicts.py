"""Write preconditions shared by every mutating endpoint.

Checks run in a fixed order: referential validity (fatal), then the
idempotent no-op comparison, then the optimistic version check (soft).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from models import (
    EntityType,
    EntryCategory,
    MutationReceipt,
    PaymentMethod,
    RecurringRule,
    snapshot,
)
from periods import to_naive_utc
from schemas import FatalConflictEnvelope, FatalConflictError


class ValidationProblem(ValueError):
    status_code = 400


class FatalConflict(Exception):
    status_code = 409

    def __init__(
        self,
        *,
        code: str,
        message: str,
        entity_type: str,
        entity_id: str,
        server_snapshot: Optional[dict[str, Any]] = None,
        resolution_hint: str,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.server_snapshot = server_snapshot
        self.resolution_hint = resolution_hint

    def envelope(self) -> dict[str, Any]:
        return FatalConflictEnvelope(
            error=FatalConflictError(
                code=self.code,
                message=self.message,
                entity_type=self.entity_type,
                entity_id=self.entity_id,
                server_snapshot=self.server_snapshot,
                resolution_hint=self.resolution_hint,
            )
        ).model_dump()

    @classmethod
    def receipt_mismatch(
        cls, receipt: MutationReceipt, entity_type: str, entity_id: str
    ) -> "FatalConflict":
        return cls(
            code="RESOURCE_STATE_INVALID",
            message="receipt mismatch",
            entity_type=entity_type,
            entity_id=entity_id,
            server_snapshot={
                "family_id": receipt.family_id,
                "endpoint": receipt.endpoint,
                "method": receipt.method,
            },
            resolution_hint="use new X-Outbox-Id per mutation",
        )


@dataclass(frozen=True)
class WriteOutcome:
    idempotent: bool = False
    conflict: bool = False

    def response_fields(self) -> dict[str, Any]:
        if self.idempotent:
            return {"conflict": False, "idempotent": True}
        if self.conflict:
            return {"conflict": True, "conflict_class": "soft"}
        return {"conflict": False}


def _reference_snapshot(row: Any) -> dict[str, Any]:
    data = snapshot(row)
    keep = ("id", "family_id", "is_archived", "merged_to_id", "is_active", "updated_at")
    return {key: data[key] for key in keep if key in data}


def _same(left: Any, right: Any) -> bool:
    if isinstance(left, datetime) and isinstance(right, datetime):
        return to_naive_utc(left) == to_naive_utc(right)
    return left == right


class ConflictClassifier:
    def __init__(self, session: Session, family_id: str) -> None:
        self.session = session
        self.family_id = family_id

    def _owned(self, model: type, entity_id: str) -> Any:
        row = self.session.get(model, entity_id)
        if row is None or row.family_id != self.family_id:
            return None
        return row

    def check_category(self, category_id: Optional[str]) -> None:
        if not category_id:
            return
        category = self._owned(EntryCategory, category_id)
        if category is None:
            raise FatalConflict(
                code="ENTRY_CATEGORY_INVALID",
                message="entry category not found",
                entity_type=EntityType.entry_categories.value,
                entity_id=category_id,
                resolution_hint="sync latest categories and choose a valid one",
            )
        self.check_category_usable(category)

    def check_category_usable(self, category: EntryCategory) -> None:
        if category.is_archived:
            raise FatalConflict(
                code="CATEGORY_ARCHIVED",
                message="entry category is archived",
                entity_type=EntityType.entry_categories.value,
                entity_id=category.id,
                server_snapshot=_reference_snapshot(category),
                resolution_hint="choose an active category",
            )
        if category.merged_to_id:
            raise FatalConflict(
                code="CATEGORY_MERGED",
                message="entry category is merged",
                entity_type=EntityType.entry_categories.value,
                entity_id=category.id,
                server_snapshot=_reference_snapshot(category),
                resolution_hint="use merged_to_id",
            )

    def check_payment_method(self, payment_method_id: Optional[str]) -> None:
        if not payment_method_id:
            return
        if self._owned(PaymentMethod, payment_method_id) is None:
            raise FatalConflict(
                code="PAYMENT_METHOD_INVALID",
                message="payment method not found",
                entity_type=EntityType.payment_methods.value,
                entity_id=payment_method_id,
                resolution_hint="sync latest payment methods and choose a valid one",
            )

    def check_recurring_rule(self, rule_id: Optional[str]) -> None:
        if not rule_id:
            return
        rule = self._owned(RecurringRule, rule_id)
        if rule is None:
            raise FatalConflict(
                code="RECURRING_RULE_INVALID",
                message="recurring rule not found",
                entity_type=EntityType.recurring_rules.value,
                entity_id=rule_id,
                resolution_hint="sync latest recurring rules and choose a valid one",
            )
        if not rule.is_active:
            raise FatalConflict(
                code="RECURRING_RULE_INVALID",
                message="recurring rule is inactive",
                entity_type=EntityType.recurring_rules.value,
                entity_id=rule_id,
                server_snapshot=_reference_snapshot(rule),
                resolution_hint="remove recurring_rule_id or use active rule",
            )

    def check_references(
        self,
        *,
        entry_category_id: Optional[str] = None,
        payment_method_id: Optional[str] = None,
        recurring_rule_id: Optional[str] = None,
    ) -> None:
        self.check_category(entry_category_id)
        self.check_payment_method(payment_method_id)
        self.check_recurring_rule(recurring_rule_id)

    @staticmethod
    def matches_existing(existing: Any, values: dict[str, Any]) -> bool:
        if existing is None:
            return False
        return all(_same(getattr(existing, key), value) for key, value in values.items())

    @staticmethod
    def is_stale(existing: Any, base_updated_at: Optional[datetime]) -> bool:
        if existing is None or base_updated_at is None or existing.updated_at is None:
            return False
        return to_naive_utc(existing.updated_at) != to_naive_utc(base_updated_at)

    def classify(
        self,
        existing: Any,
        values: dict[str, Any],
        base_updated_at: Optional[datetime],
    ) -> WriteOutcome:
        """No-op and version checks; references must already be validated."""
        if self.matches_existing(existing, values):
            return WriteOutcome(idempotent=True)
        return WriteOutcome(conflict=self.is_stale(existing, base_updated_at))
