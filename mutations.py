"""Mutating endpoints, one function each.

Every handler validates its raw body, runs the service call and is wrapped
by the receipt cache, so a retried ``X-Outbox-Id`` replays the first
response instead of running again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from conflicts import WriteOutcome
from models import EntityType, snapshot
from receipts import MutationResult, run_with_receipt
from schemas import (
    CategoryMergeIn,
    EntryCategoryIn,
    EntryIn,
    EntryPatch,
    MonthlyBalanceIn,
    PaymentMethodIn,
    RecurringRuleIn,
)
from services import (
    EntryCategoryService,
    EntryService,
    MonthlyBalanceService,
    PaymentMethodService,
    RecurringRuleService,
)


@dataclass
class MutationContext:
    session: Session
    family_id: str
    actor_user_id: str = "unknown"
    request_id: Optional[str] = None
    today: Optional[date] = None

    def service(self, cls: type) -> Any:
        return cls(self.session, self.family_id, self.actor_user_id, self.today)


def _written(key: str, row: Any, outcome: WriteOutcome) -> MutationResult:
    return MutationResult(status=200, body={key: snapshot(row), **outcome.response_fields()})


def _deleted() -> MutationResult:
    return MutationResult(status=200, body={"ok": True, "conflict": False})


def _payload_id(payload: Any) -> Optional[str]:
    if isinstance(payload, dict) and isinstance(payload.get("id"), str):
        return payload["id"]
    return None


def _run(
    ctx: MutationContext,
    endpoint: str,
    method: str,
    entity_type: EntityType,
    entity_id: Optional[str],
    handler: Callable[[], MutationResult],
) -> MutationResult:
    return run_with_receipt(
        ctx.session,
        family_id=ctx.family_id,
        request_id=ctx.request_id,
        endpoint=endpoint,
        method=method,
        entity_type=entity_type.value,
        entity_id=entity_id,
        handler=handler,
    )


def upsert_entry(ctx: MutationContext, payload: Any) -> MutationResult:
    def handler() -> MutationResult:
        data = EntryIn.model_validate(payload)
        entry, outcome = ctx.service(EntryService).upsert(data)
        return _written("entry", entry, outcome)

    return _run(ctx, "/entries", "POST", EntityType.entries, _payload_id(payload), handler)


def patch_entry(ctx: MutationContext, entry_id: str, payload: Any) -> MutationResult:
    def handler() -> MutationResult:
        data = EntryPatch.model_validate(payload)
        entry, outcome = ctx.service(EntryService).update(entry_id, data)
        return _written("entry", entry, outcome)

    return _run(ctx, f"/entries/{entry_id}", "PATCH", EntityType.entries, entry_id, handler)


def delete_entry(ctx: MutationContext, entry_id: str) -> MutationResult:
    def handler() -> MutationResult:
        ctx.service(EntryService).delete(entry_id)
        return _deleted()

    return _run(ctx, f"/entries/{entry_id}", "DELETE", EntityType.entries, entry_id, handler)


def upsert_entry_category(ctx: MutationContext, payload: Any) -> MutationResult:
    def handler() -> MutationResult:
        data = EntryCategoryIn.model_validate(payload)
        category, outcome = ctx.service(EntryCategoryService).upsert(data)
        return _written("entry_category", category, outcome)

    return _run(
        ctx,
        "/entry-categories",
        "POST",
        EntityType.entry_categories,
        _payload_id(payload),
        handler,
    )


def archive_entry_category(ctx: MutationContext, category_id: str) -> MutationResult:
    def handler() -> MutationResult:
        category, outcome = ctx.service(EntryCategoryService).archive(category_id)
        return _written("entry_category", category, outcome)

    return _run(
        ctx,
        f"/entry-categories/{category_id}/archive",
        "POST",
        EntityType.entry_categories,
        category_id,
        handler,
    )


def merge_entry_category(
    ctx: MutationContext, category_id: str, payload: Any
) -> MutationResult:
    def handler() -> MutationResult:
        data = CategoryMergeIn.model_validate(payload)
        category, outcome = ctx.service(EntryCategoryService).merge(
            category_id, data.merged_to_id
        )
        return _written("entry_category", category, outcome)

    return _run(
        ctx,
        f"/entry-categories/{category_id}/merge",
        "POST",
        EntityType.entry_categories,
        category_id,
        handler,
    )


def delete_entry_category(ctx: MutationContext, category_id: str) -> MutationResult:
    def handler() -> MutationResult:
        ctx.service(EntryCategoryService).delete(category_id)
        return _deleted()

    return _run(
        ctx,
        f"/entry-categories/{category_id}",
        "DELETE",
        EntityType.entry_categories,
        category_id,
        handler,
    )


def upsert_payment_method(ctx: MutationContext, payload: Any) -> MutationResult:
    def handler() -> MutationResult:
        data = PaymentMethodIn.model_validate(payload)
        payment_method, outcome = ctx.service(PaymentMethodService).upsert(data)
        return _written("payment_method", payment_method, outcome)

    return _run(
        ctx,
        "/payment-methods",
        "POST",
        EntityType.payment_methods,
        _payload_id(payload),
        handler,
    )


def delete_payment_method(ctx: MutationContext, payment_method_id: str) -> MutationResult:
    def handler() -> MutationResult:
        ctx.service(PaymentMethodService).delete(payment_method_id)
        return _deleted()

    return _run(
        ctx,
        f"/payment-methods/{payment_method_id}",
        "DELETE",
        EntityType.payment_methods,
        payment_method_id,
        handler,
    )


def upsert_recurring_rule(ctx: MutationContext, payload: Any) -> MutationResult:
    def handler() -> MutationResult:
        data = RecurringRuleIn.model_validate(payload)
        rule, outcome = ctx.service(RecurringRuleService).upsert(data)
        return _written("recurring_rule", rule, outcome)

    return _run(
        ctx,
        "/recurring-rules",
        "POST",
        EntityType.recurring_rules,
        _payload_id(payload),
        handler,
    )


def delete_recurring_rule(ctx: MutationContext, rule_id: str) -> MutationResult:
    def handler() -> MutationResult:
        ctx.service(RecurringRuleService).delete(rule_id)
        return _deleted()

    return _run(
        ctx,
        f"/recurring-rules/{rule_id}",
        "DELETE",
        EntityType.recurring_rules,
        rule_id,
        handler,
    )


def put_monthly_balance(ctx: MutationContext, ym: str, payload: Any) -> MutationResult:
    def handler() -> MutationResult:
        data = MonthlyBalanceIn.model_validate(payload)
        row = ctx.service(MonthlyBalanceService).put(ym, data)
        return MutationResult(
            status=200, body={"monthly_balance": snapshot(row), "conflict": False}
        )

    return _run(
        ctx, f"/monthly-balance/{ym}", "PUT", EntityType.monthly_balance, ym, handler
    )
