from datetime import date

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from conflicts import FatalConflict, ValidationProblem
from database import Base
from models import (
    ChangeLog,
    Entry,
    EntryAmountChange,
    EntryCategory,
    PaymentMethod,
    PaymentMethodType,
)
from mutations import (
    MutationContext,
    merge_entry_category,
    patch_entry,
    upsert_entry,
    upsert_payment_method,
)
from periods import isoformat_utc
from schemas import EntryCategoryIn, EntryIn, PaymentMethodIn
from services import EntryCategoryService, EntryService, PaymentMethodService


TODAY = date(2026, 1, 31)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _category(session, category_id, family_id="fam", **extra):
    category = EntryCategory(
        id=category_id, family_id=family_id, name=category_id, type="expense", **extra
    )
    session.add(category)
    session.commit()
    return category


def _entry_payload(**extra):
    payload = {
        "id": "E1",
        "entry_type": "expense",
        "amount": 500,
        "occurred_at": "2026-01-10",
    }
    payload.update(extra)
    return payload


def test_archived_category_is_rejected_without_side_effects() -> None:
    session = make_session()
    _category(session, "c-old", is_archived=True)
    ctx = MutationContext(session, "fam", "u1", today=TODAY)

    result = upsert_entry(ctx, _entry_payload(entry_category_id="c-old"))

    assert result.status == 409
    assert result.body["error"]["code"] == "CATEGORY_ARCHIVED"
    assert result.body["error"]["server_snapshot"]["is_archived"] is True
    assert session.get(Entry, "E1") is None
    assert session.scalars(select(ChangeLog)).all() == []


def test_merged_category_points_to_target() -> None:
    session = make_session()
    _category(session, "c-b")
    _category(session, "c-a", merged_to_id="c-b")
    ctx = MutationContext(session, "fam", "u1", today=TODAY)

    result = upsert_entry(ctx, _entry_payload(entry_category_id="c-a"))

    error = result.body["error"]
    assert result.status == 409
    assert error["code"] == "CATEGORY_MERGED"
    assert error["resolution_hint"] == "use merged_to_id"
    assert error["server_snapshot"]["merged_to_id"] == "c-b"


def test_category_of_another_family_is_invalid() -> None:
    session = make_session()
    _category(session, "c-x", family_id="other")
    ctx = MutationContext(session, "fam", "u1", today=TODAY)

    result = upsert_entry(ctx, _entry_payload(entry_category_id="c-x"))

    assert result.status == 409
    assert result.body["error"]["code"] == "ENTRY_CATEGORY_INVALID"


def test_missing_payment_method_and_rule() -> None:
    session = make_session()
    ctx = MutationContext(session, "fam", "u1", today=TODAY)

    pm = upsert_entry(ctx, _entry_payload(payment_method_id="nope"))
    rule = upsert_entry(ctx, _entry_payload(recurring_rule_id="nope"))

    assert pm.body["error"]["code"] == "PAYMENT_METHOD_INVALID"
    assert rule.body["error"]["code"] == "RECURRING_RULE_INVALID"


def test_patch_of_missing_entry() -> None:
    session = make_session()
    ctx = MutationContext(session, "fam", "u1", today=TODAY)

    result = patch_entry(ctx, "ghost", {"amount": 100})

    assert result.status == 409
    assert result.body["error"]["code"] == "ENTRY_TARGET_MISSING"
    assert result.body["error"]["entity_id"] == "ghost"


def test_identical_write_is_a_no_op() -> None:
    session = make_session()
    entries = EntryService(session, "fam", "u1", today=TODAY)
    data = EntryIn.model_validate(_entry_payload(memo="lunch"))

    entry, outcome = entries.upsert(data)
    assert outcome.idempotent is False
    stamp = entry.updated_at
    changes = len(session.scalars(select(ChangeLog)).all())

    again, outcome = entries.upsert(EntryIn.model_validate(_entry_payload(memo="lunch")))

    assert outcome.idempotent is True
    assert outcome.response_fields() == {"conflict": False, "idempotent": True}
    assert again.updated_at == stamp
    assert len(session.scalars(select(ChangeLog)).all()) == changes


def test_stale_base_version_is_a_soft_conflict() -> None:
    session = make_session()
    entries = EntryService(session, "fam", "u1", today=TODAY)
    entry, _ = entries.upsert(EntryIn.model_validate(_entry_payload()))

    current = isoformat_utc(entry.updated_at)
    _, fresh = entries.upsert(
        EntryIn.model_validate(_entry_payload(amount=600, base_updated_at=current))
    )
    assert fresh.conflict is False

    updated, stale = entries.upsert(
        EntryIn.model_validate(
            _entry_payload(amount=800, client_updated_at="2020-01-01T00:00:00Z")
        )
    )
    assert stale.conflict is True
    assert stale.response_fields() == {"conflict": True, "conflict_class": "soft"}
    assert updated.amount == 800

    history = session.scalars(
        select(EntryAmountChange).order_by(EntryAmountChange.id)
    ).all()
    assert [(h.previous_amount, h.next_amount) for h in history] == [(500, 600), (600, 800)]
    assert history[0].changed_by_user_id == "u1"


def test_upserting_archived_category_itself() -> None:
    session = make_session()
    _category(session, "c-old", is_archived=True)
    categories = EntryCategoryService(session, "fam", "u1")

    with pytest.raises(FatalConflict) as exc:
        categories.upsert(EntryCategoryIn(id="c-old", name="Renamed", type="expense"))
    assert exc.value.code == "CATEGORY_ARCHIVED"


def test_merge_requires_active_target() -> None:
    session = make_session()
    _category(session, "c-a")
    _category(session, "c-b", is_archived=True)
    _category(session, "c-c")
    ctx = MutationContext(session, "fam", "u1", today=TODAY)

    into_archived = merge_entry_category(ctx, "c-a", {"merged_to_id": "c-b"})
    assert into_archived.status == 409
    assert into_archived.body["error"]["code"] == "CATEGORY_ARCHIVED"

    into_self = merge_entry_category(ctx, "c-a", {"merged_to_id": "c-a"})
    assert into_self.status == 400

    merged = merge_entry_category(ctx, "c-a", {"merged_to_id": "c-c"})
    assert merged.status == 200
    assert merged.body["entry_category"]["merged_to_id"] == "c-c"

    again = merge_entry_category(ctx, "c-a", {"merged_to_id": "c-c"})
    assert again.body["idempotent"] is True


def test_card_must_link_to_a_bank_account() -> None:
    session = make_session()
    session.add_all(
        [
            PaymentMethod(id="cash", family_id="fam", name="Wallet", type=PaymentMethodType.cash),
            PaymentMethod(id="bank", family_id="fam", name="Bank", type=PaymentMethodType.bank),
        ]
    )
    session.commit()
    methods = PaymentMethodService(session, "fam", "u1")

    with pytest.raises(ValidationProblem):
        methods.upsert(
            PaymentMethodIn(
                id="visa", name="Visa", type="card", linked_bank_payment_method_id="cash"
            )
        )

    card, _ = methods.upsert(
        PaymentMethodIn(
            id="visa",
            name="Visa",
            type="card",
            card_closing_day=15,
            card_payment_day=10,
            linked_bank_payment_method_id="bank",
        )
    )
    assert card.linked_bank_payment_method_id == "bank"


def test_card_fields_are_cleared_for_other_types() -> None:
    data = PaymentMethodIn(
        name="Wallet", type="cash", card_closing_day=5, linked_bank_payment_method_id="x"
    )
    assert data.card_closing_day is None
    assert data.linked_bank_payment_method_id is None


def test_invalid_card_day_is_a_validation_error() -> None:
    session = make_session()
    ctx = MutationContext(session, "fam", "u1", today=TODAY)

    result = upsert_payment_method(
        ctx, {"name": "Visa", "type": "card", "card_closing_day": 32}
    )

    assert result.status == 400
    assert "card_closing_day" in result.body["message"]
