from datetime import date, datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import ChangeLog, Entry, MutationReceipt
from mutations import MutationContext, delete_entry, upsert_entry
from receipts import MutationReceiptService, MutationResult, purge_expired_receipts


TODAY = date(2026, 1, 31)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _entry_changes(session, entry_id):
    return session.scalars(
        select(ChangeLog).where(
            ChangeLog.entity_type == "entries", ChangeLog.entity_id == entry_id
        )
    ).all()


def test_same_outbox_id_replays_first_response() -> None:
    session = make_session()
    ctx = MutationContext(session, "fam", "u1", request_id="T1", today=TODAY)

    first = upsert_entry(
        ctx,
        {"id": "E1", "entry_type": "expense", "amount": 500, "occurred_at": "2026-01-10"},
    )
    second = upsert_entry(
        ctx,
        {"id": "E1", "entry_type": "expense", "amount": 700, "occurred_at": "2026-01-10"},
    )

    assert first.status == 200
    assert second.status == 200
    assert second.body == first.body
    assert second.body["entry"]["amount"] == 500
    assert session.get(Entry, "E1").amount == 500
    assert len(_entry_changes(session, "E1")) == 1


def test_receipt_mismatch_is_fatal_and_keeps_original() -> None:
    session = make_session()
    ctx = MutationContext(session, "fam", "u1", request_id="T1", today=TODAY)
    payload = {"id": "E1", "entry_type": "income", "amount": 900, "occurred_at": "2026-01-03"}
    original = upsert_entry(ctx, payload)

    mismatch = delete_entry(ctx, "E1")
    assert mismatch.status == 409
    error = mismatch.body["error"]
    assert error["kind"] == "fatal_conflict"
    assert error["code"] == "RESOURCE_STATE_INVALID"
    assert error["resolution_hint"] == "use new X-Outbox-Id per mutation"
    assert error["retryable"] is False
    assert session.get(Entry, "E1") is not None

    replay = upsert_entry(ctx, payload)
    assert replay.status == 200
    assert replay.body == original.body


def test_receipt_from_another_family_is_a_mismatch() -> None:
    session = make_session()
    payload = {"id": "E1", "entry_type": "income", "amount": 900, "occurred_at": "2026-01-03"}
    upsert_entry(MutationContext(session, "fam-a", "u1", request_id="T1", today=TODAY), payload)

    other = upsert_entry(
        MutationContext(session, "fam-b", "u2", request_id="T1", today=TODAY), payload
    )
    assert other.status == 409
    assert other.body["error"]["server_snapshot"]["family_id"] == "fam-a"


def test_validation_failure_is_cached() -> None:
    session = make_session()
    ctx = MutationContext(session, "fam", "u1", request_id="T2", today=TODAY)

    first = upsert_entry(ctx, {"entry_type": "expense", "amount": 0})
    assert first.status == 400
    assert first.body["status"] == 400
    assert "amount" in first.body["message"]

    second = upsert_entry(ctx, {"entry_type": "expense", "amount": 100})
    assert second.status == 400
    assert second.body == first.body
    assert session.scalars(select(Entry)).all() == []
    assert session.get(MutationReceipt, "T2").status == 400


def test_requests_without_token_are_not_cached() -> None:
    session = make_session()
    ctx = MutationContext(session, "fam", "u1", today=TODAY)
    upsert_entry(
        ctx,
        {"id": "E1", "entry_type": "expense", "amount": 500, "occurred_at": "2026-01-10"},
    )
    assert session.scalars(select(MutationReceipt)).all() == []


def test_expired_receipt_is_dropped_on_load() -> None:
    session = make_session()
    receipts = MutationReceiptService(session, "fam", ttl_days=7)
    receipts.store(
        "R1",
        endpoint="/entries",
        method="POST",
        result=MutationResult(status=200, body={"ok": True}),
        now=datetime(2026, 1, 1, 0, 0),
    )

    assert receipts.load("R1", now=datetime(2026, 1, 7, 23, 0)) is not None
    assert receipts.load("R1", now=datetime(2026, 1, 8, 0, 0)) is None
    assert session.get(MutationReceipt, "R1") is None


def test_purge_expired_receipts() -> None:
    session = make_session()
    receipts = MutationReceiptService(session, "fam", ttl_days=7)
    ok = MutationResult(status=200, body={"ok": True})
    receipts.store("old", endpoint="/entries", method="POST", result=ok, now=datetime(2026, 1, 1))
    receipts.store("new", endpoint="/entries", method="POST", result=ok, now=datetime(2026, 1, 5))

    assert purge_expired_receipts(session, datetime(2026, 1, 9)) == 1
    assert session.get(MutationReceipt, "old") is None
    assert session.get(MutationReceipt, "new") is not None
