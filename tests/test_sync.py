from datetime import date

from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import ChangeLog
from mutations import MutationContext, delete_entry, delete_payment_method
from schemas import EntryCategoryIn, EntryIn
from services import EntryCategoryService, EntryService, SyncService


TODAY = date(2026, 1, 31)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _categories(session, family_id, names):
    service = EntryCategoryService(session, family_id, "u1")
    for name in names:
        service.upsert(EntryCategoryIn(id=f"{family_id}-{name}", name=name, type="expense"))


def test_pull_returns_only_own_family_in_order() -> None:
    session = make_session()
    _categories(session, "fam-a", ["food", "rent"])
    _categories(session, "fam-b", ["fuel"])
    _categories(session, "fam-a", ["fun"])

    page = SyncService(session, "fam-a").pull(0, 200)

    ids = [change["id"] for change in page["changes"]]
    assert ids == sorted(ids)
    assert [c["entity_id"] for c in page["changes"]] == [
        "fam-a-food",
        "fam-a-rent",
        "fam-a-fun",
    ]
    assert page["next_cursor"] == ids[-1]
    assert page["server_time"].endswith("Z")
    assert page["changes"][0]["payload"]["entry_category"]["name"] == "food"
    assert page["changes"][0]["action"] == "upsert"


def test_paging_reaches_every_change() -> None:
    session = make_session()
    _categories(session, "fam", ["a", "b", "c", "d", "e"])
    sync = SyncService(session, "fam")

    cursor = -3
    seen = []
    while True:
        page = sync.pull(cursor, 2)
        seen.extend(change["entity_id"] for change in page["changes"])
        cursor = page["next_cursor"]
        if len(page["changes"]) < 2:
            break

    assert seen == [f"fam-{name}" for name in "abcde"]
    tail = sync.pull(cursor, 2)
    assert tail["changes"] == []
    assert tail["next_cursor"] == cursor


def test_limit_is_clamped() -> None:
    session = make_session()
    _categories(session, "fam", ["a", "b"])

    page = SyncService(session, "fam").pull(0, 10_000, max_limit=1)

    assert len(page["changes"]) == 1


def test_zero_limit_returns_head() -> None:
    session = make_session()
    _categories(session, "fam-a", ["food"])
    _categories(session, "fam-b", ["fuel", "toys"])
    head_a = session.execute(
        select(func.max(ChangeLog.id)).where(ChangeLog.family_id == "fam-a")
    ).scalar_one()

    peek = SyncService(session, "fam-a").pull(0, 0)
    assert peek["changes"] == []
    assert peek["next_cursor"] == head_a

    empty = SyncService(session, "nobody").pull(7, 0)
    assert empty["next_cursor"] == 7


def test_delete_of_unknown_id_still_logs_change() -> None:
    session = make_session()
    ctx = MutationContext(session, "fam", "u1", today=TODAY)

    result = delete_payment_method(ctx, "never-existed")

    assert result.status == 200
    assert result.body == {"ok": True, "conflict": False}
    change = SyncService(session, "fam").pull(0, 10)["changes"][-1]
    assert change["action"] == "delete"
    assert change["entity_id"] == "never-existed"
    assert change["payload"] == {"id": "never-existed"}


def test_entry_delete_is_visible_to_pull() -> None:
    session = make_session()
    EntryService(session, "fam", "u1", today=TODAY).upsert(
        EntryIn.model_validate(
            {"id": "E1", "entry_type": "expense", "amount": 300, "occurred_at": "2026-01-10"}
        )
    )
    delete_entry(MutationContext(session, "fam", "u1", today=TODAY), "E1")

    changes = SyncService(session, "fam").pull(0, 200)["changes"]
    entry_changes = [c for c in changes if c["entity_type"] == "entries"]
    assert [c["action"] for c in entry_changes] == ["upsert", "delete"]
    balances = [c for c in changes if c["entity_type"] == "monthly_balance"]
    assert balances[-1]["payload"]["monthly_balance"]["balance"] == 0


def test_bootstrap_snapshot() -> None:
    session = make_session()
    _categories(session, "fam", ["food"])
    EntryService(session, "fam", "u1", today=TODAY).upsert(
        EntryIn.model_validate(
            {"id": "E1", "entry_type": "income", "amount": 300, "occurred_at": "2026-01-10"}
        )
    )
    sync = SyncService(session, "fam")

    snapshot = sync.bootstrap()

    assert [row["id"] for row in snapshot["entries"]] == ["E1"]
    assert [row["id"] for row in snapshot["entry_categories"]] == ["fam-food"]
    assert snapshot["payment_methods"] == []
    assert snapshot["recurring_rules"] == []
    assert [row["ym"] for row in snapshot["monthly_balances"]] == ["2026-01"]
    assert snapshot["next_cursor"] == sync.head()

    assert SyncService(session, "empty").bootstrap()["next_cursor"] == 0
