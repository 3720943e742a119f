from datetime import date, datetime, timedelta
from urllib.parse import parse_qsl, urlsplit

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import mutations
from database import Base
from models import ChangeLog, EntryCategory
from mutations import MutationContext
from periods import utcnow
from services import SyncService
from sync_client import (
    BOOTSTRAP_COLLECTIONS,
    LocalMirror,
    OutboxItem,
    SyncClient,
    TransportError,
    TransportResponse,
    backoff_delay,
    open_client_session,
    record_key,
)


TODAY = date(2026, 1, 31)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


class InProcessTransport:
    """Routes client requests straight to the server handlers."""

    def __init__(self, session, family_id="fam", user_id="u1"):
        self.session = session
        self.family_id = family_id
        self.user_id = user_id
        self.offline = False
        self.drop_next_response = False
        self.calls = []
        self.max_limit = 500

    def request(self, method, path, payload=None, headers=None):
        self.calls.append((method, path))
        if self.offline:
            raise TransportError("offline")

        parts = urlsplit(path)
        query = dict(parse_qsl(parts.query))
        segments = [segment for segment in parts.path.split("/") if segment]
        ctx = MutationContext(
            self.session,
            self.family_id,
            self.user_id,
            request_id=(headers or {}).get("X-Outbox-Id"),
            today=TODAY,
        )
        sync = SyncService(self.session, self.family_id)

        if method == "GET" and segments == ["sync"]:
            body = sync.pull(
                int(query.get("cursor", 0)),
                int(query.get("limit", 200)),
                max_limit=self.max_limit,
            )
            return TransportResponse(200, body)
        if method == "GET" and segments == ["bootstrap"]:
            return TransportResponse(200, sync.bootstrap())

        if method == "POST" and segments == ["entries"]:
            result = mutations.upsert_entry(ctx, payload)
        elif method == "DELETE" and segments[0] == "entries":
            result = mutations.delete_entry(ctx, segments[1])
        elif method == "POST" and segments == ["entry-categories"]:
            result = mutations.upsert_entry_category(ctx, payload)
        elif method == "DELETE" and segments[0] == "entry-categories":
            result = mutations.delete_entry_category(ctx, segments[1])
        else:
            return TransportResponse(404, {"message": "not found"})

        if self.drop_next_response:
            self.drop_next_response = False
            raise TransportError("connection reset after write")
        return TransportResponse(result.status, result.body)


def _client(server, **kwargs):
    local = open_client_session("sqlite:///:memory:")
    transport = InProcessTransport(server, **kwargs)
    return local, transport, SyncClient(local, transport, page_size=2)


def _category_item(outbox, category_id, name, now=None):
    return outbox.enqueue(
        "POST",
        "/entry-categories",
        {"id": category_id, "name": name, "type": "expense"},
        entity_type="entry_categories",
        entity_id=category_id,
        operation="create",
        now=now,
    )


def test_backoff_doubles_and_caps() -> None:
    assert backoff_delay(1) == timedelta(seconds=2)
    assert backoff_delay(2) == timedelta(seconds=4)
    assert backoff_delay(5) == timedelta(seconds=32)
    assert backoff_delay(12) == timedelta(seconds=300)


def test_outbox_sends_in_enqueue_order() -> None:
    server = make_session()
    local, transport, client = _client(server)
    t0 = datetime(2026, 1, 10, 0, 0)
    _category_item(client.outbox, "c1", "Food", now=t0)
    _category_item(client.outbox, "c2", "Rent", now=t0 + timedelta(seconds=1))

    report = client.outbox.flush()

    assert report.sent == 2
    assert report.halted_on is None
    assert [path for _, path in transport.calls] == ["/entry-categories"] * 2
    assert local.scalars(select(OutboxItem)).all() == []
    assert LocalMirror(local).get("entry_categories", "c1")["name"] == "Food"
    assert sorted(c.id for c in server.scalars(select(EntryCategory))) == ["c1", "c2"]


def test_network_failure_backs_off_and_halts() -> None:
    server = make_session()
    local, transport, client = _client(server)
    first = _category_item(client.outbox, "c1", "Food", now=datetime(2026, 1, 10))
    _category_item(client.outbox, "c2", "Rent", now=datetime(2026, 1, 10, 0, 1))
    t0 = datetime(2026, 1, 10, 12, 0)

    transport.offline = True
    report = client.outbox.flush(t0)
    assert report.sent == 0
    assert report.halted_reason == "network"
    item = local.get(OutboxItem, first.id)
    assert item.attempt_count == 1
    assert item.last_error_code == "network"
    assert item.next_retry_at == t0 + timedelta(seconds=2)

    transport.offline = False
    calls = len(transport.calls)
    waiting = client.outbox.flush(t0 + timedelta(seconds=1))
    assert waiting.halted_reason == "backoff"
    assert len(transport.calls) == calls

    assert client.outbox.flush(t0 + timedelta(seconds=3)).sent == 2


def test_lost_response_is_replayed_not_reapplied() -> None:
    server = make_session()
    local, transport, client = _client(server)
    item = _category_item(client.outbox, "c1", "Food")

    transport.drop_next_response = True
    assert client.outbox.flush().halted_reason == "network"

    report = client.outbox.flush(utcnow() + timedelta(seconds=5))

    assert report.sent == 1
    changes = server.scalars(
        select(ChangeLog).where(ChangeLog.entity_id == "c1")
    ).all()
    assert len(changes) == 1
    assert local.get(OutboxItem, item.id) is None
    assert LocalMirror(local).get("entry_categories", "c1") is not None


def test_fatal_conflict_blocks_queue_until_discarded() -> None:
    server = make_session()
    server.add(
        EntryCategory(
            id="old", family_id="fam", name="Old", type="expense", is_archived=True
        )
    )
    server.commit()
    local, transport, client = _client(server)
    bad = client.outbox.enqueue(
        "POST",
        "/entries",
        {
            "id": "E1",
            "entry_type": "expense",
            "amount": 100,
            "entry_category_id": "old",
            "occurred_at": "2026-01-05",
        },
        entity_type="entries",
        entity_id="E1",
        operation="create",
        now=datetime(2026, 1, 10),
    )
    _category_item(client.outbox, "c1", "Food", now=datetime(2026, 1, 10, 0, 1))

    report = client.outbox.flush()
    assert report.sent == 0
    assert report.halted_reason == "409"
    blocked = local.get(OutboxItem, bad.id)
    assert blocked.blocked is True
    assert blocked.last_error_code == "409"
    assert "CATEGORY_ARCHIVED" in blocked.last_error_body

    calls = len(transport.calls)
    assert client.outbox.flush().halted_reason == "blocked"
    assert len(transport.calls) == calls

    assert client.outbox.discard(bad.id) is True
    assert client.outbox.flush().sent == 1


def test_first_sync_bootstraps_then_pulls_pages() -> None:
    server = make_session()
    seed = MutationContext(server, "fam", "u1", today=TODAY)
    for name in ("food", "rent", "fun"):
        mutations.upsert_entry_category(seed, {"id": name, "name": name, "type": "expense"})
    local, transport, client = _client(server)

    client.sync()

    mirror = LocalMirror(local)
    assert [row["id"] for row in mirror.all("entry_categories")] == ["food", "fun", "rent"]
    assert client.state().cursor == SyncService(server, "fam").head()
    assert ("GET", "/bootstrap") in transport.calls

    mutations.delete_entry_category(seed, "rent")
    for name in ("fuel", "toys", "tea"):
        mutations.upsert_entry_category(seed, {"id": name, "name": name, "type": "expense"})
    mutations.upsert_entry(
        seed,
        {"id": "E1", "entry_type": "expense", "amount": 250, "occurred_at": "2026-01-05"},
    )

    client.sync()

    ids = {row["id"] for row in mirror.all("entry_categories")}
    assert ids == {"food", "fun", "fuel", "toys", "tea"}
    assert mirror.get("entries", "E1")["amount"] == 250
    assert mirror.get("monthly_balance", "2026-01")["balance"] == -250
    assert client.state().cursor == SyncService(server, "fam").head()


def test_applying_a_change_twice_is_harmless() -> None:
    server = make_session()
    local, _, client = _client(server)
    change = {
        "id": 1,
        "entity_type": "entry_categories",
        "entity_id": "c1",
        "action": "upsert",
        "payload": {"entry_category": {"id": "c1", "name": "Food"}},
    }

    client.apply_change(change)
    client.apply_change(change)
    client.apply_change({**change, "action": "delete", "payload": {"id": "c1"}})
    client.apply_change({**change, "action": "delete", "payload": {"id": "c1"}})

    assert LocalMirror(local).all("entry_categories") == []


def test_outbox_keeps_enqueue_order_when_timestamps_tie() -> None:
    server = make_session()
    _, _, client = _client(server)
    now = datetime(2026, 1, 10, 9, 0)

    enqueued = [
        _category_item(client.outbox, f"c{index}", f"Cat {index}", now=now).id
        for index in range(8)
    ]

    assert [item.id for item in client.outbox.pending()] == enqueued
    assert [item.seq for item in client.outbox.pending()] == list(range(1, 9))


def test_pull_drains_log_when_server_clamps_pages() -> None:
    server = make_session()
    seed = MutationContext(server, "fam", "u1", today=TODAY)
    for name in ("a", "b", "c", "d", "e"):
        mutations.upsert_entry_category(seed, {"id": name, "name": name, "type": "expense"})
    local, transport, _ = _client(server)
    transport.max_limit = 2
    client = SyncClient(local, transport, page_size=200)
    client.state().cursor = 0

    assert client.pull() == 5
    assert [row["id"] for row in LocalMirror(local).all("entry_categories")] == list("abcde")
    assert client.state().cursor == SyncService(server, "fam").head()


def test_pulling_the_whole_log_matches_bootstrap() -> None:
    server = make_session()
    seed = MutationContext(server, "fam", "u1", today=TODAY)
    for name in ("food", "rent", "misc"):
        mutations.upsert_entry_category(seed, {"id": name, "name": name, "type": "expense"})
    mutations.upsert_entry_category(seed, {"id": "food", "name": "Groceries", "type": "expense"})
    mutations.archive_entry_category(seed, "misc")
    mutations.delete_entry_category(seed, "rent")
    mutations.upsert_entry(
        seed,
        {
            "id": "E1",
            "entry_type": "expense",
            "amount": 400,
            "entry_category_id": "food",
            "occurred_at": "2025-12-20",
        },
    )
    mutations.upsert_entry(
        seed,
        {"id": "E2", "entry_type": "income", "amount": 1_000, "occurred_at": "2026-01-03"},
    )
    mutations.upsert_entry(
        seed,
        {"id": "E3", "entry_type": "expense", "amount": 90, "occurred_at": "2026-01-04"},
    )
    mutations.patch_entry(seed, "E1", {"amount": 450})
    mutations.patch_entry(seed, "E2", {"occurred_at": "2026-01-15"})
    mutations.delete_entry(seed, "E3")

    local, _, client = _client(server)
    client.state().cursor = 0
    client.pull()

    snapshot = SyncService(server, "fam").bootstrap()
    mirror = LocalMirror(local)
    for collection, entity_type in BOOTSTRAP_COLLECTIONS.items():
        expected = sorted(
            ((record_key(entity_type, data), data) for data in snapshot[collection]),
            key=lambda pair: pair[0],
        )
        pulled = [(record_key(entity_type, data), data) for data in mirror.all(entity_type)]
        assert pulled == expected, collection
    assert {row["id"] for row in mirror.all("entries")} == {"E1", "E2"}
    assert mirror.get("monthly_balance", "2026-01")["balance"] == 550
