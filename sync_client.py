"""Client half of the sync protocol.

The client keeps three tables in its own SQLite file: the outbox of
pending writes, the pull cursor, and a mirror of every record it has seen.
Writes are queued first and sent in order; each queued item's id doubles as
the ``X-Outbox-Id`` token so a resend after a lost response is replayed by
the server instead of applied twice.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Protocol
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Integer,
    String,
    Text,
    create_engine,
    delete,
    func,
    select,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker

from config import get_settings
from periods import utcnow


logger = logging.getLogger(__name__)

BACKOFF_BASE_SECONDS = 2
BACKOFF_CAP_SECONDS = 300

# Response body key holding the written record, per entity type.
ENTITY_KEYS = {
    "entries": "entry",
    "entry_categories": "entry_category",
    "payment_methods": "payment_method",
    "recurring_rules": "recurring_rule",
    "monthly_balance": "monthly_balance",
}

BOOTSTRAP_COLLECTIONS = {
    "entries": "entries",
    "entry_categories": "entry_categories",
    "payment_methods": "payment_methods",
    "recurring_rules": "recurring_rules",
    "monthly_balances": "monthly_balance",
}


class ClientBase(DeclarativeBase):
    pass


class OutboxItem(ClientBase):
    __tablename__ = "outbox_items"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    # Enqueue order; timestamps can tie.
    seq: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    endpoint: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[Optional[str]] = mapped_column(Text)
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    operation: Mapped[str] = mapped_column(String(10), nullable=False)
    base_updated_at: Mapped[Optional[str]] = mapped_column(String(40))
    attempt_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error_code: Mapped[Optional[str]] = mapped_column(String(40))
    last_error_body: Mapped[Optional[str]] = mapped_column(Text)
    # Set when the server rejected the item for good; only discard() clears it.
    blocked: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class SyncState(ClientBase):
    __tablename__ = "sync_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    cursor: Mapped[Optional[int]] = mapped_column(Integer)
    last_server_time: Mapped[Optional[str]] = mapped_column(String(40))


class LocalRecord(ClientBase):
    __tablename__ = "local_records"

    entity_type: Mapped[str] = mapped_column(String(40), primary_key=True)
    entity_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    data: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


def open_client_session(database_url: Optional[str] = None) -> Session:
    url = database_url or get_settings().client_database_url
    engine = create_engine(url)
    ClientBase.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)()


class TransportError(Exception):
    pass


@dataclass
class TransportResponse:
    status: int
    body: Any

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Transport(Protocol):
    def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> TransportResponse: ...


class UrllibTransport:
    def __init__(
        self,
        family_id: str,
        user_id: str,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = (base_url or get_settings().api_base_url).rstrip("/")
        self.family_id = family_id
        self.user_id = user_id
        self.timeout = timeout

    def request(
        self,
        method: str,
        path: str,
        payload: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> TransportResponse:
        all_headers = {
            "Accept": "application/json",
            "X-Family-Id": self.family_id,
            "X-User-Id": self.user_id,
        }
        data = None
        if payload is not None:
            data = json.dumps(payload).encode("utf-8")
            all_headers["Content-Type"] = "application/json"
        all_headers.update(headers or {})

        req = Request(self.base_url + path, data=data, headers=all_headers, method=method)
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                status = resp.status
                raw = resp.read()
        except HTTPError as exc:
            status = exc.code
            raw = exc.read()
        except (URLError, TimeoutError, OSError) as exc:
            raise TransportError(f"{method} {path} failed: {exc}") from exc

        if not raw:
            return TransportResponse(status=status, body=None)
        try:
            body = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            body = {"message": raw.decode("utf-8", errors="replace")}
        return TransportResponse(status=status, body=body)


def record_key(entity_type: str, data: dict[str, Any]) -> str:
    if entity_type == "monthly_balance":
        return str(data["ym"])
    return str(data["id"])


class LocalMirror:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, entity_type: str, entity_id: str) -> Optional[dict[str, Any]]:
        row = self.session.get(LocalRecord, (entity_type, entity_id))
        return json.loads(row.data) if row is not None else None

    def all(self, entity_type: str) -> list[dict[str, Any]]:
        rows = self.session.scalars(
            select(LocalRecord)
            .where(LocalRecord.entity_type == entity_type)
            .order_by(LocalRecord.entity_id)
        ).all()
        return [json.loads(row.data) for row in rows]

    def put(self, entity_type: str, data: dict[str, Any]) -> None:
        self.session.merge(
            LocalRecord(
                entity_type=entity_type,
                entity_id=record_key(entity_type, data),
                data=json.dumps(data),
                updated_at=utcnow(),
            )
        )
        self.session.flush()

    def remove(self, entity_type: str, entity_id: str) -> None:
        row = self.session.get(LocalRecord, (entity_type, entity_id))
        if row is not None:
            self.session.delete(row)
            self.session.flush()

    def clear(self) -> None:
        self.session.execute(delete(LocalRecord))


def backoff_delay(attempt_count: int) -> timedelta:
    seconds = BACKOFF_BASE_SECONDS * (2 ** max(0, attempt_count - 1))
    return timedelta(seconds=min(BACKOFF_CAP_SECONDS, seconds))


def is_permanent_failure(status: int, body: Any) -> bool:
    if status == 400:
        return True
    if status == 409:
        error = body.get("error") if isinstance(body, dict) else None
        return isinstance(error, dict) and error.get("retryable") is False
    return False


@dataclass
class FlushReport:
    sent: int = 0
    halted_on: Optional[str] = None
    halted_reason: Optional[str] = None


class OutboxManager:
    def __init__(self, session: Session, transport: Transport) -> None:
        self.session = session
        self.transport = transport
        self.mirror = LocalMirror(session)

    def enqueue(
        self,
        method: str,
        endpoint: str,
        payload: Optional[dict[str, Any]] = None,
        *,
        entity_type: str,
        entity_id: str,
        operation: str,
        base_updated_at: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OutboxItem:
        last_seq = self.session.execute(
            select(func.coalesce(func.max(OutboxItem.seq), 0))
        ).scalar_one()
        item = OutboxItem(
            id=str(uuid4()),
            seq=last_seq + 1,
            method=method.upper(),
            endpoint=endpoint,
            payload=json.dumps(payload) if payload is not None else None,
            entity_type=entity_type,
            entity_id=entity_id,
            operation=operation,
            base_updated_at=base_updated_at,
            attempt_count=0,
            created_at=now or utcnow(),
        )
        self.session.add(item)
        self.session.commit()
        return item

    def pending(self) -> list[OutboxItem]:
        stmt = select(OutboxItem).order_by(OutboxItem.seq)
        return list(self.session.scalars(stmt).all())

    def discard(self, item_id: str) -> bool:
        item = self.session.get(OutboxItem, item_id)
        if item is None:
            return False
        self.session.delete(item)
        self.session.commit()
        logger.info(f"outbox_discard: item={item_id} code={item.last_error_code}")
        return True

    def _request_body(self, item: OutboxItem) -> Optional[dict[str, Any]]:
        if item.payload is None:
            return None
        body = json.loads(item.payload)
        if item.base_updated_at and isinstance(body, dict):
            body.setdefault("base_updated_at", item.base_updated_at)
        return body

    def flush(self, now: Optional[datetime] = None) -> FlushReport:
        """Send queued writes oldest first, stopping at the first failure."""
        now = now or utcnow()
        report = FlushReport()
        for item in self.pending():
            if item.blocked:
                report.halted_on, report.halted_reason = item.id, "blocked"
                break
            if item.next_retry_at is not None and item.next_retry_at > now:
                report.halted_on, report.halted_reason = item.id, "backoff"
                break

            try:
                response = self.transport.request(
                    item.method,
                    item.endpoint,
                    self._request_body(item),
                    headers={"X-Outbox-Id": item.id},
                )
            except TransportError as exc:
                logger.warning(f"outbox_network_error: item={item.id} error={exc}")
                self._fail(item, "network", None, now)
                report.halted_on, report.halted_reason = item.id, "network"
                break

            if not response.ok:
                self._fail(item, str(response.status), response.body, now)
                report.halted_on = item.id
                report.halted_reason = str(response.status)
                break

            self._apply_response(item, response.body)
            self.session.delete(item)
            self.session.commit()
            report.sent += 1

        if report.sent or report.halted_on:
            logger.info(
                f"outbox_flush: sent={report.sent} halted_on={report.halted_on} "
                f"reason={report.halted_reason}"
            )
        return report

    def _fail(self, item: OutboxItem, code: str, body: Any, now: datetime) -> None:
        item.attempt_count += 1
        item.last_error_code = code
        item.last_error_body = json.dumps(body) if body is not None else None
        if code != "network" and is_permanent_failure(int(code), body):
            item.blocked = True
            item.next_retry_at = None
        else:
            item.next_retry_at = now + backoff_delay(item.attempt_count)
        self.session.commit()

    def _apply_response(self, item: OutboxItem, body: Any) -> None:
        if item.operation == "delete":
            self.mirror.remove(item.entity_type, item.entity_id)
            return
        key = ENTITY_KEYS.get(item.entity_type)
        if key and isinstance(body, dict) and isinstance(body.get(key), dict):
            self.mirror.put(item.entity_type, body[key])


class SyncClient:
    def __init__(
        self,
        session: Session,
        transport: Transport,
        page_size: Optional[int] = None,
    ) -> None:
        self.session = session
        self.transport = transport
        self.page_size = page_size or get_settings().sync_page_size
        self.mirror = LocalMirror(session)
        self.outbox = OutboxManager(session, transport)

    def state(self) -> SyncState:
        state = self.session.get(SyncState, 1)
        if state is None:
            state = SyncState(id=1, cursor=None)
            self.session.add(state)
            self.session.flush()
        return state

    def _get(self, path: str, **params: Any) -> dict[str, Any]:
        if params:
            path = f"{path}?{urlencode(params)}"
        response = self.transport.request("GET", path)
        if not response.ok or not isinstance(response.body, dict):
            raise TransportError(f"GET {path} returned {response.status}")
        return response.body

    def head(self) -> int:
        cursor = self.state().cursor or 0
        page = self._get("/sync", cursor=cursor, limit=0)
        return int(page["next_cursor"])

    def bootstrap(self) -> int:
        snapshot = self._get("/bootstrap")
        self.mirror.clear()
        for collection, entity_type in BOOTSTRAP_COLLECTIONS.items():
            for data in snapshot.get(collection, []):
                self.mirror.put(entity_type, data)

        state = self.state()
        state.cursor = int(snapshot.get("next_cursor") or 0)
        state.last_server_time = snapshot.get("server_time")
        self.session.commit()
        logger.info(f"sync_bootstrap: cursor={state.cursor}")
        return state.cursor

    def apply_change(self, change: dict[str, Any]) -> None:
        entity_type = change["entity_type"]
        if change["action"] == "delete":
            self.mirror.remove(entity_type, change["entity_id"])
            return
        payload = change.get("payload") or {}
        data = payload.get(ENTITY_KEYS.get(entity_type, ""))
        if isinstance(data, dict):
            self.mirror.put(entity_type, data)

    def pull(self) -> int:
        """Apply remote changes page by page; returns how many were applied."""
        state = self.state()
        applied = 0
        while True:
            previous = state.cursor or 0
            page = self._get("/sync", cursor=previous, limit=self.page_size)
            changes = page.get("changes", [])
            for change in changes:
                self.apply_change(change)
            state.cursor = int(page["next_cursor"])
            state.last_server_time = page.get("server_time")
            self.session.commit()
            applied += len(changes)
            # The server may clamp the page below page_size, so only an
            # empty page or a stalled cursor means the log is drained.
            if not changes or state.cursor <= previous:
                break
        logger.info(f"sync_pull: applied={applied} cursor={state.cursor}")
        return applied

    def sync(self, now: Optional[datetime] = None) -> FlushReport:
        report = self.outbox.flush(now)
        if self.state().cursor is None:
            self.bootstrap()
        else:
            self.pull()
        return report

