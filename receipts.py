from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import ValidationError
from sqlalchemy import delete
from sqlalchemy.orm import Session

from config import get_settings
from conflicts import FatalConflict, ValidationProblem
from models import MutationReceipt
from periods import utcnow


logger = logging.getLogger(__name__)


@dataclass
class MutationResult:
    status: int
    body: dict[str, Any]


def validation_message(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        loc = ".".join(str(item) for item in error.get("loc", ()))
        parts.append(f"{loc}: {error['msg']}" if loc else error["msg"])
    return "; ".join(parts) or "invalid request"


class MutationReceiptService:
    def __init__(
        self, session: Session, family_id: str, ttl_days: Optional[int] = None
    ) -> None:
        self.session = session
        self.family_id = family_id
        self.ttl_days = ttl_days or get_settings().receipt_ttl_days

    def load(
        self, request_id: str, now: Optional[datetime] = None
    ) -> Optional[MutationReceipt]:
        now = now or utcnow()
        receipt = self.session.get(MutationReceipt, request_id)
        if receipt is None:
            return None
        if receipt.expires_at <= now:
            self.session.delete(receipt)
            self.session.commit()
            return None
        return receipt

    def is_mismatch(self, receipt: MutationReceipt, endpoint: str, method: str) -> bool:
        return (
            receipt.family_id != self.family_id
            or receipt.endpoint != endpoint
            or receipt.method != method
        )

    def store(
        self,
        request_id: str,
        *,
        endpoint: str,
        method: str,
        result: MutationResult,
        now: Optional[datetime] = None,
    ) -> None:
        now = now or utcnow()
        # Keyed by token only; a racing retry of the same token just replaces it.
        self.session.merge(
            MutationReceipt(
                request_id=request_id,
                family_id=self.family_id,
                endpoint=endpoint,
                method=method,
                status=result.status,
                response_body=json.dumps(result.body),
                created_at=now,
                expires_at=now + timedelta(days=self.ttl_days),
            )
        )
        self.session.commit()

    @staticmethod
    def replay(receipt: MutationReceipt) -> MutationResult:
        try:
            body = json.loads(receipt.response_body)
        except json.JSONDecodeError:
            body = {"message": "stored receipt body parse failed", "status": receipt.status}
        return MutationResult(status=receipt.status, body=body)


def run_with_receipt(
    session: Session,
    *,
    family_id: str,
    request_id: Optional[str],
    endpoint: str,
    method: str,
    entity_type: str,
    entity_id: Optional[str],
    handler: Callable[[], MutationResult],
    now: Optional[datetime] = None,
) -> MutationResult:
    receipts = MutationReceiptService(session, family_id)
    if request_id:
        receipt = receipts.load(request_id, now)
        if receipt is not None:
            if receipts.is_mismatch(receipt, endpoint, method):
                logger.warning(
                    f"receipt_mismatch: request_id={request_id} "
                    f"stored={receipt.method} {receipt.endpoint} "
                    f"incoming={method} {endpoint}"
                )
                conflict = FatalConflict.receipt_mismatch(
                    receipt, entity_type, entity_id or request_id
                )
                return MutationResult(status=409, body=conflict.envelope())
            logger.info(f"receipt_replay: request_id={request_id} endpoint={endpoint}")
            return receipts.replay(receipt)

    try:
        result = handler()
    except FatalConflict as exc:
        session.rollback()
        logger.info(
            f"fatal_conflict: code={exc.code} entity={exc.entity_type}/{exc.entity_id}"
        )
        result = MutationResult(status=exc.status_code, body=exc.envelope())
    except ValidationError as exc:
        session.rollback()
        message = validation_message(exc)
        result = MutationResult(status=400, body={"message": message, "status": 400})
    except ValidationProblem as exc:
        session.rollback()
        result = MutationResult(status=400, body={"message": str(exc), "status": 400})

    if request_id:
        receipts.store(
            request_id, endpoint=endpoint, method=method, result=result, now=now
        )
    return result


def purge_expired_receipts(session: Session, now: Optional[datetime] = None) -> int:
    now = now or utcnow()
    result = session.execute(
        delete(MutationReceipt).where(MutationReceipt.expires_at <= now)
    )
    session.commit()
    return result.rowcount or 0
