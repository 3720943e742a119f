import json
import logging
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

import mutations
from config import get_settings
from conflicts import ValidationProblem
from database import SessionLocal
from models import snapshot
from mutations import MutationContext
from periods import parse_instant
from receipts import MutationResult, validation_message
from scheduler import SchedulerManager
from services import (
    AuditService,
    EntryCategoryService,
    EntryService,
    MonthlyBalanceService,
    PaymentMethodService,
    RecurringRuleService,
    SyncService,
)


logger = logging.getLogger(__name__)

app = FastAPI(title="Household Ledger Sync")


class InvalidBody(Exception):
    pass


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse({"message": message, "status": 400}, status_code=400)


@app.exception_handler(ValidationProblem)
async def validation_problem_handler(request: Request, exc: ValidationProblem):
    return _bad_request(str(exc))


@app.exception_handler(InvalidBody)
async def invalid_body_handler(request: Request, exc: InvalidBody):
    return _bad_request(str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _bad_request(validation_message(exc))


def get_db():
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()
    else:
        logger.info("Scheduler disabled by LEDGER_SCHEDULER_ENABLED")


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


def require_family(x_family_id: Optional[str] = Header(default=None)) -> str:
    family_id = (x_family_id or "").strip()
    if not family_id:
        raise HTTPException(status_code=401, detail="X-Family-Id header required")
    return family_id


def actor_user(x_user_id: Optional[str] = Header(default=None)) -> str:
    return (x_user_id or "").strip() or "unknown"


def mutation_context(
    db: Session = Depends(get_db),
    family_id: str = Depends(require_family),
    actor_user_id: str = Depends(actor_user),
    x_outbox_id: Optional[str] = Header(default=None),
) -> MutationContext:
    return MutationContext(
        session=db,
        family_id=family_id,
        actor_user_id=actor_user_id,
        request_id=(x_outbox_id or "").strip() or None,
    )


async def json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise InvalidBody("invalid json body") from exc


def respond(result: MutationResult) -> JSONResponse:
    return JSONResponse(result.body, status_code=result.status)


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/sync")
def sync(
    cursor: int = 0,
    limit: Optional[int] = None,
    db: Session = Depends(get_db),
    family_id: str = Depends(require_family),
):
    settings = get_settings()
    page_size = settings.sync_page_size if limit is None else limit
    return SyncService(db, family_id).pull(
        cursor, page_size, max_limit=settings.sync_max_limit
    )


@app.get("/bootstrap")
def bootstrap(db: Session = Depends(get_db), family_id: str = Depends(require_family)):
    return SyncService(db, family_id).bootstrap()


@app.get("/entries")
def list_entries(
    since: Optional[str] = None,
    db: Session = Depends(get_db),
    family_id: str = Depends(require_family),
):
    since_at = None
    if since:
        try:
            since_at = parse_instant(since)
        except ValueError as exc:
            raise ValidationProblem("since must be an ISO timestamp") from exc
    rows = EntryService(db, family_id).list(since=since_at)
    return {"entries": [snapshot(row) for row in rows]}


@app.get("/entries/{entry_id}/amount-history")
def entry_amount_history(
    entry_id: str, db: Session = Depends(get_db), family_id: str = Depends(require_family)
):
    rows = EntryService(db, family_id).amount_history(entry_id)
    return {"changes": [snapshot(row) for row in rows]}


@app.post("/entries")
async def post_entry(request: Request, ctx: MutationContext = Depends(mutation_context)):
    payload = await json_body(request)
    return respond(mutations.upsert_entry(ctx, payload))


@app.patch("/entries/{entry_id}")
async def patch_entry(
    entry_id: str, request: Request, ctx: MutationContext = Depends(mutation_context)
):
    payload = await json_body(request)
    return respond(mutations.patch_entry(ctx, entry_id, payload))


@app.delete("/entries/{entry_id}")
def delete_entry(entry_id: str, ctx: MutationContext = Depends(mutation_context)):
    return respond(mutations.delete_entry(ctx, entry_id))


@app.get("/entry-categories")
def list_entry_categories(
    db: Session = Depends(get_db), family_id: str = Depends(require_family)
):
    rows = EntryCategoryService(db, family_id).list()
    return {"entry_categories": [snapshot(row) for row in rows]}


@app.post("/entry-categories")
async def post_entry_category(
    request: Request, ctx: MutationContext = Depends(mutation_context)
):
    payload = await json_body(request)
    return respond(mutations.upsert_entry_category(ctx, payload))


@app.post("/entry-categories/{category_id}/archive")
def archive_entry_category(
    category_id: str, ctx: MutationContext = Depends(mutation_context)
):
    return respond(mutations.archive_entry_category(ctx, category_id))


@app.post("/entry-categories/{category_id}/merge")
async def merge_entry_category(
    category_id: str, request: Request, ctx: MutationContext = Depends(mutation_context)
):
    payload = await json_body(request)
    return respond(mutations.merge_entry_category(ctx, category_id, payload))


@app.delete("/entry-categories/{category_id}")
def delete_entry_category(
    category_id: str, ctx: MutationContext = Depends(mutation_context)
):
    return respond(mutations.delete_entry_category(ctx, category_id))


@app.get("/payment-methods")
def list_payment_methods(
    db: Session = Depends(get_db), family_id: str = Depends(require_family)
):
    rows = PaymentMethodService(db, family_id).list()
    return {"payment_methods": [snapshot(row) for row in rows]}


@app.post("/payment-methods")
async def post_payment_method(
    request: Request, ctx: MutationContext = Depends(mutation_context)
):
    payload = await json_body(request)
    return respond(mutations.upsert_payment_method(ctx, payload))


@app.delete("/payment-methods/{payment_method_id}")
def delete_payment_method(
    payment_method_id: str, ctx: MutationContext = Depends(mutation_context)
):
    return respond(mutations.delete_payment_method(ctx, payment_method_id))


@app.get("/recurring-rules")
def list_recurring_rules(
    db: Session = Depends(get_db), family_id: str = Depends(require_family)
):
    rows = RecurringRuleService(db, family_id).list()
    return {"recurring_rules": [snapshot(row) for row in rows]}


@app.post("/recurring-rules")
async def post_recurring_rule(
    request: Request, ctx: MutationContext = Depends(mutation_context)
):
    payload = await json_body(request)
    return respond(mutations.upsert_recurring_rule(ctx, payload))


@app.delete("/recurring-rules/{rule_id}")
def delete_recurring_rule(rule_id: str, ctx: MutationContext = Depends(mutation_context)):
    return respond(mutations.delete_recurring_rule(ctx, rule_id))


@app.get("/monthly-balance")
def get_monthly_balance(
    ym: str, db: Session = Depends(get_db), family_id: str = Depends(require_family)
):
    row = MonthlyBalanceService(db, family_id).get(ym)
    return {"monthly_balance": snapshot(row) if row is not None else None}


@app.get("/monthly-balances")
def list_monthly_balances(
    request: Request,
    db: Session = Depends(get_db),
    family_id: str = Depends(require_family),
):
    from_ym = request.query_params.get("from", "")
    to_ym = request.query_params.get("to", "")
    rows = MonthlyBalanceService(db, family_id).list_range(from_ym, to_ym)
    return {"monthly_balances": [snapshot(row) for row in rows]}


@app.put("/monthly-balance/{ym}")
async def put_monthly_balance(
    ym: str, request: Request, ctx: MutationContext = Depends(mutation_context)
):
    payload = await json_body(request)
    return respond(mutations.put_monthly_balance(ctx, ym, payload))


@app.get("/audit-logs")
def list_audit_logs(
    limit: int = 50, db: Session = Depends(get_db), family_id: str = Depends(require_family)
):
    rows = AuditService(db, family_id).list_recent(limit)
    return {"audit_logs": [snapshot(row) for row in rows]}


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
