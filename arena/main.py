import asyncio
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from arena import conversion, spins, withdrawals
from arena.config import WithdrawalStatus, settings
from arena.database import Base, SessionLocal, engine, get_db
from arena.db import commit_unit, get_idempotent_response, store_idempotency
from arena.helpers import hash_request, reject, serialize_outbox
from arena.logging_config import get_logger
from arena.models import NotificationOutbox
from arena.notifications import background_outbox_worker
from arena.schemas import (
    BalanceResponse,
    ConvertCurrencyRequest,
    ConvertPointsRequest,
    SpinControlState,
    SpinControlUpdate,
    SpinRequest,
    SpinStatus,
    WithdrawalCreate,
    WithdrawalRejection,
    WithdrawalSummaryResponse,
)
from arena.security import Identity, get_identity, require_admin


logger = get_logger(__name__)

Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    with SessionLocal() as db:
        spins.ensure_spin_control(db)
    worker = None
    if settings.outbox_worker_enabled and settings.notify_url:
        logger.info("Starting notification outbox worker target=%s", settings.notify_url)
        worker = asyncio.create_task(background_outbox_worker(SessionLocal))
    yield
    if worker:
        worker.cancel()


app = FastAPI(title="Arena Points Service", lifespan=lifespan)


@app.exception_handler(SQLAlchemyError)
async def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Persistence failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": {"code": "persistence_error", "error": "Server error"}})


# --- spin game ---

@app.get("/spins/control", response_model=SpinControlState)
async def get_spin_control(_identity: Identity = Depends(get_identity), db: Session = Depends(get_db)):
    return spins.serialize_control(spins.get_spin_control(db))

@app.post("/spins/control", response_model=SpinControlState)
async def update_spin_control(
    request: SpinControlUpdate,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return spins.set_spin_control(db, admin.user_id, request.disabled, request.reason)

@app.get("/spins/status", response_model=SpinStatus)
async def get_spin_status(identity: Identity = Depends(get_identity), db: Session = Depends(get_db)):
    return spins.spin_status(db, identity.user_id)

@app.get("/spins")
async def list_spins(
    limit: int = Query(50, ge=1, le=200),
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return {"spins": spins.spin_history(db, identity.user_id, limit)}

@app.post("/spins")
async def submit_spin(
    request: SpinRequest,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body_hash = hash_request(request.model_dump())
    if idempotency_key:
        existing = get_idempotent_response(db, identity.user_id, idempotency_key, body_hash)
        if existing:
            return existing
    response = spins.play_spin(db, identity.user_id, request.bet)
    if idempotency_key:
        store_idempotency(db, identity.user_id, idempotency_key, body_hash, response)
    return response


# --- account ---

@app.get("/account/balance", response_model=BalanceResponse)
async def get_balance(identity: Identity = Depends(get_identity), db: Session = Depends(get_db)):
    return conversion.account_balance(db, identity.user_id)

@app.post("/account/convert")
async def convert_points(
    request: Optional[ConvertPointsRequest] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return conversion.convert_points(db, identity.user_id, request.points if request else None)

@app.post("/account/convert-back")
async def convert_currency(
    request: Optional[ConvertCurrencyRequest] = None,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return conversion.convert_currency(db, identity.user_id, request.amount if request else None)

@app.get("/account/withdrawals/summary", response_model=WithdrawalSummaryResponse)
async def get_withdrawal_summary(identity: Identity = Depends(get_identity), db: Session = Depends(get_db)):
    return withdrawals.compute_summary(db, identity.user_id).as_payload()

@app.get("/account/withdrawals")
async def list_my_withdrawals(identity: Identity = Depends(get_identity), db: Session = Depends(get_db)):
    return withdrawals.list_user_withdrawals(db, identity.user_id)

@app.post("/account/withdrawals")
async def create_withdrawal(
    request: WithdrawalCreate,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
    idempotency_key: str | None = Header(None),
):
    body_hash = hash_request(request.model_dump())
    if idempotency_key:
        existing = get_idempotent_response(db, identity.user_id, idempotency_key, body_hash)
        if existing:
            return existing
    response = withdrawals.request_withdrawal(db, identity.user_id, identity.is_admin, request.amount, request.contact)
    if idempotency_key:
        store_idempotency(db, identity.user_id, idempotency_key, body_hash, response)
    return response

@app.delete("/account/withdrawals/{withdrawal_id}")
async def delete_withdrawal(
    withdrawal_id: int,
    identity: Identity = Depends(get_identity),
    db: Session = Depends(get_db),
):
    return withdrawals.delete_withdrawal(db, identity.user_id, identity.is_admin, withdrawal_id)


# --- admin ---

@app.get("/admin/withdrawals")
async def admin_list_withdrawals(
    status: Optional[WithdrawalStatus] = None,
    limit: int = Query(withdrawals.ADMIN_LIST_LIMIT, ge=1, le=withdrawals.ADMIN_LIST_LIMIT),
    _admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return {"withdrawals": withdrawals.list_all_withdrawals(db, status, limit)}

@app.post("/admin/withdrawals/{withdrawal_id}/verify")
async def admin_verify_withdrawal(
    withdrawal_id: int,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return withdrawals.verify_withdrawal(db, admin.user_id, withdrawal_id)

@app.post("/admin/withdrawals/{withdrawal_id}/reject")
async def admin_reject_withdrawal(
    withdrawal_id: int,
    request: Optional[WithdrawalRejection] = None,
    admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    return withdrawals.reject_withdrawal(db, admin.user_id, withdrawal_id, request.note if request else "")

@app.get("/admin/notifications")
async def list_notifications(
    status: str | None = None,
    limit: int = Query(100, ge=1, le=500),
    _admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    query = db.query(NotificationOutbox)
    if status:
        query = query.filter(NotificationOutbox.status == status)
    records = query.order_by(NotificationOutbox.created_at.desc(), NotificationOutbox.id.desc()).limit(limit).all()
    return [serialize_outbox(r) for r in records]

@app.post("/admin/notifications/{record_id}/replay")
async def replay_notification(
    record_id: int,
    _admin: Identity = Depends(require_admin),
    db: Session = Depends(get_db),
):
    """
    Force a single outbox record back to pending and clear the last_error.
    """
    record = db.get(NotificationOutbox, record_id)
    if not record:
        raise reject(404, "notification_not_found", "outbox record not found")
    record.status = "pending"
    record.last_error = None
    record.next_attempt_at = None
    db.add(record)
    commit_unit(db, "outbox.replay")
    db.refresh(record)
    logger.info("Forced replay for outbox record_id=%s", record_id)
    return serialize_outbox(record)


@app.get("/swagger", include_in_schema=False)
async def swagger_ui():
    return get_swagger_ui_html(openapi_url=str(app.openapi_url), title="Arena Points Service - Swagger UI")

@app.get("/health")
async def health():
    return {"status": "ok"}
