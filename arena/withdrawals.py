"""
Withdrawal ledger with a rolling cap.

Requests are soft reservations: a pending withdrawal counts against the cap
but does not move money. The currency balance is debited only when an admin
verifies the request. Window totals are recomputed from the ledger on every
call; there is no stored bucket state.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.orm import Session, aliased

from arena.config import NotificationEvent, WithdrawalStatus, settings
from arena.db import commit_unit, lock_user
from arena.helpers import isoformat, parse_amount, reject, serialize_withdrawal, to_dollars, to_micros, utcnow
from arena.logging_config import get_logger
from arena.models import User, Withdrawal
from arena.notifications import enqueue_event

logger = get_logger(__name__)

MAX_CONTACT_LENGTH = 64
MAX_NOTE_LENGTH = 200
ADMIN_LIST_LIMIT = 200


def window() -> timedelta:
    return timedelta(hours=settings.withdrawal_window_hours)


@dataclass(frozen=True)
class WithdrawalSummary:
    verified_total: int  # micro-dollars
    pending_total: int
    cap: int
    next_allowed_at: datetime | None

    @property
    def remaining_verified(self) -> int:
        return max(0, self.cap - self.verified_total)

    @property
    def remaining_including_pending(self) -> int:
        return max(0, self.cap - (self.verified_total + self.pending_total))

    def as_payload(self) -> dict:
        return {
            "spent24": to_dollars(self.verified_total),
            "pending24": to_dollars(self.pending_total),
            "remainingVerified": to_dollars(self.remaining_verified),
            "remainingIncludingPending": to_dollars(self.remaining_including_pending),
            "cap": to_dollars(self.cap),
            "nextAllowedAt": isoformat(self.next_allowed_at),
        }


def verified_total(db: Session, user_id: int, since: datetime, exclude_id: int | None = None) -> tuple[int, int]:
    query = select(func.coalesce(func.sum(Withdrawal.amount_micros), 0), func.count(Withdrawal.id)).where(
        Withdrawal.user_id == user_id,
        Withdrawal.status == WithdrawalStatus.VERIFIED.value,
        Withdrawal.verified_at >= since,
    )
    if exclude_id is not None:
        query = query.where(Withdrawal.id != exclude_id)
    total, count = db.execute(query).one()
    return int(total or 0), int(count or 0)


def pending_total(db: Session, user_id: int, since: datetime) -> int:
    total = db.scalar(
        select(func.coalesce(func.sum(Withdrawal.amount_micros), 0)).where(
            Withdrawal.user_id == user_id,
            Withdrawal.status == WithdrawalStatus.PENDING.value,
            Withdrawal.requested_at >= since,
        )
    )
    return int(total or 0)


def earliest_contribution(db: Session, user_id: int, since: datetime, include_pending: bool = True) -> datetime | None:
    """Oldest timestamp still counted in the window: verification time for
    verified records, request time for pending ones."""
    candidates = [
        db.scalar(
            select(func.min(Withdrawal.verified_at)).where(
                Withdrawal.user_id == user_id,
                Withdrawal.status == WithdrawalStatus.VERIFIED.value,
                Withdrawal.verified_at >= since,
            )
        )
    ]
    if include_pending:
        candidates.append(
            db.scalar(
                select(func.min(Withdrawal.requested_at)).where(
                    Withdrawal.user_id == user_id,
                    Withdrawal.status == WithdrawalStatus.PENDING.value,
                    Withdrawal.requested_at >= since,
                )
            )
        )
    found = [c for c in candidates if c is not None]
    return min(found) if found else None


def compute_summary(
    db: Session,
    user_id: int,
    now: datetime | None = None,
    always_next: bool = False,
) -> WithdrawalSummary:
    now = now or utcnow()
    since = now - window()
    verified, _ = verified_total(db, user_id, since)
    pending = pending_total(db, user_id, since)
    cap = settings.withdrawal_cap_micros
    next_allowed_at = None
    if always_next or verified + pending >= cap:
        earliest = earliest_contribution(db, user_id, since)
        if earliest is not None:
            next_allowed_at = earliest + window()
    return WithdrawalSummary(verified_total=verified, pending_total=pending, cap=cap, next_allowed_at=next_allowed_at)


def _reject_over_cap(db: Session, user_id: int, amount_micros: int, now: datetime) -> None:
    db.rollback()
    blocked = compute_summary(db, user_id, now, always_next=True)
    logger.info(
        "Withdrawal request over cap user_id=%s amount_micros=%s remaining_micros=%s",
        user_id,
        amount_micros,
        blocked.remaining_including_pending,
    )
    raise reject(
        400,
        "cap_exceeded",
        f"Request would exceed your {settings.withdrawal_cap_usd:g}$ cap in the last "
        f"{settings.withdrawal_window_hours} hours.",
        **blocked.as_payload(),
    )


def request_withdrawal(
    db: Session,
    user_id: int,
    is_admin: bool,
    amount: Any,
    contact: str | None,
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    contact = (contact or "").strip()
    if not contact:
        raise reject(400, "contact_required", "Contact required")
    if len(contact) > MAX_CONTACT_LENGTH:
        raise reject(400, "invalid_contact", f"Contact must be at most {MAX_CONTACT_LENGTH} characters")

    requested = parse_amount(amount)
    if requested is not None and requested <= 0:
        raise reject(400, "invalid_amount", "Invalid amount")

    user = lock_user(db, user_id)
    balance = user.balance_micros or 0
    amount_micros = balance if requested is None else min(to_micros(requested), balance)
    if amount_micros <= 0:
        db.rollback()
        raise reject(400, "insufficient_balance", "Insufficient balance", balance=to_dollars(balance))
    if amount_micros < settings.min_withdrawal_micros:
        db.rollback()
        raise reject(
            400,
            "below_minimum",
            f"Minimum withdraw is ${settings.min_withdrawal_usd:g}",
            minimum=settings.min_withdrawal_usd,
            amount=to_dollars(amount_micros),
        )

    summary = compute_summary(db, user_id, now)
    if not is_admin and amount_micros > summary.remaining_including_pending:
        _reject_over_cap(db, user_id, amount_micros, now)

    record = Withdrawal(
        user_id=user_id,
        amount_micros=amount_micros,
        contact=contact,
        status=WithdrawalStatus.PENDING.value,
        requested_at=now,
    )
    db.add(record)
    db.flush()
    if not is_admin:
        # the INSERT holds the write lock, so this total includes every
        # request committed before ours
        reserved = compute_summary(db, user_id, now)
        if reserved.verified_total + reserved.pending_total > reserved.cap:
            _reject_over_cap(db, user_id, amount_micros, now)
    enqueue_event(db, NotificationEvent.WITHDRAWAL_NEW, {"withdrawal": serialize_withdrawal(record)})
    commit_unit(db, "withdrawal.request")
    logger.info("Withdrawal requested id=%s user_id=%s amount_micros=%s", record.id, user_id, amount_micros)

    fresh = compute_summary(db, user_id, now)
    return {"withdrawal": serialize_withdrawal(record), "summary": fresh.as_payload()}


def list_user_withdrawals(db: Session, user_id: int, now: datetime | None = None) -> dict:
    records = (
        db.query(Withdrawal)
        .filter(Withdrawal.user_id == user_id)
        .order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc())
        .all()
    )
    summary = compute_summary(db, user_id, now)
    return {"withdrawals": [serialize_withdrawal(r) for r in records], **summary.as_payload()}


def list_all_withdrawals(
    db: Session,
    status: WithdrawalStatus | None = None,
    limit: int = ADMIN_LIST_LIMIT,
    now: datetime | None = None,
) -> list[dict]:
    """Recent withdrawals for review, each with its owner's window stats."""
    now = now or utcnow()
    query = db.query(Withdrawal)
    if status:
        query = query.filter(Withdrawal.status == status.value)
    records = query.order_by(Withdrawal.requested_at.desc(), Withdrawal.id.desc()).limit(limit).all()
    if not records:
        return []

    user_ids = sorted({r.user_id for r in records})
    since = now - window()
    stats = {uid: {"verifiedAmount24": 0.0, "verifiedCount24": 0, "requestCount24": 0} for uid in user_ids}
    verified_rows = db.execute(
        select(Withdrawal.user_id, func.coalesce(func.sum(Withdrawal.amount_micros), 0), func.count(Withdrawal.id))
        .where(
            Withdrawal.user_id.in_(user_ids),
            Withdrawal.status == WithdrawalStatus.VERIFIED.value,
            Withdrawal.verified_at >= since,
        )
        .group_by(Withdrawal.user_id)
    ).all()
    for uid, total, count in verified_rows:
        stats[uid]["verifiedAmount24"] = to_dollars(int(total or 0))
        stats[uid]["verifiedCount24"] = int(count)
    request_rows = db.execute(
        select(Withdrawal.user_id, func.count(Withdrawal.id))
        .where(Withdrawal.user_id.in_(user_ids), Withdrawal.requested_at >= since)
        .group_by(Withdrawal.user_id)
    ).all()
    for uid, count in request_rows:
        stats[uid]["requestCount24"] = int(count)

    return [{**serialize_withdrawal(r), "userStats": stats[r.user_id]} for r in records]


def _get_withdrawal(db: Session, withdrawal_id: int) -> Withdrawal:
    record = db.get(Withdrawal, withdrawal_id)
    if record is None:
        raise reject(404, "withdrawal_not_found", "Withdrawal not found")
    return record


def _check_verified_cap(db: Session, withdrawal_id: int, owner_id: int, amount: int, since: datetime) -> None:
    verified24, verified_count = verified_total(db, owner_id, since, exclude_id=withdrawal_id)
    remaining = max(0, settings.withdrawal_cap_micros - verified24)
    if amount <= remaining:
        return
    earliest = earliest_contribution(db, owner_id, since, include_pending=False)
    db.rollback()
    logger.info(
        "Verification over cap withdrawal_id=%s user_id=%s amount_micros=%s remaining_micros=%s",
        withdrawal_id,
        owner_id,
        amount,
        remaining,
    )
    raise reject(
        400,
        "cap_exceeded",
        f"Verifying this withdrawal would exceed the {settings.withdrawal_window_hours}h verified cap.",
        remaining=to_dollars(remaining),
        cap=to_dollars(settings.withdrawal_cap_micros),
        verified24=to_dollars(verified24),
        verifiedCount24=verified_count,
        nextAllowedAt=isoformat(earliest + window()) if earliest else None,
    )


def verify_withdrawal(db: Session, admin_id: int, withdrawal_id: int, now: datetime | None = None) -> dict:
    """
    Mark a pending withdrawal verified and debit the owner's balance in one
    transaction. The cap is enforced here for every caller, admins included.
    """
    now = now or utcnow()
    record = _get_withdrawal(db, withdrawal_id)
    if record.status != WithdrawalStatus.PENDING.value:
        raise reject(400, "not_pending", "Only pending withdrawals may be verified", status=record.status)

    owner_id = record.user_id
    amount = record.amount_micros
    lock_user(db, owner_id)
    since = now - window()
    _check_verified_cap(db, withdrawal_id, owner_id, amount, since)

    # the cap is re-checked by the status swap itself
    settled = aliased(Withdrawal)
    verified_in_window = (
        select(func.coalesce(func.sum(settled.amount_micros), 0))
        .where(
            settled.user_id == owner_id,
            settled.status == WithdrawalStatus.VERIFIED.value,
            settled.verified_at >= since,
        )
        .scalar_subquery()
    )
    transitioned = db.execute(
        update(Withdrawal)
        .where(
            Withdrawal.id == withdrawal_id,
            Withdrawal.status == WithdrawalStatus.PENDING.value,
            verified_in_window + amount <= settings.withdrawal_cap_micros,
        )
        .values(status=WithdrawalStatus.VERIFIED.value, verified_at=now, verified_by=admin_id)
        .execution_options(synchronize_session=False)
    )
    if transitioned.rowcount != 1:
        db.rollback()
        logger.warning("Guarded verification matched no row withdrawal_id=%s user_id=%s", withdrawal_id, owner_id)
        status = db.scalar(select(Withdrawal.status).where(Withdrawal.id == withdrawal_id))
        if status != WithdrawalStatus.PENDING.value:
            raise reject(400, "not_pending", "Only pending withdrawals may be verified", status=status)
        _check_verified_cap(db, withdrawal_id, owner_id, amount, since)
        raise reject(409, "concurrent_update", "Withdrawal changed during verification; try again")

    deduction = case((User.balance_micros < amount, User.balance_micros), else_=amount)
    db.execute(
        update(User)
        .where(User.id == owner_id)
        .values(balance_micros=User.balance_micros - deduction)
        .execution_options(synchronize_session=False)
    )
    db.refresh(record)
    new_balance = db.scalar(select(User.balance_micros).where(User.id == owner_id))
    payload = serialize_withdrawal(record)
    enqueue_event(db, NotificationEvent.WITHDRAWAL_VERIFIED, {"withdrawal": payload})
    commit_unit(db, "withdrawal.verify")
    logger.info(
        "Withdrawal verified id=%s user_id=%s admin_id=%s amount_micros=%s balance_micros=%s",
        withdrawal_id,
        owner_id,
        admin_id,
        amount,
        new_balance,
    )
    return {"withdrawal": payload, "userBalance": to_dollars(new_balance)}


def reject_withdrawal(
    db: Session,
    admin_id: int,
    withdrawal_id: int,
    note: str | None,
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    record = _get_withdrawal(db, withdrawal_id)
    transitioned = db.execute(
        update(Withdrawal)
        .where(Withdrawal.id == withdrawal_id, Withdrawal.status == WithdrawalStatus.PENDING.value)
        .values(
            status=WithdrawalStatus.REJECTED.value,
            verified_at=now,
            verified_by=admin_id,
            note=(note or "")[:MAX_NOTE_LENGTH],
        )
        .execution_options(synchronize_session=False)
    )
    if transitioned.rowcount != 1:
        db.rollback()
        raise reject(400, "not_pending", "Can only reject pending requests")
    db.refresh(record)
    payload = serialize_withdrawal(record)
    enqueue_event(db, NotificationEvent.WITHDRAWAL_REJECTED, {"withdrawal": payload})
    commit_unit(db, "withdrawal.reject")
    logger.info("Withdrawal rejected id=%s admin_id=%s", withdrawal_id, admin_id)
    return {"withdrawal": payload}


def delete_withdrawal(
    db: Session,
    user_id: int,
    is_admin: bool,
    withdrawal_id: int,
    now: datetime | None = None,
) -> dict:
    """Owners may delete their own pending requests; admins may delete any."""
    record = _get_withdrawal(db, withdrawal_id)
    owner_id = record.user_id
    if not is_admin:
        if owner_id != user_id:
            raise reject(403, "not_allowed", "Not allowed to delete this withdrawal")
        if record.status != WithdrawalStatus.PENDING.value:
            raise reject(400, "not_pending", "Only pending withdrawals can be deleted", status=record.status)

    payload = serialize_withdrawal(record)
    statement = delete(Withdrawal).where(Withdrawal.id == withdrawal_id)
    if not is_admin:
        statement = statement.where(Withdrawal.status == WithdrawalStatus.PENDING.value)
    removed = db.execute(statement.execution_options(synchronize_session=False))
    if removed.rowcount != 1:
        db.rollback()
        raise reject(400, "not_pending", "Only pending withdrawals can be deleted")
    db.expunge(record)
    enqueue_event(db, NotificationEvent.WITHDRAWAL_DELETED, {"withdrawal": payload, "deletedBy": user_id})
    commit_unit(db, "withdrawal.delete")
    logger.info("Withdrawal deleted id=%s owner_id=%s by user_id=%s admin=%s", withdrawal_id, owner_id, user_id, is_admin)

    summary = compute_summary(db, owner_id, now)
    return {"deleted": True, "id": withdrawal_id, "summary": summary.as_payload()}
