import math
import random
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from arena.config import NotificationEvent, settings
from arena.db import commit_unit, lock_user
from arena.helpers import isoformat, reject, serialize_spin, utcnow
from arena.logging_config import get_logger
from arena.models import SPIN_CONTROL_ID, Spin, SpinControl, User
from arena.notifications import enqueue_event
from arena.outcomes import outcome_distribution, weighted_pick

logger = get_logger(__name__)


def day_start(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def ensure_spin_control(db: Session) -> None:
    if db.get(SpinControl, SPIN_CONTROL_ID) is None:
        db.add(SpinControl(id=SPIN_CONTROL_ID, disabled=False, reason=""))
        commit_unit(db, "spin_control.seed")
        logger.info("Seeded spin control row id=%s", SPIN_CONTROL_ID)


def get_spin_control(db: Session) -> SpinControl:
    control = db.get(SpinControl, SPIN_CONTROL_ID)
    if control is None:
        # not seeded yet: spins are enabled until an admin says otherwise
        return SpinControl(id=SPIN_CONTROL_ID, disabled=False, reason="")
    return control


def serialize_control(control: SpinControl) -> dict:
    return {
        "disabled": bool(control.disabled),
        "reason": control.reason or "",
        "updatedBy": control.updated_by,
        "updatedAt": isoformat(control.updated_at),
    }


def set_spin_control(db: Session, admin_id: int, disabled: bool, reason: str | None, now: datetime | None = None) -> dict:
    now = now or utcnow()
    control = db.merge(
        SpinControl(
            id=SPIN_CONTROL_ID,
            disabled=bool(disabled),
            reason=(reason or "")[:1000],
            updated_by=admin_id,
            updated_at=now,
        )
    )
    enqueue_event(db, NotificationEvent.SPIN_CONTROL, {"disabled": bool(disabled), "reason": control.reason})
    commit_unit(db, "spin_control.set")
    logger.info("Spin control updated disabled=%s by admin_id=%s", control.disabled, admin_id)
    return serialize_control(control)


def count_spins_today(db: Session, user_id: int, now: datetime) -> int:
    return db.scalar(
        select(func.count(Spin.id)).where(Spin.user_id == user_id, Spin.created_at >= day_start(now))
    ) or 0


def spin_status(db: Session, user_id: int, now: datetime | None = None) -> dict:
    now = now or utcnow()
    spins_today = count_spins_today(db, user_id, now)
    return {
        "spinsToday": spins_today,
        "spinsRemaining": max(0, settings.daily_spin_limit - spins_today),
        "dailyLimit": settings.daily_spin_limit,
        "resetsAt": isoformat(day_start(now) + timedelta(days=1)),
    }


def spin_history(db: Session, user_id: int, limit: int = 50) -> list[dict]:
    spins = (
        db.query(Spin)
        .filter(Spin.user_id == user_id)
        .order_by(Spin.created_at.desc(), Spin.id.desc())
        .limit(limit)
        .all()
    )
    return [serialize_spin(s) for s in spins]


def parse_bet(raw: Any) -> int:
    """Floor a numeric wager and check it against the configured bounds."""
    invalid = reject(
        400,
        "invalid_bet",
        f"Invalid bet. Minimum is {settings.min_bet}.",
        minBet=settings.min_bet,
        maxBet=settings.max_bet,
    )
    if raw is None or isinstance(raw, bool):
        raise invalid
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise invalid from None
    if not math.isfinite(value):
        raise invalid
    bet = math.floor(value)
    if bet < settings.min_bet:
        raise invalid
    if bet > settings.max_bet:
        raise reject(
            400,
            "invalid_bet",
            f"Maximum bet is {settings.max_bet}.",
            minBet=settings.min_bet,
            maxBet=settings.max_bet,
        )
    return bet


def _check_quota(db: Session, user_id: int, now: datetime) -> int:
    spins_today = count_spins_today(db, user_id, now)
    if spins_today >= settings.daily_spin_limit:
        raise reject(
            429,
            "daily_limit_reached",
            f"Daily spin limit reached ({settings.daily_spin_limit} per day).",
            spinsToday=spins_today,
            dailyLimit=settings.daily_spin_limit,
            resetsAt=isoformat(day_start(now) + timedelta(days=1)),
        )
    return spins_today


def _check_balance(user: User, bet: int) -> None:
    if (user.points or 0) < bet:
        raise reject(400, "insufficient_points", "Insufficient points.", points=user.points or 0, bet=bet)


def play_spin(
    db: Session,
    user_id: int,
    raw_bet: Any,
    now: datetime | None = None,
    rng: Optional[random.Random] = None,
) -> dict:
    """
    Run one spin: kill-switch, wager, daily quota and balance checks, then a
    weighted draw. The balance change, the spin record and its broadcasts
    commit as one transaction.
    """
    now = now or utcnow()
    control = get_spin_control(db)
    if control.disabled:
        raise reject(403, "spins_disabled", "Spins are disabled by admin", reason=control.reason or "No reason provided")

    bet = parse_bet(raw_bet)
    spins_today = _check_quota(db, user_id, now)
    user = lock_user(db, user_id)
    _check_balance(user, bet)

    distribution = outcome_distribution(bet, settings.jackpot_base_probability)
    outcome = int(weighted_pick(distribution.tiers, distribution.weights, rng))
    delta = outcome - bet

    # balance and quota are re-checked by the UPDATE itself
    spins_so_far = (
        select(func.count(Spin.id))
        .where(Spin.user_id == user_id, Spin.created_at >= day_start(now))
        .scalar_subquery()
    )
    result = db.execute(
        update(User)
        .where(User.id == user_id, User.points >= bet, spins_so_far < settings.daily_spin_limit)
        .values(points=User.points + delta, points_updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        logger.warning("Guarded spin update matched no row user_id=%s bet=%s", user_id, bet)
        _check_quota(db, user_id, now)
        _check_balance(lock_user(db, user_id), bet)
        db.rollback()
        raise reject(409, "concurrent_update", "Balance changed during the spin; try again")

    spin = Spin(user_id=user_id, bet=bet, outcome=outcome, delta=delta, created_at=now)
    db.add(spin)
    db.flush()
    new_points = db.scalar(select(User.points).where(User.id == user_id))
    spins_after = spins_today + 1
    spins_remaining = max(0, settings.daily_spin_limit - spins_after)

    event = {"userId": user_id, "bet": bet, "outcome": outcome, "delta": delta, "newPoints": new_points, "spinId": spin.id}
    enqueue_event(db, NotificationEvent.SPIN_CREATED, event)
    if outcome >= max(settings.big_win_floor, bet * settings.big_win_multiplier):
        enqueue_event(db, NotificationEvent.SPIN_BIG, event)
    enqueue_event(
        db,
        NotificationEvent.SPIN_STATUS,
        {"userId": user_id, "spinsToday": spins_after, "spinsRemaining": spins_remaining},
    )
    commit_unit(db, "spin")
    logger.info(
        "Spin completed user_id=%s bet=%s outcome=%s delta=%s new_points=%s spin_id=%s strategy=%s",
        user_id,
        bet,
        outcome,
        delta,
        new_points,
        spin.id,
        distribution.strategy,
    )

    return {
        "bet": bet,
        "outcome": outcome,
        "delta": delta,
        "newPoints": new_points,
        "spinId": spin.id,
        "tiers": distribution.tiers,
        "weights": distribution.weights,
        "percents": {str(tier): pct for tier, pct in distribution.percents.items()},
        "strategy": distribution.strategy,
        "spinsToday": spins_after,
        "spinsRemaining": spins_remaining,
    }
