"""
Point <-> currency conversion at a fixed rate.

Currency is held in integer micro-dollars, so a point is worth exactly
``settings.point_value_micros`` and a conversion debits on one side exactly
what it credits on the other.
"""
import math
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from arena.config import settings
from arena.db import commit_unit, lock_user
from arena.helpers import isoformat, parse_amount, reject, to_dollars, to_micros
from arena.logging_config import get_logger
from arena.models import User

logger = get_logger(__name__)


def account_balance(db: Session, user_id: int) -> dict:
    user = db.get(User, user_id)
    if user is None:
        raise reject(404, "user_not_found", "User not found")
    return {
        "points": int(user.points or 0),
        "balanceDollar": to_dollars(user.balance_micros),
        "pointsResetAt": isoformat(user.points_reset_at),
        "pointToUsd": settings.point_to_usd,
    }


def _balances(db: Session, user_id: int) -> tuple[int, int]:
    points, micros = db.execute(select(User.points, User.balance_micros).where(User.id == user_id)).one()
    return int(points or 0), int(micros or 0)


def convert_points(db: Session, user_id: int, points: Any = None) -> dict:
    """Turn points into currency; ``None`` converts the whole point balance."""
    requested = parse_amount(points, "points")
    if requested is not None and requested < 0:
        raise reject(400, "invalid_amount", "Invalid points")

    user = lock_user(db, user_id)
    have = int(user.points or 0)
    convert = have if requested is None else min(math.floor(requested), have)
    if convert <= 0:
        db.rollback()
        raise reject(400, "nothing_to_convert", "No points to convert", points=have)

    credit = convert * settings.point_value_micros
    result = db.execute(
        update(User)
        .where(User.id == user_id, User.points >= convert)
        .values(points=User.points - convert, balance_micros=User.balance_micros + credit)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise reject(409, "concurrent_update", "Balance changed during conversion; try again")
    points_after, micros_after = _balances(db, user_id)
    commit_unit(db, "convert.points")
    logger.info("Converted points user_id=%s points=%s credit_micros=%s", user_id, convert, credit)
    return {
        "convertedPoints": convert,
        "addedDollar": to_dollars(credit),
        "balanceDollar": to_dollars(micros_after),
        "pointsCurrent": points_after,
    }


def convert_currency(db: Session, user_id: int, amount: Any = None) -> dict:
    """
    Turn currency back into whole points; ``None`` converts the whole balance.
    Only the exact cost of the points granted is debited, the remainder stays.
    """
    requested = parse_amount(amount)
    if requested is not None and requested <= 0:
        raise reject(400, "invalid_amount", "Invalid amount")

    user = lock_user(db, user_id)
    balance = int(user.balance_micros or 0)
    spend = balance if requested is None else min(to_micros(requested), balance)
    if spend <= 0:
        db.rollback()
        raise reject(400, "insufficient_balance", "Insufficient balance", balance=to_dollars(balance))

    points_to_add = spend // settings.point_value_micros
    if points_to_add <= 0:
        db.rollback()
        raise reject(
            400,
            "amount_too_small",
            "Amount too small to convert to any points",
            minimum=to_dollars(settings.point_value_micros),
        )

    cost = points_to_add * settings.point_value_micros
    result = db.execute(
        update(User)
        .where(User.id == user_id, User.balance_micros >= cost)
        .values(points=User.points + points_to_add, balance_micros=User.balance_micros - cost)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise reject(409, "concurrent_update", "Balance changed during conversion; try again")
    points_after, micros_after = _balances(db, user_id)
    commit_unit(db, "convert.currency")
    logger.info("Converted currency user_id=%s cost_micros=%s points=%s", user_id, cost, points_to_add)
    return {
        "addedPoints": points_to_add,
        "deductedDollar": to_dollars(cost),
        "balanceDollar": to_dollars(micros_after),
        "pointsCurrent": points_after,
    }
