from fastapi import HTTPException
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from arena.helpers import reject
from arena.logging_config import get_logger
from arena.models import IdempotencyKey, User

logger = get_logger(__name__)


def get_idempotent_response(db: Session, user_id: int, key: str, body_hash: str):
    existing = db.query(IdempotencyKey).filter_by(user_id=user_id, key=key).first()
    if existing:
        if existing.request_hash != body_hash:
            raise reject(409, "idempotency_conflict", "Idempotency key was used with a different request")
        return existing.response_body
    return None


def store_idempotency(db: Session, user_id: int, key: str, body_hash: str, response_body: dict):
    record = IdempotencyKey(user_id=user_id, key=key, request_hash=body_hash, response_body=response_body)
    db.add(record)
    commit_unit(db, "idempotency.store")
    return response_body


def lock_user(db: Session, user_id: int) -> User:
    """
    Load the user row for update. The lock holds until the caller commits or
    rolls back; SQLite ignores FOR UPDATE and serialises writers itself.
    """
    user = db.execute(select(User).where(User.id == user_id).with_for_update()).scalar_one_or_none()
    if user is None:
        raise reject(404, "user_not_found", "User not found")
    return user


def commit_unit(db: Session, label: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Commit failed for %s; changes rolled back", label)
        raise HTTPException(status_code=500, detail={"code": "persistence_error", "error": "Server error"})
