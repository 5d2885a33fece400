from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from arena.config import WithdrawalStatus
from arena.database import Base

SPIN_CONTROL_ID = 1

class User(Base):
    """Balance view of an account; rows are created by the account subsystem."""
    __tablename__ = "users"
    id = Column(Integer, primary_key=True)
    username = Column(String(128), unique=True, index=True, nullable=True)
    points = Column(BigInteger, nullable=False, default=0)
    balance_micros = Column(BigInteger, nullable=False, default=0)  # 1e-6 USD
    points_reset_at = Column(DateTime, nullable=True)
    points_updated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

class Spin(Base):
    __tablename__ = "spins"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    bet = Column(Integer, nullable=False)
    outcome = Column(Integer, nullable=False)
    delta = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False)
    __table_args__ = (Index("ix_spins_user_created", "user_id", "created_at"),)

class SpinControl(Base):
    """Single-row kill-switch; the row always has id SPIN_CONTROL_ID."""
    __tablename__ = "spin_control"
    id = Column(Integer, primary_key=True)
    disabled = Column(Boolean, nullable=False, default=False)
    reason = Column(String(1000), nullable=False, default="")
    updated_by = Column(Integer, nullable=True)
    updated_at = Column(DateTime, nullable=True)

class Withdrawal(Base):
    __tablename__ = "withdrawals"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    amount_micros = Column(BigInteger, nullable=False)
    contact = Column(String(64), nullable=False)
    status = Column(String(16), nullable=False, default=WithdrawalStatus.PENDING.value)
    requested_at = Column(DateTime, nullable=False)
    verified_at = Column(DateTime, nullable=True)  # review time, also set on reject
    verified_by = Column(Integer, nullable=True)
    note = Column(String(200), nullable=False, default="")
    __table_args__ = (
        Index("ix_withdrawals_user_requested", "user_id", "requested_at"),
        Index("ix_withdrawals_user_status", "user_id", "status"),
    )

class IdempotencyKey(Base):
    __tablename__ = "idempotency_keys"
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, nullable=False)
    key = Column(String, nullable=False)
    request_hash = Column(String, nullable=False)
    response_body = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    __table_args__ = (UniqueConstraint("user_id", "key", name="uq_idempotency_user_key"),)

class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"
    id = Column(Integer, primary_key=True)
    event_type = Column(String, nullable=False)
    target_url = Column(String, nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="pending")
    attempt_count = Column(Integer, default=0)
    next_attempt_at = Column(DateTime, nullable=True)
    last_error = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
