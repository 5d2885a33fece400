from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import AnyHttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MICROS_PER_DOLLAR = 1_000_000


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    db_url: str = "sqlite:///./arena.db"
    log_level: str = "INFO"

    # gateway / identity
    bearer_token: Optional[str] = None
    hmac_secret: str = "change_secret"
    require_signed_identity: bool = False
    timestamp_skew_seconds: int = 5

    # broadcast delivery
    notify_url: Optional[AnyHttpUrl] = None
    outbox_worker_enabled: bool = True
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    rate_limit_per_minute: int = 60

    # spin game
    min_bet: int = 10
    max_bet: int = 100
    daily_spin_limit: int = 5
    jackpot_base_probability: float = 0.001
    big_win_floor: int = 1000
    big_win_multiplier: int = 5

    # accounting
    point_to_usd: float = 0.003
    withdrawal_cap_usd: float = 100.0
    min_withdrawal_usd: float = 30.0
    withdrawal_window_hours: int = 24

    @field_validator("point_to_usd")
    @classmethod
    def _whole_micros(cls, value: float) -> float:
        micros = Decimal(str(value)) * MICROS_PER_DOLLAR
        if micros <= 0 or micros != micros.to_integral_value():
            raise ValueError("point_to_usd must be a positive whole number of micro-dollars")
        return value

    @property
    def point_value_micros(self) -> int:
        return int(Decimal(str(self.point_to_usd)) * MICROS_PER_DOLLAR)

    @property
    def withdrawal_cap_micros(self) -> int:
        return int(Decimal(str(self.withdrawal_cap_usd)) * MICROS_PER_DOLLAR)

    @property
    def min_withdrawal_micros(self) -> int:
        return int(Decimal(str(self.min_withdrawal_usd)) * MICROS_PER_DOLLAR)

settings = Settings()

class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"

class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"

class NotificationEvent(str, Enum):
    SPIN_CREATED = "spin:created"
    SPIN_BIG = "spin:big"
    SPIN_STATUS = "spin:status"
    SPIN_CONTROL = "spin:control"
    WITHDRAWAL_NEW = "withdrawals:new"
    WITHDRAWAL_VERIFIED = "withdrawals:verified"
    WITHDRAWAL_REJECTED = "withdrawals:rejected"
    WITHDRAWAL_DELETED = "withdrawals:deleted"
