from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, Field


class SpinRequest(BaseModel):
    # validated by the spin coordinator after the kill-switch check
    bet: Any = None

class SpinControlUpdate(BaseModel):
    disabled: bool = False
    reason: Optional[str] = ""

class SpinControlState(BaseModel):
    disabled: bool
    reason: str
    updatedBy: Optional[int] = None
    updatedAt: Optional[str] = None

class SpinStatus(BaseModel):
    spinsToday: int
    spinsRemaining: int
    dailyLimit: int
    resetsAt: str

class ConvertPointsRequest(BaseModel):
    points: Any = None

class ConvertCurrencyRequest(BaseModel):
    amount: Any = None

class WithdrawalCreate(BaseModel):
    amount: Any = None
    contact: Optional[str] = Field(None, validation_alias=AliasChoices("contact", "phone"))

class WithdrawalRejection(BaseModel):
    note: Optional[str] = ""

class WithdrawalSummaryResponse(BaseModel):
    spent24: float
    pending24: float
    remainingVerified: float
    remainingIncludingPending: float
    cap: float
    nextAllowedAt: Optional[str] = None

class BalanceResponse(BaseModel):
    points: int
    balanceDollar: float
    pointsResetAt: Optional[str] = None
    pointToUsd: float
