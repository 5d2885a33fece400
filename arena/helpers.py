import asyncio
import hashlib
import json
import math
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, List

import httpx
from fastapi import HTTPException

from arena.config import MICROS_PER_DOLLAR, settings
from arena.models import NotificationOutbox, Spin, Withdrawal


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat().replace("+00:00", "Z")


def hash_request(body: dict) -> str:
    return hashlib.sha256(json.dumps(body, sort_keys=True).encode()).hexdigest()


def reject(status_code: int, code: str, message: str, **extra: Any) -> HTTPException:
    return HTTPException(status_code=status_code, detail={"code": code, "error": message, **extra})


def parse_amount(value: Any, field: str = "amount") -> float | None:
    """
    Accept a JSON number (or numeric string) and return it as a finite float.
    ``None`` means "not given".
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise reject(400, "invalid_amount", f"Invalid {field}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise reject(400, "invalid_amount", f"Invalid {field}") from None
    if not math.isfinite(number):
        raise reject(400, "invalid_amount", f"Invalid {field}")
    return number


def to_micros(dollars: float) -> int:
    try:
        exact = Decimal(str(dollars)) * MICROS_PER_DOLLAR
    except InvalidOperation:
        raise reject(400, "invalid_amount", "Invalid amount") from None
    return int(exact.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_dollars(micros: int | None) -> float:
    return round((micros or 0) / MICROS_PER_DOLLAR, 6)


def serialize_spin(spin: Spin) -> dict:
    return {
        "id": spin.id,
        "userId": spin.user_id,
        "bet": spin.bet,
        "outcome": spin.outcome,
        "delta": spin.delta,
        "createdAt": isoformat(spin.created_at),
    }


def serialize_withdrawal(record: Withdrawal) -> dict:
    return {
        "id": record.id,
        "userId": record.user_id,
        "amount": to_dollars(record.amount_micros),
        "contact": record.contact,
        "status": record.status,
        "requestedAt": isoformat(record.requested_at),
        "verifiedAt": isoformat(record.verified_at),
        "verifiedBy": record.verified_by,
        "note": record.note or "",
    }


def serialize_outbox(record: NotificationOutbox) -> dict:
    return {
        "id": record.id,
        "eventType": record.event_type,
        "targetUrl": record.target_url,
        "status": record.status,
        "attemptCount": record.attempt_count,
        "nextAttemptAt": isoformat(record.next_attempt_at),
        "lastError": record.last_error,
        "createdAt": isoformat(record.created_at),
        "payload": record.payload,
    }


class BroadcastClient:
    def __init__(
        self,
        rate_limit_per_minute: int | None = None,
        max_retries: int | None = None,
        retry_backoff_seconds: float | None = None,
    ):
        self.client = httpx.AsyncClient(timeout=10.0)
        self._tokens: List[float] = []
        self.rate_limit_per_minute = rate_limit_per_minute if rate_limit_per_minute is not None else settings.rate_limit_per_minute
        self.max_retries = max_retries if max_retries is not None else settings.max_retries
        self.retry_backoff_seconds = retry_backoff_seconds if retry_backoff_seconds is not None else settings.retry_backoff_seconds

    async def _respect_rate_limit(self) -> bool:
        now = time.time()
        self._tokens = [t for t in self._tokens if now - t < 60]
        if len(self._tokens) >= self.rate_limit_per_minute:
            return False
        self._tokens.append(time.time())
        return True

    async def _request_with_retry(self, method: str, url: str, json: dict) -> httpx.Response:
        retries = 0
        backoff = self.retry_backoff_seconds
        while retries <= self.max_retries:
            allowed = await self._respect_rate_limit()
            if not allowed:
                headers = {"Retry-After": str(backoff)}
                return httpx.Response(status_code=429, headers=headers, request=httpx.Request(method, url))
            response = await self.client.request(method, url, json=json)
            if response.status_code == 429:
                retry_after = response.headers.get("Retry-After")
                wait = float(retry_after) if retry_after else backoff
                await asyncio.sleep(wait)
                retries += 1
                backoff *= 2
                continue
            if response.status_code >= 500:
                if retries == self.max_retries:
                    return response
                await asyncio.sleep(backoff)
                retries += 1
                backoff *= 2
                continue
            return response
        return response

    async def publish(self, url: str, event_type: str, payload: dict) -> httpx.Response:
        return await self._request_with_retry("POST", url, json={"event": event_type, "data": payload})
