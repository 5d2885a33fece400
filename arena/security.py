import hashlib
import hmac
import json
import time

from fastapi import Depends, Header
from pydantic import BaseModel

from arena.config import Role, settings
from arena.helpers import reject


class Identity(BaseModel):
    user_id: int
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


def compute_signature(body: dict, timestamp: str) -> str:
    message = f"{timestamp}:{json.dumps(body, sort_keys=True)}".encode()
    return hmac.new(settings.hmac_secret.encode(), message, hashlib.sha256).hexdigest()


def validate_signature(body: dict, signature: str, timestamp: str):
    expected = compute_signature(body, timestamp)
    try:
        sent_at = int(timestamp)
    except ValueError:
        raise reject(401, "timestamp_skew", "timestamp skew") from None
    if abs(int(time.time()) - sent_at) > settings.timestamp_skew_seconds:
        raise reject(401, "timestamp_skew", "timestamp skew")
    if not hmac.compare_digest(expected, signature):
        raise reject(401, "invalid_signature", "invalid signature")


def require_bearer_token(authorization: str | None = Header(None, alias="Authorization")):
    """
    FastAPI dependency to enforce Authorization: Bearer <token> when configured.
    """
    if not settings.bearer_token:
        return
    if not authorization or not authorization.startswith("Bearer "):
        raise reject(401, "unauthorized", "Unauthorized")
    token = authorization.split(" ", 1)[1].strip()
    if not hmac.compare_digest(token, settings.bearer_token):
        raise reject(401, "unauthorized", "Unauthorized")


def get_identity(
    _auth=Depends(require_bearer_token),
    x_user_id: str | None = Header(None),
    x_user_role: str | None = Header(None),
    x_signature: str | None = Header(None),
    x_timestamp: str | None = Header(None),
) -> Identity:
    """
    Resolve the caller from the identity headers set by the auth gateway.
    A signature over ``{"userId", "role"}`` is checked when present and
    required when ``REQUIRE_SIGNED_IDENTITY`` is on.
    """
    if not x_user_id:
        raise reject(401, "unauthorized", "Missing user identity")
    try:
        user_id = int(x_user_id)
        role = Role((x_user_role or Role.USER.value).lower())
    except ValueError:
        raise reject(401, "unauthorized", "Invalid user identity") from None
    if x_signature and x_timestamp:
        validate_signature({"userId": user_id, "role": role.value}, x_signature, x_timestamp)
    elif settings.require_signed_identity:
        raise reject(401, "invalid_signature", "signed identity required")
    return Identity(user_id=user_id, role=role)


def require_admin(identity: Identity = Depends(get_identity)) -> Identity:
    if not identity.is_admin:
        raise reject(403, "admin_required", "Not authorized")
    return identity
