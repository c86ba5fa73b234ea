import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from fastapi import HTTPException, Request, status

from saheli.domain.errors import AuthorizationError
from saheli.domain.users.db_models import ROLE_CUSTOMER, ROLE_PROVIDER
from saheli.infra.logging import update_log_context
from saheli.settings import settings

SESSION_COOKIE_NAME = "saheli_session"


def _b64_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _b64_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str
    issued_at: datetime
    expires_at: datetime

    @property
    def is_provider(self) -> bool:
        return self.role == ROLE_PROVIDER


def _sign(body: bytes, secret: str) -> str:
    return _b64_encode(hmac.new(secret.encode(), body, hashlib.sha256).digest())


def issue_session_token(
    user_id: str,
    role: str,
    *,
    secret: str | None = None,
    ttl_minutes: int | None = None,
    issued_at: datetime | None = None,
) -> str:
    now = issued_at or datetime.now(timezone.utc)
    ttl = ttl_minutes if ttl_minutes is not None else settings.session_ttl_minutes
    payload = {
        "user_id": user_id,
        "role": role,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl)).timestamp()),
    }
    body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    return f"{_b64_encode(body)}.{_sign(body, secret or settings.session_secret)}"


def verify_session_token(token: str, *, secret: str | None = None, now: datetime | None = None) -> Identity:
    try:
        body_b64, sig_b64 = token.split(".", 1)
        body = _b64_decode(body_b64)
    except (ValueError, binascii.Error) as exc:
        raise ValueError("invalid_token_format") from exc

    if not hmac.compare_digest(_sign(body, secret or settings.session_secret), sig_b64):
        raise ValueError("invalid_token_signature")

    try:
        payload = json.loads(body.decode())
        identity = Identity(
            user_id=str(payload["user_id"]),
            role=str(payload["role"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        raise ValueError("invalid_token_payload") from exc

    if identity.expires_at < (now or datetime.now(timezone.utc)):
        raise ValueError("token_expired")
    return identity


def _extract_token(request: Request) -> str | None:
    header = request.headers.get("Authorization")
    if header and header.startswith("Bearer "):
        return header.split(" ", 1)[1].strip() or None
    return request.cookies.get(SESSION_COOKIE_NAME)


async def require_identity(request: Request) -> Identity:
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    try:
        identity = verify_session_token(token)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or expired session") from exc
    request.state.identity = identity
    update_log_context(user_id=identity.user_id, role=identity.role)
    return identity


async def require_customer(request: Request) -> Identity:
    identity = await require_identity(request)
    if identity.role != ROLE_CUSTOMER:
        raise AuthorizationError("Only customers can perform this action")
    return identity


async def require_provider(request: Request) -> Identity:
    identity = await require_identity(request)
    if identity.role != ROLE_PROVIDER:
        raise AuthorizationError("Only service providers can perform this action")
    return identity
