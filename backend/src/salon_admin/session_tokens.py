from __future__ import annotations

import base64
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from .auth_store import ADMIN_ROLES


class SessionTokenError(ValueError):
    """Raised when admin session tokens are invalid or expired."""


@dataclass(frozen=True)
class SessionTokenPayload:
    admin_id: str
    username: str
    role: str
    expires_at: datetime


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(f"{data}{padding}".encode("ascii"))


def _sign(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), payload_b64.encode("ascii"), hashlib.sha256).hexdigest()


def create_session_token(
    *,
    admin_id: str,
    username: str,
    role: str,
    ttl_minutes: int,
    now: datetime | None = None,
) -> SessionTokenPayload:
    if role not in ADMIN_ROLES:
        raise SessionTokenError(f"unsupported role: {role}")
    if ttl_minutes < 1:
        raise SessionTokenError("session ttl must be >= 1 minute")
    issued_at = now or datetime.now(timezone.utc)
    return SessionTokenPayload(
        admin_id=admin_id,
        username=username,
        role=role,
        expires_at=issued_at + timedelta(minutes=ttl_minutes),
    )


def encode_session_token(payload: SessionTokenPayload, *, secret: str) -> str:
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_json = json.dumps(
        {
            "sub": payload.admin_id,
            "usr": payload.username,
            "role": payload.role,
            "exp": int(payload.expires_at.timestamp()),
        },
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
    payload_b64 = _b64url_encode(payload_json)
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def decode_session_token(token: str, *, secret: str, now: datetime | None = None) -> SessionTokenPayload:
    if not token or "." not in token:
        raise SessionTokenError("invalid token format")
    if not secret:
        raise SessionTokenError("session token secret is empty")

    payload_b64, signature = token.rsplit(".", 1)
    if not hmac.compare_digest(signature, _sign(payload_b64, secret)):
        raise SessionTokenError("token signature mismatch")

    try:
        payload_obj = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
    except Exception as exc:  # noqa: BLE001
        raise SessionTokenError("token payload decoding failed") from exc

    admin_id = str(payload_obj.get("sub", "")).strip()
    if not admin_id:
        raise SessionTokenError("token subject missing")
    role = str(payload_obj.get("role", ""))
    if role not in ADMIN_ROLES:
        raise SessionTokenError("token role invalid")

    try:
        exp = int(payload_obj["exp"])
    except Exception as exc:  # noqa: BLE001
        raise SessionTokenError("token expiration missing") from exc

    expires_at = datetime.fromtimestamp(exp, tz=timezone.utc)
    reference_now = now or datetime.now(timezone.utc)
    if expires_at <= reference_now:
        raise SessionTokenError("token expired")

    return SessionTokenPayload(
        admin_id=admin_id,
        username=str(payload_obj.get("usr", "")),
        role=role,
        expires_at=expires_at,
    )
