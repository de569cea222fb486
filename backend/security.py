import base64
import hashlib
import hmac
import json
import time
from typing import Any, TypedDict, cast

from fastapi import Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY

ROLES = ("student", "lecturer")


class SessionClaims(TypedDict):
    sub: str
    role: str
    iat: int
    exp: int


def _encode_segment(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _decode_segment(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _signature(body: str) -> bytes:
    mac = hmac.new(SIGNING_KEY.encode("utf-8"), body.encode("utf-8"), hashlib.sha256)
    return _encode_segment(mac.digest()).encode("ascii")


def issue_session_token(user_id: str, *, role: str, now: float | None = None) -> tuple[str, SessionClaims]:
    """
    Token layout is `<claims>.<mac>`, both base64url without padding.
    The claims carry the account id and its role at sign-in time.
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role}")

    issued_at = int(time.time() if now is None else now)
    claims: SessionClaims = {
        "sub": user_id.strip(),
        "role": role,
        "iat": issued_at,
        "exp": issued_at + AUTH_TOKEN_TTL_SECONDS,
    }
    body = _encode_segment(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{body}.{_signature(body).decode('ascii')}", claims


def _claims_ok(payload: Any, now: int) -> bool:
    if not isinstance(payload, dict):
        return False
    sub = payload.get("sub")
    exp = payload.get("exp")
    return (
        isinstance(sub, str)
        and bool(sub.strip())
        and payload.get("role") in ROLES
        and isinstance(exp, int)
        and exp >= now
    )


def decode_session_token(token: str, *, now: float | None = None) -> SessionClaims | None:
    body, dot, mac = (token or "").partition(".")
    if not dot or not hmac.compare_digest(mac.encode("utf-8"), _signature(body)):
        return None

    try:
        payload = json.loads(_decode_segment(body))
    except ValueError:
        # Covers bad base64, bad UTF-8 and bad JSON.
        return None

    checked_at = int(time.time() if now is None else now)
    return cast(SessionClaims, payload) if _claims_ok(payload, checked_at) else None


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")
    return token.strip()


def require_session(authorization: str | None = Header(default=None)) -> SessionClaims:
    claims = decode_session_token(_bearer_token(authorization))
    if claims is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    return claims
