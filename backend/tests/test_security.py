import pytest
from fastapi import HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS
from backend.security import decode_session_token, issue_session_token, require_session


def test_token_round_trip_carries_role():
    token, claims = issue_session_token(" u-1 ", role="lecturer", now=1000)
    assert claims == {"sub": "u-1", "role": "lecturer", "iat": 1000, "exp": 1000 + AUTH_TOKEN_TTL_SECONDS}
    assert decode_session_token(token, now=1001) == claims


def test_expired_or_tampered_tokens_are_rejected():
    token, claims = issue_session_token("u-1", role="student", now=1000)
    assert decode_session_token(token, now=claims["exp"]) == claims
    assert decode_session_token(token, now=claims["exp"] + 1) is None

    body, _, mac = token.partition(".")
    forged, _ = issue_session_token("u-2", role="lecturer", now=1000)
    assert decode_session_token(f"{forged.partition('.')[0]}.{mac}", now=1001) is None
    assert decode_session_token(body, now=1001) is None
    assert decode_session_token(f"{body}.é", now=1001) is None
    assert decode_session_token("", now=1001) is None


def test_unknown_role_is_refused_at_issue():
    with pytest.raises(ValueError):
        issue_session_token("u-1", role="admin")


def test_require_session_reports_each_failure():
    token, _ = issue_session_token("u-1", role="student")
    assert require_session(f"Bearer {token}")["sub"] == "u-1"

    for header, detail in [
        (None, "Missing bearer token."),
        (f"Basic {token}", "Invalid authorization scheme."),
        ("Bearer ", "Invalid authorization scheme."),
        ("Bearer not.valid", "Invalid or expired session token."),
    ]:
        with pytest.raises(HTTPException) as exc:
            require_session(header)
        assert exc.value.status_code == 401
        assert exc.value.detail == detail
