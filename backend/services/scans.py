import json
import logging
from collections.abc import Mapping
from typing import Any, Literal, TypedDict

from backend.services.identity import User, resolve_attendance_key
from backend.services.sessions import AttendanceSession, Proof

logger = logging.getLogger(__name__)

ScanDecision = Literal[
    "ACCEPTED",
    "INVALID_PAYLOAD",
    "SESSION_INACTIVE",
    "TOKEN_MISMATCH",
    "ROLE_MISMATCH",
]

PAYLOAD_FIELDS = frozenset({"sessionId", "courseId", "token"})

SCAN_MESSAGES: dict[str, str] = {
    "ACCEPTED": "Scan accepted.",
    "INVALID_PAYLOAD": "The QR code format is not recognized.",
    "SESSION_INACTIVE": "This attendance session is no longer active.",
    "TOKEN_MISMATCH": "This QR code has already rotated. Scan the code currently on screen.",
    "ROLE_MISMATCH": "Only students can scan for attendance.",
}


class ScanResult(TypedDict):
    accepted: bool
    decision_code: ScanDecision
    message: str
    session_id: str | None
    course_id: str | None
    student_key: str | None


def _build_scan_result(
    decision_code: ScanDecision,
    *,
    session_id: str | None = None,
    course_id: str | None = None,
    student_key: str | None = None,
) -> ScanResult:
    return {
        "accepted": decision_code == "ACCEPTED",
        "decision_code": decision_code,
        "message": SCAN_MESSAGES[decision_code],
        "session_id": session_id,
        "course_id": course_id,
        "student_key": student_key,
    }


def parse_scan_payload(raw: str | bytes | Mapping[str, Any] | None) -> Proof | None:
    """
    Decode scanned text into a proof triple.

    Returns None unless the data is exactly {sessionId, courseId, token}
    with non-empty string values.
    """
    if raw is None:
        return None

    data: Any = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError):
            return None

    if not isinstance(data, Mapping) or set(data.keys()) != PAYLOAD_FIELDS:
        return None
    if not all(isinstance(data[field], str) and data[field] for field in PAYLOAD_FIELDS):
        return None

    return {
        "sessionId": data["sessionId"],
        "courseId": data["courseId"],
        "token": data["token"],
    }


def validate_scan(
    raw: str | bytes | Mapping[str, Any] | None,
    sessions: Mapping[str, AttendanceSession],
    caller: User | None,
    now: float,
) -> ScanResult:
    """
    Check a scan against the sessions the caller considers current.

    The first failing check decides the outcome. Duplicate submissions are
    not detected here; that belongs to the record store.
    """
    payload = parse_scan_payload(raw)
    if payload is None:
        logger.info("Scan rejected: INVALID_PAYLOAD (unparseable)")
        return _build_scan_result("INVALID_PAYLOAD")

    session_id = payload["sessionId"]
    session = sessions.get(session_id)
    if session is None or session.status(now) != "active":
        logger.info("Scan rejected: SESSION_INACTIVE (session=%s)", session_id)
        return _build_scan_result("SESSION_INACTIVE", session_id=session_id)

    if payload["courseId"] != session.course_id:
        logger.info("Scan rejected: INVALID_PAYLOAD (course mismatch for session=%s)", session_id)
        return _build_scan_result("INVALID_PAYLOAD", session_id=session_id)

    if not session.is_recent_token(payload["token"]):
        logger.info("Scan rejected: TOKEN_MISMATCH (session=%s)", session_id)
        return _build_scan_result("TOKEN_MISMATCH", session_id=session_id, course_id=session.course_id)

    if caller is None or caller.get("role") != "student":
        logger.info("Scan rejected: ROLE_MISMATCH (session=%s)", session_id)
        return _build_scan_result("ROLE_MISMATCH", session_id=session_id, course_id=session.course_id)

    return _build_scan_result(
        "ACCEPTED",
        session_id=session_id,
        course_id=session.course_id,
        student_key=resolve_attendance_key(caller),
    )
