import logging
import secrets
import threading
from datetime import datetime, timezone
from typing import Literal, TypedDict

from backend.config import PROOF_TOKEN_BYTES
from backend.services.tokens import TokenRotator

logger = logging.getLogger(__name__)

SessionStatus = Literal["active", "expired"]


class Course(TypedDict):
    id: str
    code: str
    name: str
    token_lifetime_minutes: int
    token_rotation_seconds: int
    lecturer_id: str | None


class Proof(TypedDict):
    sessionId: str
    courseId: str
    token: str


def iso_timestamp(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")


class AttendanceSession:
    """
    One attendance window for a course.

    Active until wall-clock time reaches `expires_at`, then Expired for good.
    The rotator is frozen on expiry so no token is issued afterwards.

    The ticker and request threads both drive the same session, so every
    rotator access goes through the session lock.
    """

    def __init__(self, session_id: str, course: Course, now: float, *, token_bytes: int = PROOF_TOKEN_BYTES):
        self.id = session_id
        self.course_id = course["id"]
        self.start_time = now
        self.expires_at = now + course["token_lifetime_minutes"] * 60
        self._lock = threading.Lock()
        self._rotator = TokenRotator(course["token_rotation_seconds"], now, token_bytes=token_bytes)
        self._expired = False

    @property
    def current_token(self) -> str:
        with self._lock:
            return self._rotator.current_token

    @property
    def token_issued_at(self) -> float:
        with self._lock:
            return self._rotator.issued_at

    @property
    def rotation_seconds(self) -> float:
        return self._rotator.rotation_seconds

    def _status(self, now: float) -> SessionStatus:
        # Caller holds self._lock.
        if self._expired:
            return "expired"
        if now >= self.expires_at:
            self._expired = True
            self._rotator.freeze()
            logger.info("Session %s for course %s expired", self.id, self.course_id)
            return "expired"
        return "active"

    def status(self, now: float) -> SessionStatus:
        with self._lock:
            return self._status(now)

    def tick(self, now: float) -> SessionStatus:
        with self._lock:
            if self._status(now) == "expired":
                return "expired"
            if self._rotator.tick(now):
                logger.debug("Session %s rotated its proof token", self.id)
            return "active"

    def current_proof(self, now: float) -> Proof | None:
        with self._lock:
            if self._status(now) == "expired":
                return None
            return {
                "sessionId": self.id,
                "courseId": self.course_id,
                "token": self._rotator.current_token,
            }

    def is_recent_token(self, value: str) -> bool:
        with self._lock:
            return self._rotator.is_recent_token(value)

    def to_dict(self, now: float) -> dict:
        with self._lock:
            status = self._status(now)
            issued_at = self._rotator.issued_at
        return {
            "id": self.id,
            "course_id": self.course_id,
            "status": status,
            "start_time": iso_timestamp(self.start_time),
            "expires_at": iso_timestamp(self.expires_at),
            "token_issued_at": iso_timestamp(issued_at),
            "rotation_seconds": self.rotation_seconds,
            "seconds_remaining": max(0, int(self.expires_at - now)),
        }


class SessionRegistry:
    """In-memory sessions, keyed by id. Never persisted."""

    def __init__(self, *, token_bytes: int = PROOF_TOKEN_BYTES):
        self._lock = threading.Lock()
        self._sessions: dict[str, AttendanceSession] = {}
        self._latest_by_course: dict[str, str] = {}
        self._token_bytes = token_bytes

    def open(self, course: Course, now: float) -> AttendanceSession:
        session_id = f"session-{secrets.token_hex(8)}"
        session = AttendanceSession(session_id, course, now, token_bytes=self._token_bytes)
        with self._lock:
            self._sessions[session_id] = session
            self._latest_by_course[course["id"]] = session_id
        logger.info(
            "Opened session %s for course %s (lifetime=%smin, rotation=%ss)",
            session_id,
            course["id"],
            course["token_lifetime_minutes"],
            course["token_rotation_seconds"],
        )
        return session

    def get(self, session_id: str) -> AttendanceSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def latest_for_course(self, course_id: str) -> AttendanceSession | None:
        with self._lock:
            session_id = self._latest_by_course.get(course_id)
            if session_id is None:
                return None
            return self._sessions.get(session_id)

    def snapshot(self) -> dict[str, AttendanceSession]:
        with self._lock:
            return dict(self._sessions)

    def tick(self, now: float) -> None:
        with self._lock:
            latest = set(self._latest_by_course.values())
            stale: list[str] = []
            for session_id, session in self._sessions.items():
                if session.tick(now) == "expired" and session_id not in latest:
                    stale.append(session_id)
            # Superseded expired sessions are unknown from now on; scans
            # against them still come back SESSION_INACTIVE.
            for session_id in stale:
                del self._sessions[session_id]

    def clear(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._latest_by_course.clear()
