import logging
import secrets
import sqlite3
import threading
from collections.abc import Callable
from typing import Any, cast

from backend.config import (
    DEFAULT_TOKEN_LIFETIME_MINUTES,
    DEFAULT_TOKEN_ROTATION_SECONDS,
    PROOF_TOKEN_BYTES,
    SEED_DEFAULT_COURSES,
)
from backend.services.identity import Role, User, resolve_attendance_key
from backend.services.persistence import StoreWriter
from backend.services.qr import decode_qr_image
from backend.services.records import AttendanceRecord, AttendanceStatus, RecordReconciler
from backend.services.reports import (
    ReportGenerator,
    StudentStats,
    global_presence_rate,
    project_courses,
    project_student,
    project_students,
)
from backend.services.scans import validate_scan
from backend.services.sessions import AttendanceSession, Course, Proof, SessionRegistry
from database.db import COURSES_KEY, RECORDS_KEY, USERS_KEY, load_items

logger = logging.getLogger(__name__)

DEFAULT_COURSES: list[Course] = [
    {
        "id": "c1",
        "code": "CS101",
        "name": "Introduction to Computer Science",
        "token_lifetime_minutes": 15,
        "token_rotation_seconds": 60,
        "lecturer_id": None,
    },
    {
        "id": "c2",
        "code": "CS302",
        "name": "Advanced Algorithms",
        "token_lifetime_minutes": 10,
        "token_rotation_seconds": 30,
        "lecturer_id": None,
    },
    {
        "id": "c3",
        "code": "DB101",
        "name": "Database Management Systems",
        "token_lifetime_minutes": 20,
        "token_rotation_seconds": 45,
        "lecturer_id": None,
    },
]

ALLOWED_ROLES: set[str] = {"student", "lecturer"}


class CourseNotFoundError(LookupError):
    pass


class UserNotFoundError(LookupError):
    pass


class SessionNotFoundError(LookupError):
    pass


class DuplicateUserError(ValueError):
    pass


class RoleConflictError(ValueError):
    pass


class InvalidCourseSettingsError(ValueError):
    pass


def _coerce_user(raw: dict[str, Any]) -> User | None:
    try:
        role = str(raw["role"]).lower()
        user: User = {
            "id": str(raw["id"]),
            "name": str(raw["name"]),
            "email": str(raw["email"]),
            "role": cast(Role, role),
            "student_id": str(raw["student_id"]) if raw.get("student_id") else None,
        }
    except (KeyError, TypeError):
        return None
    if role not in ALLOWED_ROLES:
        return None
    return user


def _coerce_course(raw: dict[str, Any]) -> Course | None:
    try:
        course: Course = {
            "id": str(raw["id"]),
            "code": str(raw["code"]),
            "name": str(raw["name"]),
            "token_lifetime_minutes": int(raw.get("token_lifetime_minutes") or DEFAULT_TOKEN_LIFETIME_MINUTES),
            "token_rotation_seconds": int(raw.get("token_rotation_seconds") or DEFAULT_TOKEN_ROTATION_SECONDS),
            "lecturer_id": str(raw["lecturer_id"]) if raw.get("lecturer_id") else None,
        }
    except (KeyError, TypeError, ValueError):
        return None
    if course["token_lifetime_minutes"] <= 0 or course["token_rotation_seconds"] <= 0:
        return None
    return course


class AttendanceEngine:
    """
    Process-wide attendance state: users, courses, live sessions and records.

    Built once per process (or once per test) and handed to whoever needs it.
    Every time-dependent call takes `now` as epoch seconds so callers decide
    which clock drives it.
    """

    def __init__(
        self,
        *,
        writer: StoreWriter | None = None,
        report_generator: ReportGenerator | None = None,
        token_bytes: int = PROOF_TOKEN_BYTES,
        seed_courses: bool = SEED_DEFAULT_COURSES,
    ):
        self._lock = threading.Lock()
        self._users: list[User] = []
        self._courses: dict[str, Course] = {}
        self.seed_courses = seed_courses

        self.writer = writer or StoreWriter()
        self.sessions = SessionRegistry(token_bytes=token_bytes)
        self.records = RecordReconciler(on_change=self._records_changed)
        self.report_generator = report_generator or ReportGenerator()

        self.writer.register(USERS_KEY, self._users_snapshot)
        self.writer.register(COURSES_KEY, self._courses_snapshot)
        self.writer.register(RECORDS_KEY, lambda: [dict(r) for r in self.records.records()])

    # -----------------------------
    # Persistence plumbing
    # -----------------------------
    def _users_snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(u) for u in self._users]

    def _courses_snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(c) for c in self._courses.values()]

    def _records_changed(self) -> None:
        self.writer.mark_dirty(RECORDS_KEY)

    def load_from_store(self, load_fn: Callable[[str], list[dict[str, Any]] | None] = load_items) -> None:
        def _load(key: str) -> list[dict[str, Any]]:
            try:
                return load_fn(key) or []
            except (sqlite3.Error, ValueError) as e:
                logger.error("Could not load %s, starting empty: %s", key, e)
                return []

        users = [u for u in (_coerce_user(raw) for raw in _load(USERS_KEY)) if u]
        courses = [c for c in (_coerce_course(raw) for raw in _load(COURSES_KEY)) if c]
        with self._lock:
            self._users = users
            self._courses = {c["id"]: c for c in courses}
        kept = self.records.load(_load(RECORDS_KEY))

        if not courses and self.seed_courses:
            self._seed_courses()
        logger.info("Loaded %d users, %d courses, %d records", len(users), len(self._courses), kept)

    def _seed_courses(self) -> None:
        with self._lock:
            self._courses = {c["id"]: cast(Course, dict(c)) for c in DEFAULT_COURSES}
        self.writer.mark_dirty(COURSES_KEY)

    # -----------------------------
    # Users
    # -----------------------------
    def register_user(self, *, name: str, email: str, role: str, student_id: str | None = None) -> User:
        name = (name or "").strip()
        email = (email or "").strip()
        role = (role or "").strip().lower()
        student_id = (student_id or "").strip() or None

        if not name or not email:
            raise ValueError("Name and email are required.")
        if role not in ALLOWED_ROLES:
            raise ValueError(f"Unknown role: {role}")
        if role != "student":
            student_id = None

        user: User = {
            "id": f"u-{secrets.token_hex(6)}",
            "name": name,
            "email": email,
            "role": cast(Role, role),
            "student_id": student_id,
        }
        key = resolve_attendance_key(user)
        with self._lock:
            for existing in self._users:
                if existing["email"].lower() == email.lower():
                    raise DuplicateUserError("This email is already associated with an account.")
                if role == "student" and existing["role"] == "student" and resolve_attendance_key(existing) == key:
                    raise DuplicateUserError("This student ID is already registered.")
            self._users.append(user)
        self.writer.mark_dirty(USERS_KEY)
        logger.info("Registered %s %s", role, user["id"])
        return cast(User, dict(user))

    def find_user(self, identifier: str) -> User | None:
        needle = (identifier or "").strip().lower()
        if not needle:
            return None
        with self._lock:
            for user in self._users:
                if user["email"].lower() == needle:
                    return cast(User, dict(user))
                if user["student_id"] and user["student_id"].lower() == needle:
                    return cast(User, dict(user))
        return None

    def get_user(self, user_id: str) -> User:
        with self._lock:
            for user in self._users:
                if user["id"] == user_id:
                    return cast(User, dict(user))
        raise UserNotFoundError(user_id)

    def login(self, identifier: str, expected_role: str | None = None) -> User:
        user = self.find_user(identifier)
        if user is None:
            raise UserNotFoundError("No matching credentials. Please sign up first.")
        if expected_role and user["role"] != expected_role.strip().lower():
            raise RoleConflictError(
                f"This account is registered as a {user['role']}. Please select the correct portal."
            )
        return user

    def students(self) -> list[User]:
        with self._lock:
            return [cast(User, dict(u)) for u in self._users if u["role"] == "student"]

    def users(self) -> list[User]:
        with self._lock:
            return [cast(User, dict(u)) for u in self._users]

    # -----------------------------
    # Courses
    # -----------------------------
    def list_courses(self) -> list[Course]:
        with self._lock:
            return [cast(Course, dict(c)) for c in self._courses.values()]

    def get_course(self, course_id: str) -> Course:
        with self._lock:
            course = self._courses.get(course_id)
            if course is None:
                raise CourseNotFoundError(course_id)
            return cast(Course, dict(course))

    def update_course_settings(
        self,
        course_id: str,
        *,
        token_lifetime_minutes: int | None = None,
        token_rotation_seconds: int | None = None,
    ) -> Course:
        with self._lock:
            course = self._courses.get(course_id)
            if course is None:
                raise CourseNotFoundError(course_id)
            lifetime = course["token_lifetime_minutes"] if token_lifetime_minutes is None else token_lifetime_minutes
            rotation = course["token_rotation_seconds"] if token_rotation_seconds is None else token_rotation_seconds
            if lifetime <= 0 or rotation <= 0:
                raise InvalidCourseSettingsError("Lifetime and rotation must be positive.")
            if rotation > lifetime * 60:
                raise InvalidCourseSettingsError("Rotation interval cannot exceed the session lifetime.")
            # Running sessions keep the values they were opened with.
            course["token_lifetime_minutes"] = lifetime
            course["token_rotation_seconds"] = rotation
            updated = cast(Course, dict(course))
        self.writer.mark_dirty(COURSES_KEY)
        logger.info("Course %s settings: lifetime=%smin rotation=%ss", course_id, lifetime, rotation)
        return updated

    # -----------------------------
    # Sessions
    # -----------------------------
    def open_session(self, course_id: str, now: float) -> AttendanceSession:
        return self.sessions.open(self.get_course(course_id), now)

    def get_session(self, session_id: str) -> AttendanceSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def current_proof(self, session_id: str, now: float) -> Proof | None:
        session = self.get_session(session_id)
        session.tick(now)
        return session.current_proof(now)

    def roster(self, session_id: str, now: float) -> list[dict[str, Any]]:
        session = self.get_session(session_id)
        session.tick(now)
        by_key = {r["student_key"]: r for r in self.records.records(session_id=session_id)}
        return [
            {
                "id": student["id"],
                "name": student["name"],
                "email": student["email"],
                "student_key": resolve_attendance_key(student),
                "record": by_key.get(resolve_attendance_key(student)),
            }
            for student in self.students()
        ]

    def tick(self, now: float) -> None:
        self.sessions.tick(now)
        if self.writer.pending:
            self.writer.flush()

    # -----------------------------
    # Attendance
    # -----------------------------
    def submit_scan(self, raw: Any, caller: User | None, now: float) -> dict[str, Any]:
        self.sessions.tick(now)
        result = validate_scan(raw, self.sessions.snapshot(), caller, now)
        if not result["accepted"] or caller is None:
            return {**result, "record": None}

        outcome = self.records.submit_self_scan(
            result["student_key"] or "",
            caller["name"],
            session_id=cast(str, result["session_id"]),
            course_id=cast(str, result["course_id"]),
            now=now,
        )
        return {
            **result,
            "accepted": outcome["ok"],
            "decision_code": outcome["decision_code"],
            "message": outcome["message"],
            "record": outcome["record"],
        }

    def submit_scan_image(self, data: bytes, caller: User | None, now: float) -> dict[str, Any]:
        return self.submit_scan(decode_qr_image(data), caller, now)

    def apply_override(self, user_id: str, session_id: str, status: AttendanceStatus, now: float) -> dict[str, Any]:
        student = self.get_user(user_id)
        session = self.sessions.get(session_id)
        if session is not None:
            course_id = session.course_id
        else:
            # Sessions are not persisted; past ones are known through their records.
            known = self.records.records(session_id=session_id)
            if not known:
                raise SessionNotFoundError(session_id)
            course_id = known[0]["course_id"]

        outcome = self.records.apply_override(
            resolve_attendance_key(student),
            student["name"],
            session_id=session_id,
            course_id=course_id,
            status=status,
            now=now,
        )
        return dict(outcome)

    def list_records(
        self,
        *,
        course_id: str | None = None,
        session_id: str | None = None,
        student_key: str | None = None,
    ) -> list[AttendanceRecord]:
        return self.records.records(course_id=course_id, session_id=session_id, student_key=student_key)

    # -----------------------------
    # Reports
    # -----------------------------
    def student_stats(self) -> list[dict]:
        return project_students(self.users(), self.records.records())

    def stats_for_student(self, student_key: str) -> StudentStats:
        return project_student(self.records.records(student_key=student_key), student_key)

    def course_stats(self) -> dict[str, Any]:
        records = self.records.records()
        return {
            "courses": project_courses(self.list_courses(), records),
            "global_presence_rate": global_presence_rate(records),
        }

    def generate_report(self, course_id: str | None = None) -> str:
        if course_id is None:
            return self.report_generator.generate_report(self.records.records(), "All Courses Combined")
        course = self.get_course(course_id)
        return self.report_generator.generate_report(
            self.records.records(course_id=course_id),
            course["name"],
        )

    # -----------------------------
    # Reset
    # -----------------------------
    def reset(self) -> None:
        self.sessions.clear()
        with self._lock:
            self._users = []
            self._courses = {}
        self.records.clear()
        if self.seed_courses:
            self._seed_courses()
        self.writer.mark_dirty(USERS_KEY)
        self.writer.mark_dirty(COURSES_KEY)
        logger.info("Store reset")
