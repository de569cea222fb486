import logging
import secrets
import threading
from collections.abc import Callable, Iterable
from typing import Any, Literal, TypedDict, cast

from backend.services.sessions import iso_timestamp

logger = logging.getLogger(__name__)

AttendanceStatus = Literal["present", "absent"]
ReconcileDecision = Literal["RECORDED", "UPDATED", "UNCHANGED", "DUPLICATE_SUBMISSION"]

ALLOWED_STATUSES: set[str] = {"present", "absent"}


class AttendanceRecord(TypedDict):
    id: str
    course_id: str
    session_id: str
    student_key: str
    student_name: str
    status: AttendanceStatus
    timestamp: str


class ReconcileResult(TypedDict):
    ok: bool
    decision_code: ReconcileDecision
    message: str
    record: AttendanceRecord | None


def _normalize_key(student_key: str) -> str:
    return (student_key or "").strip().lower()


def _copy(record: AttendanceRecord) -> AttendanceRecord:
    return cast(AttendanceRecord, dict(record))


def _coerce_record(raw: dict[str, Any]) -> AttendanceRecord | None:
    try:
        record: AttendanceRecord = {
            "id": str(raw["id"]),
            "course_id": str(raw["course_id"]),
            "session_id": str(raw["session_id"]),
            "student_key": _normalize_key(str(raw["student_key"])),
            "student_name": str(raw.get("student_name") or ""),
            "status": raw["status"],
            "timestamp": str(raw["timestamp"]),
        }
    except (KeyError, TypeError):
        return None
    if record["status"] not in ALLOWED_STATUSES or not record["student_key"]:
        return None
    return record


class RecordReconciler:
    """
    Attendance records, unique per (student_key, session_id).

    Self-scans insert at most once. Overrides upsert and always win. Both run
    their lookup and write under one lock, so concurrent first scans for the
    same student cannot both insert.
    """

    def __init__(self, on_change: Callable[[], None] | None = None):
        self._lock = threading.Lock()
        self._records: list[AttendanceRecord] = []
        self._index: dict[tuple[str, str], AttendanceRecord] = {}
        self._on_change = on_change

    def _notify(self) -> None:
        if self._on_change is not None:
            self._on_change()

    def _insert(
        self,
        *,
        student_key: str,
        student_name: str,
        session_id: str,
        course_id: str,
        status: AttendanceStatus,
        now: float,
    ) -> AttendanceRecord:
        record: AttendanceRecord = {
            "id": f"rec-{secrets.token_hex(8)}",
            "course_id": course_id,
            "session_id": session_id,
            "student_key": student_key,
            "student_name": student_name,
            "status": status,
            "timestamp": iso_timestamp(now),
        }
        self._records.append(record)
        self._index[(student_key, session_id)] = record
        return record

    def submit_self_scan(
        self,
        student_key: str,
        student_name: str,
        *,
        session_id: str,
        course_id: str,
        now: float,
    ) -> ReconcileResult:
        key = _normalize_key(student_key)
        with self._lock:
            existing = self._index.get((key, session_id))
            if existing is not None:
                logger.info("Duplicate self-scan ignored for session=%s", session_id)
                return {
                    "ok": False,
                    "decision_code": "DUPLICATE_SUBMISSION",
                    "message": "Your attendance for this session has already been recorded.",
                    "record": _copy(existing),
                }
            record = self._insert(
                student_key=key,
                student_name=student_name,
                session_id=session_id,
                course_id=course_id,
                status="present",
                now=now,
            )
            snapshot = _copy(record)
        self._notify()
        return {
            "ok": True,
            "decision_code": "RECORDED",
            "message": "Attendance recorded.",
            "record": snapshot,
        }

    def apply_override(
        self,
        student_key: str,
        student_name: str,
        *,
        session_id: str,
        course_id: str,
        status: AttendanceStatus,
        now: float,
    ) -> ReconcileResult:
        if status not in ALLOWED_STATUSES:
            raise ValueError(f"Invalid attendance status: {status!r}")

        key = _normalize_key(student_key)
        with self._lock:
            existing = self._index.get((key, session_id))
            if existing is None:
                record = self._insert(
                    student_key=key,
                    student_name=student_name,
                    session_id=session_id,
                    course_id=course_id,
                    status=status,
                    now=now,
                )
                decision: ReconcileDecision = "RECORDED"
            elif existing["status"] == status:
                record = existing
                decision = "UNCHANGED"
            else:
                existing["status"] = status
                existing["timestamp"] = iso_timestamp(now)
                record = existing
                decision = "UPDATED"
            snapshot = _copy(record)

        if decision != "UNCHANGED":
            logger.info("Override %s for session=%s status=%s", decision, session_id, status)
            self._notify()
        return {
            "ok": True,
            "decision_code": decision,
            "message": f"{student_name or key} marked as {status}.",
            "record": snapshot,
        }

    def find(self, student_key: str, session_id: str) -> AttendanceRecord | None:
        with self._lock:
            record = self._index.get((_normalize_key(student_key), session_id))
            return _copy(record) if record else None

    def records(
        self,
        *,
        course_id: str | None = None,
        session_id: str | None = None,
        student_key: str | None = None,
    ) -> list[AttendanceRecord]:
        key = _normalize_key(student_key) if student_key is not None else None
        with self._lock:
            return [
                _copy(r)
                for r in self._records
                if (course_id is None or r["course_id"] == course_id)
                and (session_id is None or r["session_id"] == session_id)
                and (key is None or r["student_key"] == key)
            ]

    def load(self, items: Iterable[dict[str, Any]]) -> int:
        """
        Replace the store with persisted records.

        Rows that break the uniqueness rule keep only the latest timestamp.
        Returns the number of records kept.
        """
        records: list[AttendanceRecord] = []
        index: dict[tuple[str, str], AttendanceRecord] = {}
        for raw in items:
            record = _coerce_record(raw) if isinstance(raw, dict) else None
            if record is None:
                logger.warning("Skipping malformed attendance record: %r", raw)
                continue
            pair = (record["student_key"], record["session_id"])
            existing = index.get(pair)
            if existing is not None:
                if record["timestamp"] <= existing["timestamp"]:
                    continue
                records.remove(existing)
            records.append(record)
            index[pair] = record

        with self._lock:
            self._records = records
            self._index = index
        return len(records)

    def clear(self) -> None:
        with self._lock:
            self._records = []
            self._index = {}
        self._notify()
