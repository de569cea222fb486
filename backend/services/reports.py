import json
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import TypedDict

from groq import Groq

from backend.config import REPORT_API_KEY, REPORT_MAX_TOKENS, REPORT_MODEL
from backend.services.identity import User, resolve_attendance_key
from backend.services.records import AttendanceRecord
from backend.services.sessions import Course

logger = logging.getLogger(__name__)

REPORT_APOLOGY = "The system was unable to generate the report. Please verify database connectivity."


class StudentStats(TypedDict):
    student_key: str
    total_sessions: int
    present_count: int
    presence_rate: float
    presence_percent: int
    last_seen: str | None


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------
# Projections (pure, recomputed per call)
# -----------------------------
def project_student(records: Iterable[AttendanceRecord], student_key: str) -> StudentStats:
    key = (student_key or "").strip().lower()
    mine = [r for r in records if r["student_key"] == key]
    present = sum(1 for r in mine if r["status"] == "present")
    total = len(mine)
    rate = present / total if total else 0.0
    last_seen = None
    if mine:
        last_seen = max(mine, key=lambda r: _parse_timestamp(r["timestamp"]))["timestamp"]
    return {
        "student_key": key,
        "total_sessions": total,
        "present_count": present,
        "presence_rate": rate,
        "presence_percent": round(rate * 100),
        "last_seen": last_seen,
    }


def project_students(users: Iterable[User], records: Iterable[AttendanceRecord]) -> list[dict]:
    all_records = list(records)
    rows = []
    for user in users:
        if user["role"] != "student":
            continue
        stats = project_student(all_records, resolve_attendance_key(user))
        rows.append({"id": user["id"], "name": user["name"], "email": user["email"], **stats})
    return rows


def project_courses(courses: Iterable[Course], records: Iterable[AttendanceRecord]) -> list[dict]:
    all_records = list(records)
    return [
        {
            "course_id": c["id"],
            "code": c["code"],
            "name": c["name"],
            "attendance": sum(1 for r in all_records if r["course_id"] == c["id"] and r["status"] == "present"),
            "total_records": sum(1 for r in all_records if r["course_id"] == c["id"]),
        }
        for c in courses
    ]


def global_presence_rate(records: Iterable[AttendanceRecord]) -> float:
    all_records = list(records)
    if not all_records:
        return 0.0
    return sum(1 for r in all_records if r["status"] == "present") / len(all_records)


# -----------------------------
# Narrative report
# -----------------------------
class ReportGenerator:
    def __init__(self, api_key: str | None = REPORT_API_KEY, model: str = REPORT_MODEL):
        self.api_key = api_key
        self.model = model
        self._client: Groq | None = None

    def _get_client(self) -> Groq:
        if self._client is None:
            self._client = Groq(api_key=self.api_key)
        return self._client

    @staticmethod
    def build_prompt(records: Iterable[AttendanceRecord], course_name: str) -> str:
        data = json.dumps(
            [{"name": r["student_name"], "date": r["timestamp"], "status": r["status"]} for r in records]
        )
        return f"""Conduct a detailed participation audit for the course "{course_name}".
Identify students with consistent attendance, students with irregular participation patterns, and provide statistical insights.

Data:
{data}

Format the response as a professional system-generated report with:
- Executive Summary
- Participation Alerts (Critical)
- Attendance Distribution
- Strategic Recommendations

Use clear markdown formatting with bullet points.
"""

    def generate_report(self, records: Iterable[AttendanceRecord], course_name: str) -> str:
        if not self.api_key:
            logger.warning("Report generation skipped: no API key configured")
            return REPORT_APOLOGY

        prompt = self.build_prompt(records, course_name)
        try:
            response = self._get_client().chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=REPORT_MAX_TOKENS,
                temperature=0.3,
            )
            text = (response.choices[0].message.content or "").strip()
        except Exception:
            logger.exception("Report generation failed for %s", course_name)
            return REPORT_APOLOGY

        return text or REPORT_APOLOGY
