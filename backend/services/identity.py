from typing import Any, Literal, TypedDict

Role = Literal["student", "lecturer"]


class User(TypedDict):
    id: str
    name: str
    email: str
    role: Role
    student_id: str | None


def resolve_attendance_key(user: User | dict[str, Any]) -> str:
    """Institutional id when present, otherwise email; always lower-cased."""
    student_id = (user.get("student_id") or "").strip()
    if student_id:
        return student_id.lower()
    return (user.get("email") or "").strip().lower()
