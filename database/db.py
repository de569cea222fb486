import json
import sqlite3
from typing import Any

from backend.config import DB_PATH

SCHEMA_VERSION = 1

USERS_KEY = "smartattend_users"
RECORDS_KEY = "smartattend_records"
COURSES_KEY = "smartattend_courses"


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), check_same_thread=False)
    conn.execute("PRAGMA journal_mode = WAL;")
    return conn


def create_tables():
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)
    conn = connect_db()
    cursor = conn.cursor()

    cursor.execute("""
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
    )
    """)

    conn.commit()
    conn.close()


# -----------------------------
# Key-value access
# -----------------------------
# Version 0 rows use the original camelCase field names.
LEGACY_FIELDS: dict[str, dict[str, str]] = {
    USERS_KEY: {"studentId": "student_id"},
    RECORDS_KEY: {
        "courseId": "course_id",
        "sessionId": "session_id",
        "studentId": "student_key",
        "studentName": "student_name",
    },
    COURSES_KEY: {
        "lecturerId": "lecturer_id",
        "qrExpirationMinutes": "token_lifetime_minutes",
        "qrRefreshFrequencySeconds": "token_rotation_seconds",
    },
}


def _upgrade_v0(key: str, items: list[Any]) -> list[Any]:
    renames = LEGACY_FIELDS.get(key, {})
    upgraded = []
    for item in items:
        if isinstance(item, dict):
            item = dict(item)
            for old, new in renames.items():
                if old in item and new not in item:
                    item[new] = item.pop(old)
        upgraded.append(item)
    return upgraded


def _unwrap(key: str, raw: str) -> list[dict[str, Any]]:
    data = json.loads(raw)
    # Bare arrays predate the versioned envelope.
    if isinstance(data, list):
        return _upgrade_v0(key, data)
    if not isinstance(data, dict):
        raise ValueError("Stored value is neither a list nor a versioned envelope.")

    version = data.get("schema_version")
    if not isinstance(version, int) or version > SCHEMA_VERSION:
        raise ValueError(f"Unsupported schema_version: {version!r}")
    items = data.get("items")
    if not isinstance(items, list):
        raise ValueError("Versioned envelope is missing its items list.")
    if version == 0:
        return _upgrade_v0(key, items)
    return items


def load_items(key: str) -> list[dict[str, Any]] | None:
    """
    Return the stored list for `key`, or None when nothing was saved yet.
    """
    conn = connect_db()
    try:
        cur = conn.cursor()
        cur.execute("SELECT value FROM kv_store WHERE key = ?", (key,))
        row = cur.fetchone()
    finally:
        conn.close()

    if not row:
        return None
    return _unwrap(key, str(row[0]))


def save_items(key: str, items: list[dict[str, Any]]) -> None:
    envelope = {"schema_version": SCHEMA_VERSION, "items": items}
    value = json.dumps(envelope, separators=(",", ":"), sort_keys=True)

    conn = connect_db()
    try:
        conn.execute(
            """
            INSERT INTO kv_store (key, value, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = CURRENT_TIMESTAMP
            """,
            (key, value),
        )
        conn.commit()
    finally:
        conn.close()
