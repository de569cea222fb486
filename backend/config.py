import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("SMARTATTEND_DB_PATH", BASE_DIR / "database" / "smartattend.db"))
SIGNING_KEY = os.getenv("SMARTATTEND_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("SMARTATTEND_AUTH_TOKEN_TTL_SECONDS", "43200"))
LOG_LEVEL = os.getenv("SMARTATTEND_LOG_LEVEL", "INFO").strip().upper() or "INFO"


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_float(value: str | None, fallback: float) -> float:
    if not value:
        return fallback
    try:
        return float(value)
    except ValueError:
        return fallback


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("SMARTATTEND_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("SMARTATTEND_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("SMARTATTEND_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("SMARTATTEND_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("SMARTATTEND_ENABLE_DEBUG_ENDPOINTS"), False)

# Proof tokens never drop below 16 random bytes.
PROOF_TOKEN_BYTES = max(16, int(os.getenv("SMARTATTEND_PROOF_TOKEN_BYTES", "24")))
TICK_SECONDS = max(0.1, _parse_float(os.getenv("SMARTATTEND_TICK_SECONDS"), 1.0))

DEFAULT_TOKEN_LIFETIME_MINUTES = max(
    1,
    int(os.getenv("SMARTATTEND_DEFAULT_TOKEN_LIFETIME_MINUTES", "15")),
)
DEFAULT_TOKEN_ROTATION_SECONDS = max(
    1,
    int(os.getenv("SMARTATTEND_DEFAULT_TOKEN_ROTATION_SECONDS", "60")),
)
SEED_DEFAULT_COURSES = _parse_bool(os.getenv("SMARTATTEND_SEED_DEFAULT_COURSES"), True)

QR_MODULE_PIXELS = max(1, int(os.getenv("SMARTATTEND_QR_MODULE_PIXELS", "8")))

REPORT_API_KEY = os.getenv("SMARTATTEND_REPORT_API_KEY") or os.getenv("GROQ_API_KEY")
REPORT_MODEL = os.getenv("SMARTATTEND_REPORT_MODEL", "llama-3.3-70b-versatile").strip()
REPORT_MAX_TOKENS = int(os.getenv("SMARTATTEND_REPORT_MAX_TOKENS", "2048"))
