from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    DB_PATH,
    DEFAULT_TOKEN_LIFETIME_MINUTES,
    DEFAULT_TOKEN_ROTATION_SECONDS,
    ENABLE_DEBUG_ENDPOINTS,
    PROOF_TOKEN_BYTES,
    QR_MODULE_PIXELS,
    TICK_SECONDS,
)
from backend.dependencies import get_engine
from backend.security import require_session
from backend.services.engine import AttendanceEngine

router = APIRouter()


@router.get("/health")
def health(engine: AttendanceEngine = Depends(get_engine)):
    pending = sorted(engine.writer.pending)
    return {
        "status": "degraded" if engine.writer.last_error else "ok",
        "pending_saves": pending,
        "last_persistence_error": engine.writer.last_error,
    }


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/attendance")
def attendance_config():
    return {
        "default_token_lifetime_minutes": DEFAULT_TOKEN_LIFETIME_MINUTES,
        "default_token_rotation_seconds": DEFAULT_TOKEN_ROTATION_SECONDS,
        "proof_token_bytes": PROOF_TOKEN_BYTES,
        "tick_seconds": TICK_SECONDS,
        "qr_module_pixels": QR_MODULE_PIXELS,
        "accepted_token_window": 2,
    }
