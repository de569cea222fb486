from typing import Any

from fastapi import Depends, HTTPException, Request

from backend.security import require_session
from backend.services.engine import AttendanceEngine, UserNotFoundError
from backend.services.identity import User


def get_engine(request: Request) -> AttendanceEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Attendance engine is not ready. Please retry.")
    return engine


def get_current_user(
    session: dict[str, Any] = Depends(require_session),
    engine: AttendanceEngine = Depends(get_engine),
) -> User:
    try:
        return engine.get_user(str(session["sub"]))
    except UserNotFoundError:
        # Token outlived the account (e.g. after a store reset).
        raise HTTPException(status_code=401, detail="Account no longer exists.")
