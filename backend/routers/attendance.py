import time
from typing import Any, Literal

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel

from backend.dependencies import get_current_user, get_engine
from backend.security import require_session
from backend.services.engine import AttendanceEngine, SessionNotFoundError, UserNotFoundError
from backend.services.identity import User

router = APIRouter()


class ScanRequest(BaseModel):
    payload: str | dict[str, Any] | None = None


class OverrideRequest(BaseModel):
    user_id: str
    session_id: str
    status: Literal["present", "absent"]


@router.post("/attendance/scan")
def scan_attendance(
    body: ScanRequest,
    user: User = Depends(get_current_user),
    engine: AttendanceEngine = Depends(get_engine),
):
    return engine.submit_scan(body.payload, user, time.time())


@router.post("/attendance/scan/image")
async def scan_attendance_image(
    user: User = Depends(get_current_user),
    engine: AttendanceEngine = Depends(get_engine),
    file: UploadFile = File(...),
):
    if file.content_type not in ("image/jpeg", "image/png"):
        raise HTTPException(status_code=400, detail="Upload JPG/PNG only.")

    data = await file.read()
    return engine.submit_scan_image(data, user, time.time())


@router.post("/attendance/override")
def override_attendance(
    body: OverrideRequest,
    _session: dict = Depends(require_session),
    engine: AttendanceEngine = Depends(get_engine),
):
    try:
        return engine.apply_override(body.user_id, body.session_id, body.status, time.time())
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="Student not found.")
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found.")


@router.get("/attendance")
def attendance(
    course_id: str | None = None,
    session_id: str | None = None,
    student_key: str | None = None,
    _session: dict = Depends(require_session),
    engine: AttendanceEngine = Depends(get_engine),
):
    return engine.list_records(course_id=course_id, session_id=session_id, student_key=student_key)
