import time

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel, Field

from backend.dependencies import get_engine
from backend.security import require_session
from backend.services.engine import (
    AttendanceEngine,
    CourseNotFoundError,
    InvalidCourseSettingsError,
    SessionNotFoundError,
)
from backend.services.qr import encode_proof_png, proof_to_text

router = APIRouter(dependencies=[Depends(require_session)])


class CourseSettingsUpdate(BaseModel):
    token_lifetime_minutes: int | None = Field(default=None, ge=1)
    token_rotation_seconds: int | None = Field(default=None, ge=1)


@router.get("/courses")
def courses(engine: AttendanceEngine = Depends(get_engine)):
    now = time.time()
    rows = []
    for course in engine.list_courses():
        latest = engine.sessions.latest_for_course(course["id"])
        rows.append({**course, "latest_session": latest.to_dict(now) if latest else None})
    return rows


@router.patch("/courses/{course_id}/settings")
def update_course_settings(
    course_id: str,
    payload: CourseSettingsUpdate,
    engine: AttendanceEngine = Depends(get_engine),
):
    try:
        return engine.update_course_settings(
            course_id,
            token_lifetime_minutes=payload.token_lifetime_minutes,
            token_rotation_seconds=payload.token_rotation_seconds,
        )
    except CourseNotFoundError:
        raise HTTPException(status_code=404, detail="Course not found.")
    except InvalidCourseSettingsError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/courses/{course_id}/sessions")
def open_session(course_id: str, engine: AttendanceEngine = Depends(get_engine)):
    now = time.time()
    try:
        session = engine.open_session(course_id, now)
    except CourseNotFoundError:
        raise HTTPException(status_code=404, detail="Course not found.")
    return {**session.to_dict(now), "proof": session.current_proof(now)}


@router.get("/sessions/{session_id}")
def session_detail(session_id: str, engine: AttendanceEngine = Depends(get_engine)):
    now = time.time()
    try:
        session = engine.get_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found.")
    session.tick(now)
    return session.to_dict(now)


@router.get("/sessions/{session_id}/proof")
def session_proof(session_id: str, engine: AttendanceEngine = Depends(get_engine)):
    try:
        proof = engine.current_proof(session_id, time.time())
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found.")
    if proof is None:
        raise HTTPException(status_code=410, detail="Session has expired.")
    return {"proof": proof, "qr_text": proof_to_text(proof)}


@router.get("/sessions/{session_id}/proof.png")
def session_proof_png(session_id: str, engine: AttendanceEngine = Depends(get_engine)):
    try:
        proof = engine.current_proof(session_id, time.time())
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found.")
    if proof is None:
        raise HTTPException(status_code=410, detail="Session has expired.")
    return Response(
        content=encode_proof_png(proof),
        media_type="image/png",
        headers={"Cache-Control": "no-store"},
    )


@router.get("/sessions/{session_id}/roster")
def session_roster(session_id: str, engine: AttendanceEngine = Depends(get_engine)):
    try:
        roster = engine.roster(session_id, time.time())
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found.")
    return {"session_id": session_id, "students": roster}
