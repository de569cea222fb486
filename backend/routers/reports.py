from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.dependencies import get_engine
from backend.security import require_session
from backend.services.engine import AttendanceEngine, CourseNotFoundError

router = APIRouter(dependencies=[Depends(require_session)])


class ReportRequest(BaseModel):
    course_id: str | None = None


@router.get("/reports/students")
def student_reports(engine: AttendanceEngine = Depends(get_engine)):
    return engine.student_stats()


@router.get("/reports/students/{student_key}")
def student_report(student_key: str, engine: AttendanceEngine = Depends(get_engine)):
    return engine.stats_for_student(student_key)


@router.get("/reports/courses")
def course_reports(engine: AttendanceEngine = Depends(get_engine)):
    return engine.course_stats()


@router.post("/reports/generate")
def generate_report(payload: ReportRequest, engine: AttendanceEngine = Depends(get_engine)):
    try:
        report = engine.generate_report(payload.course_id)
    except CourseNotFoundError:
        raise HTTPException(status_code=404, detail="Course not found.")
    return {"course_id": payload.course_id, "report": report}
