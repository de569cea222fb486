from fastapi import APIRouter, Depends

from backend.dependencies import get_engine
from backend.security import require_session
from backend.services.engine import AttendanceEngine

router = APIRouter(dependencies=[Depends(require_session)])


@router.post("/admin/reset")
def reset_store(engine: AttendanceEngine = Depends(get_engine)):
    engine.reset()
    # Sync route: the save runs in the threadpool.
    saved = engine.writer.flush()
    return {
        "ok": True,
        "saved": saved,
        "message": "Reset complete: users, records and sessions cleared" if saved
        else "Reset applied in memory; saving will be retried",
    }
