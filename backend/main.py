import asyncio
import logging
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
    TICK_SECONDS,
)
from backend.routers import admin, attendance, auth, core, courses, reports
from backend.services.engine import AttendanceEngine
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(message)s",
    force=True,
)
logger = logging.getLogger(__name__)


async def _run_ticker(engine: AttendanceEngine) -> None:
    # Rotation is computed from wall-clock deltas, so a late wakeup only
    # delays the swap. The tick also flushes sqlite, so it runs off the loop.
    while True:
        try:
            await asyncio.to_thread(engine.tick, time.time())
        except Exception:
            logger.exception("Engine tick failed")
        await asyncio.sleep(TICK_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    engine = AttendanceEngine()
    engine.load_from_store()
    app.state.engine = engine

    ticker = asyncio.create_task(_run_ticker(engine))
    try:
        yield
    finally:
        ticker.cancel()
        try:
            await ticker
        except asyncio.CancelledError:
            pass
        await asyncio.to_thread(engine.writer.flush)


app = FastAPI(title="SmartAttend API", lifespan=lifespan)


@app.middleware("http")
async def add_process_time_header(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time

    response.headers["X-Process-Time"] = str(process_time)
    logger.info(
        "Request processed: %s %s - Completed in %.4f secs",
        request.method,
        request.url.path,
        process_time,
    )
    return response


# -----------------------------
# CORS
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

app.include_router(core.router)
app.include_router(auth.router)
app.include_router(courses.router)
app.include_router(attendance.router)
app.include_router(reports.router)
app.include_router(admin.router)
