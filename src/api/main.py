from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
import logging

from src.core.exceptions import (
    DataIntegrityError,
    ExamPrepException,
    NotFoundError,
    PlanInfeasibleError,
    RateLimitedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Exam Prep Engine API")


# --- Error mapping ---

ERROR_STATUS = [
    (RateLimitedError, 429),
    (NotFoundError, 404),
    (DataIntegrityError, 409),
    (PlanInfeasibleError, 422),
    (ValidationError, 422),
]


@app.exception_handler(ExamPrepException)
async def handle_engine_error(request: Request, exc: ExamPrepException):
    status_code = 500
    for error_type, code in ERROR_STATUS:
        if isinstance(exc, error_type):
            status_code = code
            break
    if status_code == 500:
        logger.error(f"Unhandled engine error on {request.url.path}: {exc}")

    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(int(exc.retry_after_seconds + 0.999))}
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
        headers=headers,
    )


# API Routes - starter_headless.py sets up sys.path so these work when run directly
from src.api.routes import (
    users,
    topics,
    plans,
    tasks,
    readiness,
    alerts,
    agents,
    schedules,
    remediation,
    cleanup,
)

app.include_router(users.router)
app.include_router(topics.router)
app.include_router(plans.router)
app.include_router(tasks.router)
app.include_router(readiness.router)
app.include_router(alerts.router)
app.include_router(agents.router)
app.include_router(schedules.router)
app.include_router(remediation.router)
app.include_router(cleanup.router)


@app.get("/api/status")
async def get_status():
    return {"status": "online", "version": "1.0.0"}
