import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.api.v1.admin_jobs import router as admin_jobs_router
from app.api.v1.appointments import router as appointments_router
from app.api.v1.offers import router as offers_router
from app.api.v1.records import router as records_router
from app.core.config import get_settings
from app.core.errors import (
    Conflict,
    EntityNotFound,
    InvalidTransition,
    PermissionDenied,
    StaleAuthorization,
)
from app.services.recurring_jobs import (
    start_appointment_reminder_worker,
    start_follow_up_worker,
    start_notification_outbox_worker,
)
from app.utils.alerting import alert_tracker

settings = get_settings()
_follow_up_task = None
_appointment_reminder_task = None
_notification_outbox_task = None

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Taklaget Inspection API",
    version="1.0.0",
    docs_url="/docs" if settings.docs_enabled else None,
    openapi_url="/openapi.json" if settings.openapi_enabled else None,
)


@app.on_event("startup")
async def _startup_jobs():
    global _follow_up_task, _appointment_reminder_task, _notification_outbox_task
    if _follow_up_task is None and settings.enable_recurring_jobs:
        _follow_up_task = start_follow_up_worker()
    if _appointment_reminder_task is None and settings.enable_recurring_jobs and settings.enable_appointment_reminders:
        _appointment_reminder_task = start_appointment_reminder_worker()
    if _notification_outbox_task is None and settings.enable_recurring_jobs and settings.enable_notification_outbox:
        _notification_outbox_task = start_notification_outbox_worker()


@app.on_event("shutdown")
async def _shutdown_jobs():
    global _follow_up_task, _appointment_reminder_task, _notification_outbox_task
    if _follow_up_task is not None:
        _follow_up_task.cancel()
        _follow_up_task = None
    if _appointment_reminder_task is not None:
        _appointment_reminder_task.cancel()
        _appointment_reminder_task = None
    if _notification_outbox_task is not None:
        _notification_outbox_task.cancel()
        _notification_outbox_task = None


if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=settings.cors_allow_methods,
        allow_headers=settings.cors_allow_headers,
    )

app.include_router(offers_router, prefix="/api/v1", tags=["offers"])
app.include_router(appointments_router, prefix="/api/v1", tags=["appointments"])
app.include_router(records_router, prefix="/api/v1", tags=["records"])
app.include_router(admin_jobs_router, prefix="/api/v1", tags=["admin"])


@app.exception_handler(PermissionDenied)
async def _permission_denied_handler(request: Request, exc: PermissionDenied):
    return JSONResponse(status_code=403, content={"detail": "Forbidden", "reason": exc.reason})


@app.exception_handler(InvalidTransition)
async def _invalid_transition_handler(request: Request, exc: InvalidTransition):
    content = {"detail": str(exc), "current_status": exc.current, "attempted": exc.attempted}
    return JSONResponse(status_code=409, content=content)


@app.exception_handler(Conflict)
async def _conflict_handler(request: Request, exc: Conflict):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(StaleAuthorization)
async def _stale_authorization_handler(request: Request, exc: StaleAuthorization):
    logger.info("Stale authorization for %s: %s", exc.principal_id, ",".join(exc.fields) or "record missing")
    alert_tracker.record("STALE_AUTHORIZATION", {"principal_id": exc.principal_id, "fields": list(exc.fields)})
    return JSONResponse(
        status_code=401,
        content={"detail": "Token is out of date, sign in again"},
        headers={"WWW-Authenticate": 'Bearer error="stale_token"'},
    )


@app.exception_handler(EntityNotFound)
async def _not_found_handler(request: Request, exc: EntityNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Hide internal details for 5xx in production unless explicitly enabled.
    if exc.status_code >= 500 and not settings.expose_error_details:
        return JSONResponse(status_code=exc.status_code, content={"detail": "Internal error"})
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail}, headers=exc.headers)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception")
    if settings.expose_error_details:
        return JSONResponse(status_code=500, content={"detail": str(exc)})
    return JSONResponse(status_code=500, content={"detail": "Internal error"})


@app.get("/health")
async def health_check():
    return {"status": "ok"}
