"""
HemoBank ASGI application.

Startup creates the schema and, when enabled, the in-process job scheduler.
Shutdown stops the scheduler and drains pending audit writes.
"""
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from hemobank.api.v1.api import api_router
from hemobank.core.config import settings
from hemobank.core.exceptions import (
    HemoBankError,
    domain_exception_handler,
    general_exception_handler,
    http_exception_handler,
    validation_exception_handler,
)
from hemobank.core.logging import logger
from hemobank.database import async_session_factory, init_db
from hemobank.services.audit_service import audit_service
from hemobank.services.realtime import notification_hub
from hemobank.workers.scheduler import build_scheduler

API_PREFIX = "/api/v1"


def _start_scheduler(app: FastAPI) -> None:
    if not settings.SCHEDULER_ENABLED:
        logger.info("Background jobs disabled (SCHEDULER_ENABLED=false)")
        return
    # the API stays up even when jobs cannot be started
    try:
        scheduler = build_scheduler(async_session_factory)
        scheduler.start()
    except Exception as e:
        logger.error(f"Could not start background jobs: {e}", exc_info=True)
        return
    app.state.scheduler = scheduler


def _docs_path(path: str):
    return path if settings.DEBUG else None


app = FastAPI(
    title=settings.APP_NAME,
    description="Blood bank inventory, reservation and transfer API",
    version=settings.APP_VERSION,
    docs_url=_docs_path("/docs"),
    redoc_url=_docs_path("/redoc"),
    openapi_url=_docs_path("/openapi.json"),
)
app.state.scheduler = None

for exc_class, handler in (
    (HemoBankError, domain_exception_handler),
    (StarletteHTTPException, http_exception_handler),
    (RequestValidationError, validation_exception_handler),
    (Exception, general_exception_handler),
):
    app.add_exception_handler(exc_class, handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.middleware("http")
async def tag_request(request: Request, call_next):
    """Attach a request id, echo it back and log method, path, status and duration."""
    request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    request.state.request_id = request_id
    started = time.perf_counter()

    response = await call_next(request)

    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} in {elapsed_ms:.1f}ms",
        extra={"request_id": request_id},
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.on_event("startup")
async def on_startup():
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} booting ({settings.ENVIRONMENT})")
    try:
        await init_db()
    except Exception as e:
        logger.error(f"Schema creation failed: {e}")
        raise
    _start_scheduler(app)


@app.on_event("shutdown")
async def on_shutdown():
    """Stop background jobs, then drain pending audit writes."""
    if app.state.scheduler:
        await app.state.scheduler.stop()
        app.state.scheduler = None
    await audit_service.flush()
    logger.info("Shutdown complete")


app.include_router(api_router, prefix=API_PREFIX)


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running",
        "api": API_PREFIX,
    }


@app.get("/health")
async def health_check():
    """Liveness plus background job and WebSocket subscriber state."""
    scheduler = app.state.scheduler
    jobs = {}
    if scheduler:
        jobs = {job["name"]: job["running"] for job in scheduler.status()}
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "environment": settings.ENVIRONMENT,
        "jobs": jobs,
        "realtime_subscribers": notification_hub.subscriber_count(),
    }
