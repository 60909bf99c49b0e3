"""
FastAPI application main module.
Wires the reconciliation scheduler into the application lifespan and exposes
the admin API, request logging middleware, and health checks.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
import time
import os
from contextlib import asynccontextmanager
from email_reconciler.api.v1 import api_router
from email_reconciler.utils import setup_logging, get_logger
from email_reconciler.utils.circuit_breaker import GLOBAL_CIRCUIT_BREAKER
from email_reconciler.utils.observability import ensure_request_id, REQUEST_ID_HEADER
from email_reconciler.config import RECONCILIATION_SETTINGS
from email_reconciler.database import engine, Base, SessionLocal, SQLALCHEMY_DATABASE_URL
from email_reconciler.integrations.postmark import PostmarkClient
from email_reconciler.models.db.enums import TriggerSource
from email_reconciler.reconciliation.event_logger import ReconciliationEventLogger
from email_reconciler.reconciliation.scheduler import ReconciliationScheduler
from email_reconciler.reconciliation.tasks.postmark import PostmarkReconciliationTask
from email_reconciler.reconciliation.types import TaskRegistry
from email_reconciler.services.advisory_lock import RedisLockProvider, create_lock_provider
from email_reconciler.services.developer_settings import DeveloperSettingsStore
from email_reconciler.services.email_repository import EmailRepository
from email_reconciler.services.events import EventLogStore

# Setup logging before creating the app
setup_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    log_file=os.getenv("LOG_FILE", "logs/email_reconciler.log"),
    enable_console=True
)

logger = get_logger(__name__)

SERVICE_NAME = "email-reconciler"
SERVICE_VERSION = "1.0.0"


def build_registry(event_logger: ReconciliationEventLogger, client: PostmarkClient) -> TaskRegistry:
    """Register every reconciliation task this deployment runs."""
    registry = TaskRegistry()
    registry.register(PostmarkReconciliationTask(
        client=client,
        emails=EmailRepository(SessionLocal),
        event_logger=event_logger,
    ))
    return registry


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Handles startup and shutdown events.
    """
    # Startup
    logger.info("Application startup initiated")

    scheduler: ReconciliationScheduler | None = None
    lock_provider = None
    postmark_client: PostmarkClient | None = None
    try:
        # Create database tables
        logger.info("Creating database tables")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")

        settings_store = DeveloperSettingsStore(SessionLocal)
        event_logger = ReconciliationEventLogger(EventLogStore(SessionLocal))
        postmark_client = PostmarkClient()
        registry = build_registry(event_logger, postmark_client)
        lock_provider = await create_lock_provider(SQLALCHEMY_DATABASE_URL, engine)

        scheduler = ReconciliationScheduler(registry, settings_store, lock_provider, event_logger)
        # expose runtime handles in app state for endpoints (no module-level singletons)
        app.state.scheduler = scheduler  # type: ignore[attr-defined]
        app.state.settings_store = settings_store  # type: ignore[attr-defined]
        app.state.lock_provider = lock_provider  # type: ignore[attr-defined]

        await scheduler.start()
        if RECONCILIATION_SETTINGS["run_on_startup"]:
            for task in registry.get_all():
                scheduler.trigger_in_background(task.id, TriggerSource.STARTUP, "system")
            logger.info("Startup reconciliation runs triggered", task_count=len(registry))
        logger.info("Application startup completed successfully")
        yield
    except Exception as e:  # pragma: no cover
        logger.error("Application startup failed", error=str(e), exc_info=True)
        raise
    finally:
        logger.info("Application shutdown initiated")
        if scheduler is not None:
            scheduler.stop()
            drained = await scheduler.wait_for_runs(timeout=float(RECONCILIATION_SETTINGS["shutdown_grace_seconds"]))
            if not drained:
                logger.warning("Shutdown grace period elapsed with reconciliation runs in flight")
        if isinstance(lock_provider, RedisLockProvider):
            await lock_provider.close()
        if postmark_client is not None:
            await postmark_client.close()
        logger.info("Application shutdown completed")

app = FastAPI(
    title="Email Delivery Reconciliation Service",
    description="""
    Periodically re-derives email delivery state from Postmark and repairs
    drift left by missed or out-of-order webhooks.

    ## Features
    * **Cron scheduling** - per-task schedules stored in developer settings (UTC unless RECONCILIATION_CRON_TIMEZONE is set)
    * **Cross-instance safety** - runs are guarded by advisory locks
    * **Backfill and correction** - missing messages are created, stale states corrected
    * **Audit trail** - every run and delivery event is written to the event log

    ## Authentication
    Admin endpoints require the configured admin token:
    ```
    Authorization: Bearer <ADMIN_API_TOKEN>
    ```
    """,
    version=SERVICE_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/api/v1/openapi.json",
    lifespan=lifespan,
)

# CORS middleware - configure appropriately for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Request ID and comprehensive logging middleware
@app.middleware("http")
async def add_request_context_and_logging(request: Request, call_next):
    """
    Add request ID, timing, and request/response logging.
    """
    request_id = ensure_request_id(request.headers)
    request.state.request_id = request_id
    request.state.start_time = time.time()

    logger.info(
        "Request started",
        method=request.method,
        url=str(request.url),
        user_agent=request.headers.get("User-Agent"),
        remote_addr=request.client.host if request.client else "unknown",
        request_id=request_id
    )

    response = await call_next(request)

    process_time = time.time() - request.state.start_time

    response.headers[REQUEST_ID_HEADER] = request_id
    response.headers["X-Process-Time"] = str(round(process_time * 1000, 2))
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"

    logger.info(
        "Request completed",
        method=request.method,
        url=str(request.url),
        status_code=response.status_code,
        process_time_ms=round(process_time * 1000, 2),
        request_id=request_id
    )

    return response

# Custom exception handlers
@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle Pydantic validation errors."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "Request validation failed",
        errors=exc.errors(),
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Request validation failed",
            "details": [
                {"loc": list(err.get("loc", [])), "msg": err.get("msg"), "type": err.get("type")}
                for err in exc.errors()
            ],
            "request_id": request_id
        }
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception",
        status_code=exc.status_code,
        detail=exc.detail,
        request_id=request_id,
        url=str(request.url),
        method=request.method
    )

    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "request_id": request_id
        },
        headers=getattr(exc, "headers", None),
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        request_id=request_id,
        url=str(request.url),
        method=request.method,
        exc_info=True
    )

    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "request_id": request_id
        }
    )

# Health check endpoints
@app.get("/health", tags=["health"], summary="Basic health check")
async def health_check(request: Request):
    """Basic health check endpoint for load balancers."""
    scheduler = getattr(request.app.state, "scheduler", None)
    lock_provider = getattr(request.app.state, "lock_provider", None)
    return {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "scheduler_running": bool(scheduler and scheduler.is_running),
        "lock_backend": getattr(lock_provider, "backend", None),
    }

@app.get("/health/detailed", tags=["health"], summary="Detailed health check")
async def detailed_health_check(request: Request):
    """Detailed health check with database, scheduler and lock backend status."""
    health_status = {
        "status": "healthy",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "timestamp": time.time(),
        "checks": {}
    }

    # Database check
    try:
        db = SessionLocal()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()
        health_status["checks"]["database"] = "healthy"
    except Exception as e:
        health_status["checks"]["database"] = f"unhealthy: {str(e)}"
        health_status["status"] = "degraded"

    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        health_status["checks"]["scheduler"] = "not started"
        health_status["status"] = "degraded"
    else:
        sched = scheduler.get_status()
        health_status["checks"]["scheduler"] = {
            "is_running": sched["is_running"],
            "scheduled_tasks": [job["task_id"] for job in sched["jobs"]],
        }

    lock_provider = getattr(request.app.state, "lock_provider", None)
    if isinstance(lock_provider, RedisLockProvider):
        healthy = await lock_provider.health_check()
        health_status["checks"]["lock_backend"] = "redis: healthy" if healthy else "redis: unavailable"
        if not healthy:
            health_status["status"] = "degraded"
    else:
        health_status["checks"]["lock_backend"] = getattr(lock_provider, "backend", "unconfigured")

    health_status["checks"]["circuit_breakers"] = GLOBAL_CIRCUIT_BREAKER.snapshot()
    return health_status

# API Documentation root
@app.get("/", tags=["root"])
async def root():
    """API root endpoint with basic information."""
    return {
        "message": "Email Delivery Reconciliation Service",
        "version": SERVICE_VERSION,
        "documentation": "/docs",
        "health_check": "/health",
        "api_base": "/api/v1"
    }

# Include API router with version prefix
app.include_router(api_router, prefix="/api/v1")

# Development server configuration
if __name__ == "__main__":
    import uvicorn

    logger.info("Starting development server")

    uvicorn.run(
        "email_reconciler.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
        reload_dirs=["email_reconciler"],
        log_level="info",
        access_log=True
    )
