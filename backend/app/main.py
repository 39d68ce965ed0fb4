"""
Notification service application.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Startup logs which channels have credentials, creates the tables when
NOTIFY_STORAGE=database and starts the analytics scheduler (initial
backfill, then one collection per UTC day). Shutdown stops the scheduler,
waits for in-flight analytics recomputes and closes transports and the
database pool.
"""

from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from backend.app.core.config import settings
from backend.app.core.database import close_db, init_db
from backend.app.core.errors import register_error_handlers
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.logging_config import get_logger, setup_logging
from backend.app.core.middleware import RequestLoggingMiddleware

from backend.app.api.deps import get_notification_service, shutdown_notification_service
from backend.app.api.v1.analytics import router as analytics_router
from backend.app.api.v1.notifications import router as notification_router
from backend.app.notifications.availability import log_channel_configuration
from backend.app.notifications.jobs import AnalyticsScheduler

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Starting %s v%s [%s, transports=%s, storage=%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        settings.NOTIFY_TRANSPORT_MODE, settings.NOTIFY_STORAGE,
    )
    log_channel_configuration(settings)

    if settings.NOTIFY_STORAGE == "database":
        await init_db()

    service = get_notification_service()
    scheduler = None
    if settings.ANALYTICS_SCHEDULER_ENABLED and service.analytics is not None:
        scheduler = AnalyticsScheduler(
            service.analytics,
            backfill_days=settings.ANALYTICS_BACKFILL_DAYS,
            retention_days=settings.ANALYTICS_RETENTION_DAYS,
            job_ttl=timedelta(hours=settings.ANALYTICS_JOB_TTL_HOURS),
            max_finished_jobs=settings.ANALYTICS_MAX_FINISHED_JOBS,
        )
        await scheduler.start()
    app.state.analytics_scheduler = scheduler

    yield

    if scheduler is not None:
        await scheduler.stop()
    await shutdown_notification_service()
    await close_db()
    logger.info("%s stopped", settings.APP_NAME)


app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Multi-channel notification delivery for the welfare organisation. "
        "Delivers campaign, payment, chat and collection-request notifications "
        "through web push, email, WhatsApp and SMS with per-channel retries, "
        "keeps an auditable per-recipient delivery record, and maintains "
        "daily per-channel and per-role delivery analytics."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Outermost first: CORS wraps the access log.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if settings.CORS_ALLOW_ALL else settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-Process-Time"],
)
app.add_middleware(RequestLoggingMiddleware)

register_error_handlers(app)

# /analytics must be matched before /{delivery_id}
app.include_router(analytics_router)
app.include_router(notification_router)


@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "channel-availability",
            "retry-executor",
            "channel-senders",
            "delivery-orchestrator",
            "in-app-inbox",
            "analytics-aggregator",
        ],
        "docs": "/docs",
    }


async def _health_report(request: Request):
    return await run_health_check(
        get_notification_service(),
        getattr(request.app.state, "analytics_scheduler", None),
    )


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Every component probe, always 200."""
    return (await _health_report(request)).to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """503 while the service cannot send anything."""
    report = await _health_report(request)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
