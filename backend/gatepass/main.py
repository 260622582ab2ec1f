"""
Gatepass Admission API - Main Application Entry Point

Allocates a fixed number of event admissions across competing channels:
- FCFS free entry with a lucky-draw waitlist behind it
- Paid and VIP checkout with time-boxed reservations
- Guest-list and volunteer invite codes
- Signed single-use admission tokens redeemed at the gate
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import async_sessionmaker

from gatepass.api.errors import allocation_error_handler, storage_conflict_handler
from gatepass.api.middleware import RequestLoggingMiddleware
from gatepass.api.router import api_router
from gatepass.core.config import get_settings
from gatepass.core.errors import AllocationError, StorageConflict
from gatepass.core.logging import get_logger, setup_logging
from gatepass.core.metrics import metrics_endpoint
from gatepass.db.session import dispose_engine, get_session_factory, run_in_transaction
from gatepass.services.notification_service import get_dispatcher
from gatepass.services.policy_service import ensure_policy_defaults
from gatepass.tasks.scheduler import start_scheduler, stop_scheduler

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    await run_in_transaction(ensure_policy_defaults)

    dispatcher = get_dispatcher()
    dispatcher.start()

    if settings.SCHEDULER_ENABLED:
        start_scheduler()
    else:
        logger.warning("scheduler_disabled", message="Expiry sweep and auto draw will not run")

    yield

    stop_scheduler()
    await dispatcher.stop()
    await dispose_engine()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Capacity-safe event admission with signed single-use tickets",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Restrict in production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

app.add_exception_handler(AllocationError, allocation_error_handler)
app.add_exception_handler(StorageConflict, storage_conflict_handler)

app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check(session_factory: async_sessionmaker = Depends(get_session_factory)):
    """Health check endpoint for Docker and load balancers."""
    database = "ok"
    try:
        async with session_factory() as db:
            await db.execute(text("SELECT 1"))
    except Exception as exc:
        database = f"error: {exc.__class__.__name__}"

    return {
        "status": "healthy" if database == "ok" else "degraded",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "database": database,
        "notifications_running": get_dispatcher().running,
    }


@app.get("/metrics", tags=["Health"], include_in_schema=False)
def metrics():
    return metrics_endpoint()


@app.get("/", tags=["Root"])
async def root():
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": "/docs",
    }
