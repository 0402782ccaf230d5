import structlog
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from outbox import __version__
from outbox.api import admin_outbox, outbox as outbox_api
from outbox.config import get_settings
from outbox.database import get_engine, init_db
from outbox.errors import OutboxStoreError
from outbox.handlers import validate_registry
from outbox.jobs.drain_outbox import drain_outbox_job
from outbox.logging_config import configure_logging
from outbox.middleware import RequestIdMiddleware, SharedSecretMiddleware

# Configure structured logging
configure_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()
scheduler = AsyncIOScheduler()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Refuse to start with a job type that has no handler
    validate_registry()

    await init_db()
    logger.info("Database initialized")

    scheduler_started = False
    if settings.scheduler_enabled:
        scheduler.add_job(
            drain_outbox_job,
            'interval',
            minutes=settings.outbox_schedule_minutes,
            id='drain_outbox',
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        scheduler_started = True
        logger.info("Outbox drain scheduled", every_minutes=settings.outbox_schedule_minutes)

    yield

    if scheduler_started:
        scheduler.shutdown()
        logger.info("Scheduler shut down")
    await get_engine().dispose()
    logger.info("Shutting down...")


app = FastAPI(
    title="Outbox Worker",
    description="Durable outbox job processor for transactional and marketing email",
    version=__version__,
    lifespan=lifespan,
    docs_url=None if settings.app_env == "production" else "/docs",
    redoc_url=None if settings.app_env == "production" else "/redoc",
    openapi_url=None if settings.app_env == "production" else "/openapi.json",
)

# Prometheus metrics
if settings.prometheus_enabled:
    from prometheus_fastapi_instrumentator import Instrumentator

    Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        excluded_handlers=["/health", "/metrics"],
    ).instrument(app).expose(app, endpoint="/metrics", include_in_schema=False)

# Shared-secret auth (inner: rejects before any route touches the store)
app.add_middleware(SharedSecretMiddleware)

# Request ID middleware (outer: wraps auth 401s too)
app.add_middleware(RequestIdMiddleware)

app.include_router(outbox_api.router, prefix="/api/outbox", tags=["outbox"])
app.include_router(admin_outbox.router, prefix="/api/admin/outbox", tags=["admin"])


@app.exception_handler(OutboxStoreError)
async def store_error_handler(request: Request, exc: OutboxStoreError):
    logger.error("Job store unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(status_code=503, content={"error": "Job store unavailable"})


@app.get("/")
async def root():
    if settings.app_env == "production":
        return {"status": "ok"}
    return {
        "message": "Outbox Worker",
        "version": __version__,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Health check endpoint that verifies database connectivity."""
    from sqlalchemy import text

    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except SQLAlchemyError as e:
        logger.warning(f"Health check failed: {type(e).__name__}: {e}")
    except (OSError, ConnectionError, TimeoutError) as e:
        logger.warning(f"Health check failed with connection error: {type(e).__name__}: {e}")
    except Exception as e:
        logger.warning(f"Health check failed with unexpected error: {type(e).__name__}: {e}")
    return JSONResponse(
        status_code=503,
        content={"status": "unhealthy", "database": "disconnected"},
    )
