"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import Depends, FastAPI, Response
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from discovery_engine.api.deps import get_database
from discovery_engine.api.routes import executions
from discovery_engine.config import settings
from discovery_engine.db.models import Base
from discovery_engine.db.session import engine
from discovery_engine.worker.scheduler import setup_scheduler
from discovery_engine.worker.tasks import task_runner

# Configure structured logging
from discovery_engine.logging_config import setup_logging

setup_logging()
logger = logging.getLogger(__name__)

# Global scheduler
scheduler = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    global scheduler

    # Startup
    logger.info("Starting file discovery engine...")

    # Initialize database
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await task_runner.initialize()

    if settings.scheduler_enabled:
        scheduler = setup_scheduler()
        scheduler.start()
        logger.info("Scheduler started")
    else:
        logger.info("Scheduler disabled; serving API only")

    yield

    # Shutdown
    logger.info("Shutting down...")

    if scheduler:
        scheduler.shutdown(wait=False)

    await task_runner.close()
    await engine.dispose()

    logger.info("Shutdown complete")


# Create FastAPI app
app = FastAPI(
    title="File Discovery Engine",
    description="Scheduled discovery of date-stamped files on FTP, HTTPS and object storage",
    version="0.1.0",
    lifespan=lifespan,
)

# Add Prometheus instrumentation
instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health", "/favicon.ico"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])

# Include API routes
app.include_router(executions.router)


@app.get("/health")
async def health(db: AsyncSession = Depends(get_database)):
    """Health check endpoint."""
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("Health check could not reach the database: %s", e)
        return Response(
            content='{"status": "degraded", "database": "unavailable"}',
            media_type="application/json",
            status_code=503,
        )
    return {
        "status": "healthy",
        "checks_in_flight": task_runner.loop.in_flight if task_runner.loop else 0,
    }


@app.get("/favicon.ico")
async def favicon():
    """Return empty favicon response to avoid 404 noise."""
    return Response(status_code=204)


if __name__ == "__main__":
    # Run with uvicorn
    uvicorn.run(
        "discovery_engine.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
