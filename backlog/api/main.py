"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from backlog import __version__
from backlog.api.routes import health_router, jobs_router
from backlog.config import get_settings
from backlog.db import close_db, get_engine, init_db
from backlog.observability.logging import setup_logging
from backlog.observability.metrics import setup_metrics
from backlog.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
)
from backlog.payloads import load_payload_modules

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings = get_settings()

    # Startup
    setup_logging()
    setup_metrics()
    setup_tracing()
    load_payload_modules(settings.payload_modules)
    await init_db()
    instrument_sqlalchemy(get_engine())

    logger.info("Application started")

    yield

    # Shutdown
    await close_db()
    logger.info("Application shutdown")


def create_app(with_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        with_lifespan: Run the startup/shutdown hooks. Disable when the
            caller has already initialized the database.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Backlog Job Queue API",
        description="Enqueue and inspect jobs in a database-backed job queue",
        version=__version__,
        lifespan=lifespan if with_lifespan else None,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.include_router(health_router)
    app.include_router(jobs_router)

    # Instrument with OpenTelemetry
    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "backlog.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
