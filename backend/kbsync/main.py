"""
Knowledge Base Sync — FastAPI Operational Surface
==================================================
Main entry point: health probes, manual sync trigger, cursor reset, sync
history, confidence recalculation, and the pending-draft queue.

The composition root is built in the lifespan and stored on
``app.state.container``; ``create_app(container=...)`` accepts a prebuilt one.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from kbsync.config import settings
from kbsync.api.routes import admin, drafts, health, sources
from kbsync.container import Container, build_container

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(
        logging.getLevelName(settings.log_level)
    ),
)
logger = structlog.get_logger()


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    if getattr(app.state, "container", None) is None:
        app.state.container = build_container(settings)
    container: Container = app.state.container

    logger.info(
        "Starting Knowledge Base Sync",
        version=settings.app_version,
        auto_sync=settings.auto_sync_enabled,
    )
    await container.startup()
    yield
    logger.info("Shutting down Knowledge Base Sync")
    await container.shutdown()


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------
API_PREFIX = "/api/v1"


def create_app(container: Optional[Container] = None) -> FastAPI:
    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description=(
            "Incremental sync of collaboration sources into a PII-redacted, "
            "confidence-scored draft review queue."
        ),
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.container = container

    app.include_router(health.router, tags=["Health"])
    app.include_router(sources.router, prefix=API_PREFIX, tags=["Sync"])
    app.include_router(drafts.router, prefix=API_PREFIX, tags=["Drafts"])
    app.include_router(admin.router, prefix=API_PREFIX, tags=["Admin"])

    @app.get("/")
    async def root():
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
        }

    return app


app = create_app()
