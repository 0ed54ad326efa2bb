"""Health check endpoint."""

import structlog
from fastapi import APIRouter, Depends

from kbsync.api.deps import get_container
from kbsync.container import Container
from kbsync.core.errors import KbSyncError

router = APIRouter()
logger = structlog.get_logger()


@router.get("/health")
async def health(container: Container = Depends(get_container)):
    return {
        "status": "healthy",
        "service": container.settings.app_name,
        "version": container.settings.app_version,
    }


@router.get("/ready")
async def ready(container: Container = Depends(get_container)):
    """Readiness probe — checks database connectivity."""
    try:
        db_ok = await container.repository.ping()
    except KbSyncError as e:
        logger.warning("Readiness check failed", error=str(e))
        db_ok = False

    return {
        "ready": db_ok,
        "database": "connected" if db_ok else "unavailable",
        "ai": "configured" if container.completion is not None else "fallback",
    }
