"""
Sync Controls API — manual trigger, cursor reset, sync history.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from kbsync.api.deps import get_container
from kbsync.container import Container
from kbsync.core.errors import ConcurrentSyncError, SourceNotFoundError

router = APIRouter()


class TriggerRequest(BaseModel):
    source_id: Optional[str] = None


@router.post("/sync/trigger")
async def trigger_sync(
    body: Optional[TriggerRequest] = None,
    container: Container = Depends(get_container),
):
    """Check one source (or every active source) now, ignoring due-ness."""
    source_id = body.source_id if body else None
    try:
        operations = await container.engine.trigger_now(source_id)
    except SourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentSyncError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {
        "operations": [op.model_dump(mode="json") for op in operations],
        "total": len(operations),
    }


@router.post("/sources/{source_id}/reset-cursor")
async def reset_cursor(source_id: str, container: Container = Depends(get_container)):
    """Force a full rescan on the next check."""
    try:
        await container.engine.reset_cursor(source_id)
    except SourceNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {"source_id": source_id, "message": "Cursor reset; next check performs a full scan"}


@router.get("/sources/{source_id}/sync-history")
async def sync_history(
    source_id: str,
    limit: int = Query(20, ge=1, le=100),
    container: Container = Depends(get_container),
):
    source = await container.repository.get_source(source_id)
    if source is None:
        raise HTTPException(status_code=404, detail=f"Source {source_id} not found")

    operations = await container.ledger.history(source_id, limit)
    return {
        "source_id": source_id,
        "last_checked_at": source.last_checked_at.isoformat() if source.last_checked_at else None,
        "last_error": source.last_error,
        "operations": [op.model_dump(mode="json") for op in operations],
        "total": len(operations),
    }
