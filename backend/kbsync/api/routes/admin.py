"""Administrative operations."""

from typing import Optional

from fastapi import APIRouter, Depends

from kbsync.api.deps import get_container
from kbsync.container import Container

router = APIRouter()


@router.post("/admin/recalculate-confidence")
async def recalculate_confidence(
    organization_id: Optional[str] = None,
    container: Container = Depends(get_container),
):
    """Re-score every pending draft without re-running enrichment."""
    report = await container.recalculator.recalculate_pending(organization_id)
    return {
        "updated": len(report.updated),
        "skipped": report.skipped,
        "level_changes": report.level_changes,
        "results": [entry.model_dump(mode="json") for entry in report.updated],
    }
