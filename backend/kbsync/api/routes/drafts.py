"""Draft review queue."""

from typing import Optional

from fastapi import APIRouter, Depends

from kbsync.api.deps import get_container
from kbsync.container import Container

router = APIRouter()


@router.get("/drafts/pending")
async def list_pending_drafts(
    organization_id: Optional[str] = None,
    container: Container = Depends(get_container),
):
    drafts = await container.repository.list_pending_drafts(organization_id)
    return {
        "drafts": [
            {
                "id": d.id,
                "title": d.title,
                "summary": d.summary,
                "topics": d.topics,
                "confidence_score": d.confidence_score,
                "confidence_level": d.confidence_level.value,
                "confidence_reasoning": d.confidence_reasoning,
                "pii_entity_count": d.pii_entity_count,
                "is_update": d.is_update,
                "changes_made": d.changes_made,
                "source_id": d.source_id,
                "external_id": d.external_id,
                "created_at": d.created_at.isoformat() if d.created_at else None,
            }
            for d in drafts
        ],
        "total": len(drafts),
    }
