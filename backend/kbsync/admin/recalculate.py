"""
Confidence Recalculation
=========================
Re-runs the confidence scorer over every pending draft without re-running
enrichment. The scorer is pure, so the only side effect is overwriting the
stored score, level and reasoning on each draft.
"""

from typing import List, Optional

import structlog
from pydantic import BaseModel, Field

from kbsync.core.audit import AuditEventType
from kbsync.db.repository import Repository
from kbsync.models import DraftDocument, SourceQualityLevel, TriageLevel
from kbsync.pipeline.confidence import ConfidenceScorer
from kbsync.pipeline.enrichment import build_source_metadata
from kbsync.sync.ledger import SyncLedger

logger = structlog.get_logger()


class RecalculatedDraft(BaseModel):
    draft_id: str
    title: str
    old_score: float
    new_score: float
    old_level: TriageLevel
    new_level: TriageLevel
    change: float
    source_quality: SourceQualityLevel
    source_quality_penalty: float


class RecalculationReport(BaseModel):
    updated: List[RecalculatedDraft] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)

    @property
    def level_changes(self) -> int:
        return sum(1 for d in self.updated if d.old_level != d.new_level)


class ConfidenceRecalculator:
    def __init__(self, repository: Repository, scorer: ConfidenceScorer, ledger: Optional[SyncLedger] = None):
        self.repository = repository
        self.scorer = scorer
        self.ledger = ledger

    async def recalculate_pending(self, organization_id: Optional[str] = None) -> RecalculationReport:
        report = RecalculationReport()

        for draft in await self.repository.list_pending_drafts(organization_id):
            entry = await self._recalculate(draft)
            if entry is None:
                report.skipped.append(draft.id)
            else:
                report.updated.append(entry)

        report.updated.sort(key=lambda d: abs(d.change), reverse=True)
        logger.info(
            "Confidence recalculated",
            updated=len(report.updated),
            skipped=len(report.skipped),
            level_changes=report.level_changes,
        )
        if self.ledger is not None:
            await self.ledger.record(
                AuditEventType.CONTROL_RECALCULATE,
                "recalculate_confidence",
                organization_id=organization_id,
                resource="drafts:pending",
                details={
                    "updated": len(report.updated),
                    "skipped": len(report.skipped),
                    "level_changes": report.level_changes,
                },
            )
        return report

    async def _recalculate(self, draft: DraftDocument) -> Optional[RecalculatedDraft]:
        raw = "\n\n".join(r.original_content for r in draft.source_references if r.original_content)
        if not raw.strip():
            logger.warning("No stored source text, skipping draft", draft_id=draft.id)
            return None

        quality = self.scorer.analyze_source_quality(raw)
        result = self.scorer.score(
            draft.content,
            build_source_metadata(draft.source_references),
            source_quality=quality,
            change_summary=draft.changes_made or None,
        )
        await self.repository.update_draft_confidence(draft.id, result)

        return RecalculatedDraft(
            draft_id=draft.id,
            title=draft.title,
            old_score=draft.confidence_score,
            new_score=result.score,
            old_level=draft.confidence_level,
            new_level=result.level,
            change=round(result.score - draft.confidence_score, 4),
            source_quality=quality.level,
            source_quality_penalty=quality.penalty,
        )
