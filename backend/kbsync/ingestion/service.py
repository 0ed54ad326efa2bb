"""
Ingestion Service — Changed Items to Draft Documents
=====================================================
For each changed item:

1. Look up the prior revision by external id and summarize what changed
2. Build the source reference (redacted original text kept for recalculation)
3. Enrich through the pipeline in bounded concurrent batches
4. Store the draft (idempotent on organization + external id + digest)
5. Supersede older pending drafts of the same external id
6. Commit the FileState digest, only after the draft is stored

Per-item failures are collected as ``"<external_id>: <message>"`` and never
abort sibling items.
"""

import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

import structlog

from kbsync.core.audit import AuditEventType
from kbsync.core.errors import ContentQualityError, KbSyncError
from kbsync.db.repository import Repository
from kbsync.models import (
    ChangedItem,
    ConnectedSource,
    DraftDocument,
    EnrichedResult,
    IngestionResult,
    SourceReference,
    TeamsMessageItem,
)
from kbsync.pipeline.enrichment import EnrichmentPipeline, EnrichmentRequest
from kbsync.sync.diff import DiffSummarizer
from kbsync.sync.ledger import SyncLedger
from kbsync.sync.state import ContentHasher, StateTracker

logger = structlog.get_logger()


@dataclass
class _Prepared:
    item: ChangedItem
    digest: str
    reference: SourceReference
    prior: Optional[DraftDocument] = None
    changes: List[str] = field(default_factory=list)


class IngestionService:
    def __init__(
        self,
        repository: Repository,
        pipeline: EnrichmentPipeline,
        diff: DiffSummarizer,
        state: StateTracker,
        ledger: Optional[SyncLedger] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.pipeline = pipeline
        self.diff = diff
        self.state = state
        self.ledger = ledger
        self.clock = clock

    async def ingest(self, source: ConnectedSource, items: Sequence[ChangedItem]) -> IngestionResult:
        """Enrich and store drafts for items whose ``content`` is already fetched."""
        started = time.monotonic()
        result = IngestionResult()

        prepared: List[_Prepared] = []
        for item in items:
            try:
                prepared.append(await self._prepare(source, item))
            except KbSyncError as e:
                self._record_error(result, item.external_id, e)

        outcomes = await self.pipeline.process_many(
            [
                EnrichmentRequest(
                    raw_content=p.item.content or "",
                    source_references=[p.reference],
                    change_summary=p.changes or None,
                    title=p.item.title,
                )
                for p in prepared
            ]
        )

        for outcome in outcomes:
            entry = prepared[outcome.index]
            if not outcome.ok:
                self._record_error(result, entry.item.external_id, outcome.error)
                continue
            try:
                await self._store(source, entry, outcome.result, result)
            except KbSyncError as e:
                self._record_error(result, entry.item.external_id, e)

        result.processing_time_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Ingestion finished",
            source_id=source.id,
            items=len(items),
            created=result.documents_created,
            updated=result.documents_updated,
            errors=len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    async def _prepare(self, source: ConnectedSource, item: ChangedItem) -> _Prepared:
        content = item.content or ""
        # Redaction results are cached, so the pipeline reuses this pass
        redacted = (await self.pipeline.redactor.redact(content)).redacted_text if content.strip() else content

        prior = await self.repository.find_latest_document_for_external_id(
            source.organization_id, item.external_id
        )
        changes: List[str] = []
        if prior is not None:
            previous = prior.source_references[0].original_content if prior.source_references else ""
            changes = await self.diff.summarize(previous or prior.content, redacted)

        return _Prepared(
            item=item,
            digest=ContentHasher.digest(content),
            reference=self._reference(item, redacted),
            prior=prior,
            changes=changes,
        )

    @staticmethod
    def _reference(item: ChangedItem, redacted: str) -> SourceReference:
        message_count = 1 + item.reply_count if isinstance(item, TeamsMessageItem) else None
        return SourceReference(
            provider=item.provider,
            external_id=item.external_id,
            title=item.title,
            original_content=redacted,
            author=item.author,
            created_at=item.modified_at or item.created_at,
            source_url=item.source_url,
            participants=item.participants,
            message_count=message_count,
        )

    async def _store(
        self,
        source: ConnectedSource,
        entry: _Prepared,
        enriched: EnrichedResult,
        result: IngestionResult,
    ) -> None:
        item = entry.item
        confidence = enriched.confidence
        draft = DraftDocument(
            id=str(uuid.uuid4()),
            organization_id=source.organization_id,
            source_id=source.id,
            external_id=item.external_id,
            content_digest=entry.digest,
            title=item.title,
            content=enriched.structured_content,
            summary=enriched.summary,
            topics=enriched.topics,
            confidence_score=confidence.score,
            confidence_level=confidence.level,
            confidence_reasoning=confidence.reasoning,
            pii_entity_count=len(enriched.pii_entities),
            pii_categories=sorted({e.category for e in enriched.pii_entities}),
            source_references=[entry.reference],
            is_update=entry.prior is not None,
            original_document_id=entry.prior.id if entry.prior else None,
            changes_made=entry.changes,
            processing_metadata={
                "processing_time_ms": enriched.processing_time_ms,
                "tokens_used": enriched.tokens_used,
                "domain": enriched.domain.value,
                "fallbacks": enriched.fallbacks,
                "chunks_total": 1,
                "source_quality_penalty": confidence.source_quality_penalty,
                "ai_driven": confidence.ai_driven,
            },
            created_at=self.clock(),
        )

        stored, created = await self.repository.create_draft(draft)
        if created:
            superseded = await self.repository.supersede_drafts(
                source.organization_id, item.external_id, except_id=stored.id
            )
            if stored.is_update:
                result.documents_updated += 1
            else:
                result.documents_created += 1
            await self._audit_draft(source, stored, superseded)
        else:
            logger.info("Draft already exists for digest", external_id=item.external_id, draft_id=stored.id)

        await self.state.commit(
            source.organization_id,
            item.external_id,
            entry.digest,
            modified_at=item.modified_at,
            source_id=source.id,
        )

    async def _audit_draft(self, source: ConnectedSource, draft: DraftDocument, superseded: int) -> None:
        if self.ledger is None:
            return
        await self.ledger.record(
            AuditEventType.DRAFT_CREATED,
            "draft_created",
            source_id=source.id,
            organization_id=source.organization_id,
            resource=f"draft:{draft.id}",
            details={
                "external_id": draft.external_id,
                "is_update": draft.is_update,
                "confidence_level": draft.confidence_level.value,
                "superseded": superseded,
            },
        )

    @staticmethod
    def _record_error(result: IngestionResult, external_id: str, error: Optional[BaseException]) -> None:
        message = str(error) if error is not None else "unknown error"
        logger.error("Item ingestion failed", external_id=external_id, error=message)
        result.errors.append(f"{external_id}: {message}")
        if not isinstance(error, ContentQualityError):
            result.retryable_failures += 1
