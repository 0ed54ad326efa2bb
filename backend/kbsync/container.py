"""
Composition Root
=================
Builds every service explicitly and wires collaborators through constructors.
The FastAPI lifespan and the Temporal worker each own one ``Container``;
tests pass fakes for the repository, AI clients and adapters.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from kbsync.admin.recalculate import ConfidenceRecalculator
from kbsync.ai.completion import TextCompletion, build_completion
from kbsync.ai.entities import EntityRecognizer, build_recognizer
from kbsync.config import Settings
from kbsync.connectors.registry import AdapterFactory, adapter_factory_for
from kbsync.core.cache import TTLCache
from kbsync.db.repository import Repository, SqlAlchemyRepository
from kbsync.db.session import create_engine_and_sessionmaker, init_db
from kbsync.ingestion.service import IngestionService
from kbsync.pipeline.classifier import DocumentClassifier
from kbsync.pipeline.confidence import ConfidenceScorer
from kbsync.pipeline.enrichment import EnrichmentPipeline
from kbsync.pipeline.redactor import PIIRedactor, RedactionOptions
from kbsync.sync.detector import ChangeDetectionEngine
from kbsync.sync.diff import DiffSummarizer
from kbsync.sync.ledger import SyncLedger
from kbsync.sync.state import StateTracker

logger = structlog.get_logger()


@dataclass
class Container:
    settings: Settings
    repository: Repository
    completion: Optional[TextCompletion]
    recognizer: Optional[EntityRecognizer]
    redactor: PIIRedactor
    classifier: DocumentClassifier
    scorer: ConfidenceScorer
    pipeline: EnrichmentPipeline
    diff: DiffSummarizer
    state: StateTracker
    ledger: SyncLedger
    ingestion: IngestionService
    engine: ChangeDetectionEngine
    recalculator: ConfidenceRecalculator
    db_engine: Optional[AsyncEngine] = None

    async def startup(self) -> None:
        if self.db_engine is not None:
            await init_db(self.db_engine)

    async def shutdown(self) -> None:
        if self.db_engine is not None:
            await self.db_engine.dispose()


def build_container(
    settings: Settings,
    *,
    repository: Optional[Repository] = None,
    completion: Optional[TextCompletion] = None,
    recognizer: Optional[EntityRecognizer] = None,
    adapter_factory: Optional[AdapterFactory] = None,
) -> Container:
    """Wire all services. Anything not injected is built from ``settings``."""
    db_engine = None
    if repository is None:
        db_engine, sessionmaker = create_engine_and_sessionmaker(settings.database_url, echo=settings.debug)
        repository = SqlAlchemyRepository(sessionmaker)
    if completion is None:
        completion = build_completion(settings)
    if recognizer is None:
        recognizer = build_recognizer(settings)
    if adapter_factory is None:
        adapter_factory = adapter_factory_for(settings)

    redactor = PIIRedactor(
        recognizer=recognizer,
        cache=TTLCache(max_entries=settings.pii_cache_max_entries, ttl_seconds=settings.pii_cache_ttl_seconds),
        default_options=RedactionOptions(
            confidence_threshold=settings.pii_confidence_threshold,
            masking_style=settings.pii_masking_style,
        ),
    )
    classifier = DocumentClassifier(completion)
    scorer = ConfidenceScorer()
    pipeline = EnrichmentPipeline(
        redactor=redactor,
        classifier=classifier,
        scorer=scorer,
        completion=completion,
        max_concurrency=settings.enrichment_max_concurrency,
        batch_cooldown_seconds=settings.enrichment_batch_cooldown_seconds,
        ai_timeout_seconds=settings.ai_timeout_seconds,
    )
    diff = DiffSummarizer(completion, timeout=settings.ai_timeout_seconds)
    state = StateTracker(repository)
    ledger = SyncLedger(repository)
    ingestion = IngestionService(repository, pipeline, diff, state, ledger=ledger)
    engine = ChangeDetectionEngine(
        repository=repository,
        adapter_factory=adapter_factory,
        ingestion=ingestion,
        ledger=ledger,
        state=state,
        stale_after=timedelta(minutes=settings.stale_operation_minutes),
    )

    logger.info(
        "Container built",
        ai_enabled=completion is not None,
        entity_recognition=recognizer is not None,
        max_concurrency=settings.enrichment_max_concurrency,
    )
    return Container(
        settings=settings,
        repository=repository,
        completion=completion,
        recognizer=recognizer,
        redactor=redactor,
        classifier=classifier,
        scorer=scorer,
        pipeline=pipeline,
        diff=diff,
        state=state,
        ledger=ledger,
        ingestion=ingestion,
        engine=engine,
        recalculator=ConfidenceRecalculator(repository, scorer, ledger=ledger),
        db_engine=db_engine,
    )
