"""
Persistence Interface
======================
``Repository`` is the abstract datastore collaborator used by the sync
engine, ingestion service, admin jobs and API. ``SqlAlchemyRepository``
implements it on the async ORM; store errors surface as ``PersistenceError``
carrying the underlying message.
"""

import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional, Tuple

import structlog
from sqlalchemy import case, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from kbsync.core.audit import AuditEvent
from kbsync.core.errors import ConcurrentSyncError, KbSyncError, PersistenceError
from kbsync.db.models import (
    AuditLog,
    ConnectedSourceRecord,
    DraftDocumentRecord,
    FileStateRecord,
    SyncOperationRecord,
)
from kbsync.models import (
    ConfidenceResult,
    ConnectedSource,
    DraftDocument,
    DraftStatus,
    FileState,
    SourceReference,
    SyncKind,
    SyncOperation,
    SyncState,
)

logger = structlog.get_logger()


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Repository(ABC):
    """Read/write access to sources, file states, drafts and sync operations."""

    # ---- Sources ----
    @abstractmethod
    async def list_active_sources(self) -> List[ConnectedSource]: ...

    @abstractmethod
    async def get_source(self, source_id: str) -> Optional[ConnectedSource]: ...

    @abstractmethod
    async def save_source(self, source: ConnectedSource) -> ConnectedSource: ...

    @abstractmethod
    async def advance_cursor(
        self, source_id: str, operation_id: str, new_cursor: Optional[str], checked_at: datetime
    ) -> bool:
        """Set cursor and last-check time only while ``operation_id`` is still running."""

    @abstractmethod
    async def reset_cursor(self, source_id: str) -> bool: ...

    @abstractmethod
    async def touch_last_check(self, source_id: str, checked_at: datetime) -> None: ...

    @abstractmethod
    async def record_source_error(self, source_id: str, error: Optional[str]) -> None: ...

    # ---- File states ----
    @abstractmethod
    async def get_file_state(self, organization_id: str, external_id: str) -> Optional[FileState]: ...

    @abstractmethod
    async def upsert_file_state(self, state: FileState) -> FileState: ...

    @abstractmethod
    async def touch_file_state(self, organization_id: str, external_id: str, synced_at: datetime) -> None: ...

    # ---- Drafts ----
    @abstractmethod
    async def create_draft(self, draft: DraftDocument) -> Tuple[DraftDocument, bool]:
        """Insert a draft; on a dedup-key conflict return the existing row and False."""

    @abstractmethod
    async def find_latest_document_for_external_id(
        self, organization_id: str, external_id: str
    ) -> Optional[DraftDocument]: ...

    @abstractmethod
    async def supersede_drafts(self, organization_id: str, external_id: str, except_id: str) -> int: ...

    @abstractmethod
    async def list_pending_drafts(self, organization_id: Optional[str] = None) -> List[DraftDocument]: ...

    @abstractmethod
    async def update_draft_confidence(self, draft_id: str, result: ConfidenceResult) -> None: ...

    # ---- Sync operations ----
    @abstractmethod
    async def open_operation(
        self, source_id: str, kind: SyncKind, cursor_before: Optional[str], started_at: datetime
    ) -> SyncOperation:
        """Create a running operation; raises ConcurrentSyncError if one is already running."""

    @abstractmethod
    async def finalize_operation(
        self,
        operation_id: str,
        state: SyncState,
        completed_at: datetime,
        items_processed: int = 0,
        items_created: int = 0,
        items_updated: int = 0,
        error_message: Optional[str] = None,
        cursor_after: Optional[str] = None,
    ) -> SyncOperation:
        """Finalize exactly once; a second call raises PersistenceError."""

    @abstractmethod
    async def list_operations(self, source_id: str, limit: int = 20) -> List[SyncOperation]: ...

    @abstractmethod
    async def expire_stale_operations(self, started_before: datetime, completed_at: datetime) -> int:
        """Fail running operations left behind by a crashed process."""

    # ---- Audit / health ----
    @abstractmethod
    async def record_audit(self, event: AuditEvent) -> None: ...

    @abstractmethod
    async def ping(self) -> bool: ...


# ===========================================================================
# SQLAlchemy implementation
# ===========================================================================
class SqlAlchemyRepository(Repository):
    def __init__(self, sessionmaker: async_sessionmaker):
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                async with session.begin():
                    yield session
        except KbSyncError:
            raise
        except SQLAlchemyError as e:
            logger.error("Datastore operation failed", error=str(e))
            raise PersistenceError(str(e)) from e

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------
    async def list_active_sources(self) -> List[ConnectedSource]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(ConnectedSourceRecord)
                .where(ConnectedSourceRecord.is_active.is_(True))
                .order_by(ConnectedSourceRecord.id)
            )
            return [_source(r) for r in rows]

    async def get_source(self, source_id: str) -> Optional[ConnectedSource]:
        async with self._transaction() as session:
            rec = await session.get(ConnectedSourceRecord, source_id)
            return _source(rec) if rec else None

    async def save_source(self, source: ConnectedSource) -> ConnectedSource:
        async with self._transaction() as session:
            rec = await session.get(ConnectedSourceRecord, source.id)
            if rec is None:
                rec = ConnectedSourceRecord(id=source.id)
                session.add(rec)
            rec.provider = source.provider.value
            rec.name = source.name
            rec.owner_id = source.owner_id
            rec.organization_id = source.organization_id
            rec.selected_scope = list(source.selected_scope)
            rec.cursor = source.cursor
            rec.last_checked_at = source.last_checked_at
            rec.is_active = source.is_active
            rec.sync_frequency_minutes = source.sync_frequency_minutes
            rec.credentials = dict(source.credentials)
            rec.last_error = source.last_error
            await session.flush()
            return _source(rec)

    async def advance_cursor(
        self, source_id: str, operation_id: str, new_cursor: Optional[str], checked_at: datetime
    ) -> bool:
        still_running = (
            select(SyncOperationRecord.id)
            .where(
                SyncOperationRecord.id == operation_id,
                SyncOperationRecord.source_id == source_id,
                SyncOperationRecord.state == SyncState.RUNNING.value,
            )
            .exists()
        )
        async with self._transaction() as session:
            result = await session.execute(
                update(ConnectedSourceRecord)
                .where(ConnectedSourceRecord.id == source_id, still_running)
                .values(cursor=new_cursor, last_checked_at=checked_at, last_error=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def reset_cursor(self, source_id: str) -> bool:
        async with self._transaction() as session:
            result = await session.execute(
                update(ConnectedSourceRecord)
                .where(ConnectedSourceRecord.id == source_id)
                .values(cursor=None)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def touch_last_check(self, source_id: str, checked_at: datetime) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(ConnectedSourceRecord)
                .where(ConnectedSourceRecord.id == source_id)
                .values(last_checked_at=checked_at)
                .execution_options(synchronize_session=False)
            )

    async def record_source_error(self, source_id: str, error: Optional[str]) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(ConnectedSourceRecord)
                .where(ConnectedSourceRecord.id == source_id)
                .values(last_error=error)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # File states
    # ------------------------------------------------------------------
    async def get_file_state(self, organization_id: str, external_id: str) -> Optional[FileState]:
        async with self._transaction() as session:
            rec = await session.scalar(_file_state_query(organization_id, external_id))
            return _file_state(rec) if rec else None

    async def upsert_file_state(self, state: FileState) -> FileState:
        async with self._transaction() as session:
            rec = await session.scalar(_file_state_query(state.organization_id, state.external_id))
            if rec is None:
                rec = FileStateRecord(
                    id=str(uuid.uuid4()),
                    organization_id=state.organization_id,
                    external_id=state.external_id,
                )
                session.add(rec)
            rec.source_id = state.source_id
            rec.content_digest = state.content_digest
            rec.modified_at = state.modified_at
            rec.last_synced_at = state.last_synced_at or datetime.now(timezone.utc)
            await session.flush()
            return _file_state(rec)

    async def touch_file_state(self, organization_id: str, external_id: str, synced_at: datetime) -> None:
        async with self._transaction() as session:
            await session.execute(
                update(FileStateRecord)
                .where(
                    FileStateRecord.organization_id == organization_id,
                    FileStateRecord.external_id == external_id,
                )
                .values(last_synced_at=synced_at)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Drafts
    # ------------------------------------------------------------------
    async def create_draft(self, draft: DraftDocument) -> Tuple[DraftDocument, bool]:
        existing = await self._draft_by_key(draft)
        if existing is not None:
            return existing, False

        try:
            async with self._transaction() as session:
                rec = _draft_record(draft)
                session.add(rec)
                await session.flush()
                return _draft(rec), True
        except PersistenceError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
            # Lost a race on the dedup key
            existing = await self._draft_by_key(draft)
            if existing is None:
                raise
            return existing, False

    async def find_latest_document_for_external_id(
        self, organization_id: str, external_id: str
    ) -> Optional[DraftDocument]:
        approved_first = case((DraftDocumentRecord.status == DraftStatus.APPROVED.value, 0), else_=1)
        async with self._transaction() as session:
            rec = await session.scalar(
                select(DraftDocumentRecord)
                .where(
                    DraftDocumentRecord.organization_id == organization_id,
                    DraftDocumentRecord.external_id == external_id,
                    DraftDocumentRecord.status != DraftStatus.REJECTED.value,
                )
                .order_by(approved_first, DraftDocumentRecord.created_at.desc())
                .limit(1)
            )
            return _draft(rec) if rec else None

    async def supersede_drafts(self, organization_id: str, external_id: str, except_id: str) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                update(DraftDocumentRecord)
                .where(
                    DraftDocumentRecord.organization_id == organization_id,
                    DraftDocumentRecord.external_id == external_id,
                    DraftDocumentRecord.status == DraftStatus.PENDING.value,
                    DraftDocumentRecord.id != except_id,
                )
                .values(status=DraftStatus.SUPERSEDED.value)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    async def list_pending_drafts(self, organization_id: Optional[str] = None) -> List[DraftDocument]:
        query = select(DraftDocumentRecord).where(DraftDocumentRecord.status == DraftStatus.PENDING.value)
        if organization_id:
            query = query.where(DraftDocumentRecord.organization_id == organization_id)
        async with self._transaction() as session:
            rows = await session.scalars(query.order_by(DraftDocumentRecord.created_at))
            return [_draft(r) for r in rows]

    async def update_draft_confidence(self, draft_id: str, result: ConfidenceResult) -> None:
        async with self._transaction() as session:
            updated = await session.execute(
                update(DraftDocumentRecord)
                .where(DraftDocumentRecord.id == draft_id)
                .values(
                    confidence_score=result.score,
                    confidence_level=result.level.value,
                    confidence_reasoning=result.reasoning,
                )
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise PersistenceError(f"Draft {draft_id} not found")

    async def _draft_by_key(self, draft: DraftDocument) -> Optional[DraftDocument]:
        async with self._transaction() as session:
            rec = await session.scalar(
                select(DraftDocumentRecord).where(
                    DraftDocumentRecord.organization_id == draft.organization_id,
                    DraftDocumentRecord.external_id == draft.external_id,
                    DraftDocumentRecord.content_digest == draft.content_digest,
                )
            )
            return _draft(rec) if rec else None

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------
    async def open_operation(
        self, source_id: str, kind: SyncKind, cursor_before: Optional[str], started_at: datetime
    ) -> SyncOperation:
        async with self._transaction() as session:
            running = await session.scalar(
                select(SyncOperationRecord.id).where(
                    SyncOperationRecord.source_id == source_id,
                    SyncOperationRecord.state == SyncState.RUNNING.value,
                )
            )
            if running is not None:
                raise ConcurrentSyncError(source_id)

            rec = SyncOperationRecord(
                id=str(uuid.uuid4()),
                source_id=source_id,
                kind=kind.value,
                state=SyncState.RUNNING.value,
                cursor_before=cursor_before,
                started_at=started_at,
            )
            session.add(rec)
            try:
                await session.flush()
            except IntegrityError as e:
                raise ConcurrentSyncError(source_id) from e
            return _operation(rec)

    async def finalize_operation(
        self,
        operation_id: str,
        state: SyncState,
        completed_at: datetime,
        items_processed: int = 0,
        items_created: int = 0,
        items_updated: int = 0,
        error_message: Optional[str] = None,
        cursor_after: Optional[str] = None,
    ) -> SyncOperation:
        if state == SyncState.RUNNING:
            raise ValueError("Cannot finalize an operation into the running state")

        async with self._transaction() as session:
            result = await session.execute(
                update(SyncOperationRecord)
                .where(
                    SyncOperationRecord.id == operation_id,
                    SyncOperationRecord.state == SyncState.RUNNING.value,
                )
                .values(
                    state=state.value,
                    completed_at=completed_at,
                    items_processed=items_processed,
                    items_created=items_created,
                    items_updated=items_updated,
                    error_message=error_message,
                    cursor_after=cursor_after,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise PersistenceError(f"Sync operation {operation_id} is not running")
            rec = await session.get(SyncOperationRecord, operation_id, populate_existing=True)
            return _operation(rec)

    async def list_operations(self, source_id: str, limit: int = 20) -> List[SyncOperation]:
        async with self._transaction() as session:
            rows = await session.scalars(
                select(SyncOperationRecord)
                .where(SyncOperationRecord.source_id == source_id)
                .order_by(SyncOperationRecord.started_at.desc())
                .limit(limit)
            )
            return [_operation(r) for r in rows]

    async def expire_stale_operations(self, started_before: datetime, completed_at: datetime) -> int:
        async with self._transaction() as session:
            result = await session.execute(
                update(SyncOperationRecord)
                .where(
                    SyncOperationRecord.state == SyncState.RUNNING.value,
                    SyncOperationRecord.started_at < started_before,
                )
                .values(
                    state=SyncState.FAILED.value,
                    completed_at=completed_at,
                    error_message="Operation abandoned (process stopped before finalizing)",
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # Audit / health
    # ------------------------------------------------------------------
    async def record_audit(self, event: AuditEvent) -> None:
        async with self._transaction() as session:
            session.add(
                AuditLog(
                    id=str(uuid.uuid4()),
                    event_type=event.event_type.value,
                    action=event.action,
                    outcome=event.outcome,
                    source_id=event.source_id,
                    organization_id=event.organization_id,
                    operation_id=event.operation_id,
                    resource=event.resource,
                    details=event.details,
                    timestamp=datetime.fromisoformat(event.timestamp),
                )
            )

    async def ping(self) -> bool:
        async with self._transaction() as session:
            await session.execute(text("SELECT 1"))
            return True


# ---------------------------------------------------------------------------
# Row <-> model conversion
# ---------------------------------------------------------------------------
def _file_state_query(organization_id: str, external_id: str):
    return select(FileStateRecord).where(
        FileStateRecord.organization_id == organization_id,
        FileStateRecord.external_id == external_id,
    )


def _source(rec: ConnectedSourceRecord) -> ConnectedSource:
    return ConnectedSource(
        id=rec.id,
        provider=rec.provider,
        name=rec.name,
        owner_id=rec.owner_id,
        organization_id=rec.organization_id,
        selected_scope=rec.selected_scope or [],
        cursor=rec.cursor,
        last_checked_at=_utc(rec.last_checked_at),
        is_active=rec.is_active,
        sync_frequency_minutes=rec.sync_frequency_minutes,
        credentials=rec.credentials or {},
        last_error=rec.last_error,
    )


def _file_state(rec: FileStateRecord) -> FileState:
    return FileState(
        organization_id=rec.organization_id,
        external_id=rec.external_id,
        source_id=rec.source_id,
        content_digest=rec.content_digest,
        modified_at=_utc(rec.modified_at),
        last_synced_at=_utc(rec.last_synced_at),
    )


def _draft_record(draft: DraftDocument) -> DraftDocumentRecord:
    return DraftDocumentRecord(
        id=draft.id,
        organization_id=draft.organization_id,
        source_id=draft.source_id,
        external_id=draft.external_id,
        content_digest=draft.content_digest,
        title=draft.title,
        content=draft.content,
        summary=draft.summary,
        topics=list(draft.topics),
        confidence_score=draft.confidence_score,
        confidence_level=draft.confidence_level.value,
        confidence_reasoning=draft.confidence_reasoning,
        pii_entity_count=draft.pii_entity_count,
        pii_categories=list(draft.pii_categories),
        source_references=[r.model_dump(mode="json") for r in draft.source_references],
        is_update=draft.is_update,
        original_document_id=draft.original_document_id,
        changes_made=list(draft.changes_made),
        status=draft.status.value,
        processing_metadata=dict(draft.processing_metadata),
        created_at=draft.created_at or datetime.now(timezone.utc),
    )


def _draft(rec: DraftDocumentRecord) -> DraftDocument:
    return DraftDocument(
        id=rec.id,
        organization_id=rec.organization_id,
        source_id=rec.source_id,
        external_id=rec.external_id,
        content_digest=rec.content_digest,
        title=rec.title,
        content=rec.content,
        summary=rec.summary,
        topics=rec.topics or [],
        confidence_score=rec.confidence_score,
        confidence_level=rec.confidence_level,
        confidence_reasoning=rec.confidence_reasoning,
        pii_entity_count=rec.pii_entity_count or 0,
        pii_categories=rec.pii_categories or [],
        source_references=[SourceReference.model_validate(r) for r in rec.source_references or []],
        is_update=bool(rec.is_update),
        original_document_id=rec.original_document_id,
        changes_made=rec.changes_made or [],
        status=rec.status,
        processing_metadata=rec.processing_metadata or {},
        created_at=_utc(rec.created_at),
    )


def _operation(rec: SyncOperationRecord) -> SyncOperation:
    return SyncOperation(
        id=rec.id,
        source_id=rec.source_id,
        kind=rec.kind,
        state=rec.state,
        items_processed=rec.items_processed or 0,
        items_created=rec.items_created or 0,
        items_updated=rec.items_updated or 0,
        error_message=rec.error_message,
        cursor_before=rec.cursor_before,
        cursor_after=rec.cursor_after,
        started_at=_utc(rec.started_at),
        completed_at=_utc(rec.completed_at),
    )
