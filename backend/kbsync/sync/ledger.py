"""
Sync Operation Ledger
======================
Append-only record of detection/ingestion runs. Each operation is opened in
``running`` state and finalized exactly once; every transition is mirrored to
the audit trail.
"""

from datetime import datetime, timezone
from typing import Callable, List, Optional

import structlog

from kbsync.core.audit import AuditEventType, audit_log
from kbsync.core.errors import PersistenceError
from kbsync.db.repository import Repository
from kbsync.models import ConnectedSource, IngestionResult, SyncKind, SyncOperation, SyncState

logger = structlog.get_logger()


class SyncLedger:
    def __init__(
        self,
        repository: Repository,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.clock = clock

    async def open(self, source: ConnectedSource, kind: SyncKind = SyncKind.SCHEDULED) -> SyncOperation:
        op = await self.repository.open_operation(source.id, kind, source.cursor, self.clock())
        await self._audit(
            AuditEventType.SYNC_STARTED, "sync_started", source, op,
            details={"kind": kind.value, "cursor_before": source.cursor},
        )
        return op

    async def complete(
        self,
        op: SyncOperation,
        source: ConnectedSource,
        items_processed: int,
        result: IngestionResult,
        cursor_after: Optional[str],
    ) -> SyncOperation:
        done = await self.repository.finalize_operation(
            op.id,
            SyncState.COMPLETED,
            completed_at=self.clock(),
            items_processed=items_processed,
            items_created=result.documents_created,
            items_updated=result.documents_updated,
            error_message="; ".join(result.errors) if result.errors else None,
            cursor_after=cursor_after,
        )
        await self._audit(
            AuditEventType.SYNC_COMPLETED, "sync_completed", source, done,
            details={
                "processed": items_processed,
                "created": result.documents_created,
                "updated": result.documents_updated,
                "errors": len(result.errors),
            },
        )
        return done

    async def fail(self, op: SyncOperation, source: ConnectedSource, error: str) -> SyncOperation:
        failed = await self.repository.finalize_operation(
            op.id,
            SyncState.FAILED,
            completed_at=self.clock(),
            error_message=error,
            cursor_after=op.cursor_before,
        )
        await self._audit(
            AuditEventType.SYNC_FAILED, "sync_failed", source, failed,
            outcome="failure", details={"error": error},
        )
        return failed

    async def history(self, source_id: str, limit: int = 20) -> List[SyncOperation]:
        return await self.repository.list_operations(source_id, limit)

    async def record(self, event_type: AuditEventType, action: str, **kwargs) -> None:
        """Write an audit event to the audit logger and the audit table."""
        event = audit_log(event_type, action, **kwargs)
        try:
            await self.repository.record_audit(event)
        except PersistenceError as e:
            # The JSON line above is the primary trail
            logger.warning("Audit persistence failed", action=action, error=str(e))

    async def _audit(
        self,
        event_type: AuditEventType,
        action: str,
        source: ConnectedSource,
        op: SyncOperation,
        outcome: str = "success",
        details: Optional[dict] = None,
    ) -> None:
        await self.record(
            event_type,
            action,
            outcome=outcome,
            source_id=source.id,
            organization_id=source.organization_id,
            operation_id=op.id,
            resource=f"source:{source.id}",
            details=details,
        )
