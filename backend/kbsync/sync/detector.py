"""
Change Detection Engine
========================
Drives source adapters on a per-source cadence:

    list_changes(cursor) → filter (removed / out of scope / containers)
        → fetch content → state tracker → ingestion → advance cursor

Failure policy:
- Authorization or provider failure fails the operation closed; the cursor
  is left untouched so the same range is retried next cycle.
- A per-item fetch failure skips only that item.
- The cursor is advanced atomically with the operation id, and only after
  ingestion has recorded every item (at-least-once; digests absorb
  duplicates). It is held back while retryable item failures remain.

A source is never processed twice concurrently: a per-source ``asyncio.Lock``
guards this process and the ledger's unique running operation guards the
rest of the fleet.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

import structlog

from kbsync.connectors.base import SourceAdapter
from kbsync.connectors.registry import AdapterFactory
from kbsync.core.audit import AuditEventType
from kbsync.core.errors import ConcurrentSyncError, KbSyncError, SourceAuthError, SourceNotFoundError
from kbsync.db.repository import Repository
from kbsync.ingestion.service import IngestionService
from kbsync.models import ChangedItem, ConnectedSource, IngestionResult, SyncKind, SyncOperation
from kbsync.sync.ledger import SyncLedger
from kbsync.sync.state import StateTracker

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChangeDetectionEngine:
    def __init__(
        self,
        repository: Repository,
        adapter_factory: AdapterFactory,
        ingestion: IngestionService,
        ledger: SyncLedger,
        state: StateTracker,
        clock: Callable[[], datetime] = _utcnow,
        stale_after: timedelta = timedelta(minutes=60),
    ):
        self.repository = repository
        self.adapter_factory = adapter_factory
        self.ingestion = ingestion
        self.ledger = ledger
        self.state = state
        self.clock = clock
        self.stale_after = stale_after
        self._locks: Dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    @staticmethod
    def is_due(source: ConnectedSource, now: datetime) -> bool:
        """Never checked, or at least ``sync_frequency_minutes`` since the last check."""
        if source.last_checked_at is None:
            return True
        last = source.last_checked_at
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last >= timedelta(minutes=source.sync_frequency_minutes)

    async def detect_all(self, kind: SyncKind = SyncKind.SCHEDULED, force: bool = False) -> List[SyncOperation]:
        """Run every due active source (every active source when forced)."""
        now = self.clock()
        expired = await self.repository.expire_stale_operations(now - self.stale_after, now)
        if expired:
            logger.warning("Expired abandoned sync operations", count=expired)

        sources = await self.repository.list_active_sources()
        due = [s for s in sources if force or self.is_due(s, now)]
        logger.info("Change detection scan", active=len(sources), due=len(due), kind=kind.value)

        settled = await asyncio.gather(
            *(self.detect_one(source, kind) for source in due),
            return_exceptions=True,
        )

        operations: List[SyncOperation] = []
        for source, value in zip(due, settled):
            if isinstance(value, ConcurrentSyncError):
                logger.info("Sync already running, skipping", source_id=source.id)
                await self.ledger.record(
                    AuditEventType.SYNC_SKIPPED,
                    "sync_skipped",
                    outcome="skipped",
                    source_id=source.id,
                    organization_id=source.organization_id,
                    details={"reason": "already running"},
                )
            elif isinstance(value, Exception):
                logger.error("Source sync crashed", source_id=source.id, error=str(value))
            elif isinstance(value, BaseException):
                raise value
            else:
                operations.append(value)
        return operations

    async def detect_one(self, source: ConnectedSource, kind: SyncKind = SyncKind.SCHEDULED) -> SyncOperation:
        lock = self._locks.setdefault(source.id, asyncio.Lock())
        if lock.locked():
            raise ConcurrentSyncError(source.id)
        async with lock:
            return await self._run(source, kind)

    # ------------------------------------------------------------------
    # Operational controls
    # ------------------------------------------------------------------
    async def trigger_now(self, source_id: Optional[str] = None) -> List[SyncOperation]:
        """Manual check bypassing due-ness, for one source or all of them."""
        await self.ledger.record(
            AuditEventType.CONTROL_TRIGGER,
            "manual_trigger",
            source_id=source_id,
            resource=f"source:{source_id}" if source_id else "sources:all",
        )
        if source_id is None:
            return await self.detect_all(kind=SyncKind.MANUAL, force=True)

        source = await self.repository.get_source(source_id)
        if source is None or not source.is_active:
            raise SourceNotFoundError(source_id)
        return [await self.detect_one(source, SyncKind.MANUAL)]

    async def reset_cursor(self, source_id: str) -> None:
        """Null the cursor so the next check performs a full scan."""
        if not await self.repository.reset_cursor(source_id):
            raise SourceNotFoundError(source_id)
        logger.info("Cursor reset", source_id=source_id)
        await self.ledger.record(
            AuditEventType.CONTROL_CURSOR_RESET,
            "cursor_reset",
            source_id=source_id,
            resource=f"source:{source_id}",
        )

    # ------------------------------------------------------------------
    # One run
    # ------------------------------------------------------------------
    async def _run(self, source: ConnectedSource, kind: SyncKind) -> SyncOperation:
        op = await self.ledger.open(source, kind)
        logger.info("Sync started", source_id=source.id, provider=source.provider.value, full_scan=source.cursor is None)

        if not source.selected_scope:
            # Nothing selected: nothing can be in scope, keep the cursor
            await self.repository.advance_cursor(source.id, op.id, source.cursor, self.clock())
            return await self.ledger.complete(op, source, 0, IngestionResult(), cursor_after=source.cursor)

        adapter: Optional[SourceAdapter] = None
        try:
            adapter = self.adapter_factory(source)
            batch = await adapter.list_changes(source.cursor)
            changed, fetch_errors = await self._collect(source, adapter, batch.items)
            result = await self.ingestion.ingest(source, changed)
            result.errors.extend(fetch_errors)
            result.retryable_failures += len(fetch_errors)

            cursor_after = batch.new_cursor
            if result.retryable_failures:
                logger.warning(
                    "Holding cursor for retry",
                    source_id=source.id,
                    failed=result.retryable_failures,
                )
                cursor_after = source.cursor

            if not await self.repository.advance_cursor(source.id, op.id, cursor_after, self.clock()):
                logger.warning("Cursor not advanced, operation no longer running", source_id=source.id, operation_id=op.id)

            done = await self.ledger.complete(op, source, len(changed), result, cursor_after=cursor_after)
            logger.info(
                "Sync completed",
                source_id=source.id,
                checked=batch.total_checked,
                processed=len(changed),
                created=result.documents_created,
                updated=result.documents_updated,
                errors=len(result.errors),
            )
            return done
        except SourceAuthError as e:
            await self.ledger.record(
                AuditEventType.SOURCE_AUTH_FAILURE,
                "source_auth_failure",
                outcome="failure",
                source_id=source.id,
                organization_id=source.organization_id,
                operation_id=op.id,
                details={"error": str(e)},
            )
            return await self._fail(source, op, f"Authorization failed, reconnect required: {e}")
        except KbSyncError as e:
            return await self._fail(source, op, str(e))
        except Exception as e:
            await self._fail(source, op, f"Unexpected error: {e}")
            raise
        finally:
            if adapter is not None:
                await adapter.aclose()

    async def _collect(
        self, source: ConnectedSource, adapter: SourceAdapter, items: List[ChangedItem]
    ) -> Tuple[List[ChangedItem], List[str]]:
        """Filter, fetch and de-duplicate. Returns (items needing ingestion, fetch errors)."""
        changed: List[ChangedItem] = []
        fetch_errors: List[str] = []
        skipped = 0

        for item in items:
            if item.removed or getattr(item, "trashed", False) or item.is_container:
                skipped += 1
                continue

            try:
                if not await adapter.is_in_scope(item, source.selected_scope):
                    skipped += 1
                    continue
                content = item.content
                if content is None:
                    content = await adapter.fetch_content(item.external_id)
            except SourceAuthError:
                raise
            except Exception as e:
                logger.error("Item fetch failed, skipping", source_id=source.id, external_id=item.external_id, error=str(e))
                fetch_errors.append(f"{item.external_id}: {e}")
                continue

            decision = await self.state.should_process(source.organization_id, item.external_id, content)
            if decision.process:
                changed.append(item.model_copy(update={"content": content}))
            else:
                skipped += 1

        logger.debug("Changes filtered", source_id=source.id, received=len(items), changed=len(changed), skipped=skipped)
        return changed, fetch_errors

    async def _fail(self, source: ConnectedSource, op: SyncOperation, message: str) -> SyncOperation:
        logger.error("Sync failed", source_id=source.id, operation_id=op.id, error=message)
        # last_checked_at stays put so the source is retried next cycle
        await self.repository.record_source_error(source.id, message)
        return await self.ledger.fail(op, source, message)
