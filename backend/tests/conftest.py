"""
Shared fixtures and in-memory fakes for the external collaborators:
persistence, text completion, entity recognition and source adapters.
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import pytest

from kbsync.ai.completion import Completion, TextCompletion
from kbsync.ai.entities import EntityRecognizer
from kbsync.config import Settings
from kbsync.connectors.base import SourceAdapter
from kbsync.container import build_container
from kbsync.core.audit import AuditEvent
from kbsync.core.errors import ConcurrentSyncError, PersistenceError
from kbsync.db.repository import Repository
from kbsync.models import (
    ChangeBatch,
    ChangedItem,
    ConfidenceResult,
    ConnectedSource,
    DraftDocument,
    DraftStatus,
    DriveFileItem,
    FileState,
    PIIEntity,
    ProviderType,
    SyncOperation,
    SyncState,
    TeamsMessageItem,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------
class InMemoryRepository(Repository):
    def __init__(self):
        self.sources: Dict[str, ConnectedSource] = {}
        self.file_states: Dict[Tuple[str, str], FileState] = {}
        self.drafts: Dict[str, DraftDocument] = {}
        self.operations: Dict[str, SyncOperation] = {}
        self.audit: List[AuditEvent] = []
        self._op_seq = 0

    # ---- Sources ----
    async def list_active_sources(self):
        return [s.model_copy() for s in self.sources.values() if s.is_active]

    async def get_source(self, source_id):
        source = self.sources.get(source_id)
        return source.model_copy() if source else None

    async def save_source(self, source):
        self.sources[source.id] = source.model_copy()
        return source

    async def advance_cursor(self, source_id, operation_id, new_cursor, checked_at):
        op = self.operations.get(operation_id)
        source = self.sources.get(source_id)
        if source is None or op is None or op.state != SyncState.RUNNING or op.source_id != source_id:
            return False
        self.sources[source_id] = source.model_copy(
            update={"cursor": new_cursor, "last_checked_at": checked_at, "last_error": None}
        )
        return True

    async def reset_cursor(self, source_id):
        source = self.sources.get(source_id)
        if source is None:
            return False
        self.sources[source_id] = source.model_copy(update={"cursor": None})
        return True

    async def touch_last_check(self, source_id, checked_at):
        source = self.sources[source_id]
        self.sources[source_id] = source.model_copy(update={"last_checked_at": checked_at})

    async def record_source_error(self, source_id, error):
        source = self.sources[source_id]
        self.sources[source_id] = source.model_copy(update={"last_error": error})

    # ---- File states ----
    async def get_file_state(self, organization_id, external_id):
        return self.file_states.get((organization_id, external_id))

    async def upsert_file_state(self, state):
        self.file_states[(state.organization_id, state.external_id)] = state
        return state

    async def touch_file_state(self, organization_id, external_id, synced_at):
        key = (organization_id, external_id)
        if key in self.file_states:
            self.file_states[key] = self.file_states[key].model_copy(update={"last_synced_at": synced_at})

    # ---- Drafts ----
    async def create_draft(self, draft):
        for existing in self.drafts.values():
            if (existing.organization_id, existing.external_id, existing.content_digest) == (
                draft.organization_id, draft.external_id, draft.content_digest
            ):
                return existing, False
        self.drafts[draft.id] = draft
        return draft, True

    async def find_latest_document_for_external_id(self, organization_id, external_id):
        candidates = [
            d for d in self.drafts.values()
            if d.organization_id == organization_id
            and d.external_id == external_id
            and d.status != DraftStatus.REJECTED
        ]
        if not candidates:
            return None
        candidates.sort(
            key=lambda d: (d.status != DraftStatus.APPROVED, -(d.created_at or NOW).timestamp())
        )
        return candidates[0]

    async def supersede_drafts(self, organization_id, external_id, except_id):
        count = 0
        for draft_id, d in list(self.drafts.items()):
            if (
                d.organization_id == organization_id
                and d.external_id == external_id
                and d.status == DraftStatus.PENDING
                and d.id != except_id
            ):
                self.drafts[draft_id] = d.model_copy(update={"status": DraftStatus.SUPERSEDED})
                count += 1
        return count

    async def list_pending_drafts(self, organization_id=None):
        return [
            d for d in self.drafts.values()
            if d.status == DraftStatus.PENDING and (organization_id is None or d.organization_id == organization_id)
        ]

    async def update_draft_confidence(self, draft_id, result: ConfidenceResult):
        if draft_id not in self.drafts:
            raise PersistenceError(f"Draft {draft_id} not found")
        self.drafts[draft_id] = self.drafts[draft_id].model_copy(
            update={
                "confidence_score": result.score,
                "confidence_level": result.level,
                "confidence_reasoning": result.reasoning,
            }
        )

    # ---- Sync operations ----
    async def open_operation(self, source_id, kind, cursor_before, started_at):
        if any(o.source_id == source_id and o.state == SyncState.RUNNING for o in self.operations.values()):
            raise ConcurrentSyncError(source_id)
        self._op_seq += 1
        op = SyncOperation(
            id=f"op-{self._op_seq}",
            source_id=source_id,
            kind=kind,
            state=SyncState.RUNNING,
            cursor_before=cursor_before,
            started_at=started_at,
        )
        self.operations[op.id] = op
        return op

    async def finalize_operation(
        self, operation_id, state, completed_at, items_processed=0, items_created=0,
        items_updated=0, error_message=None, cursor_after=None,
    ):
        op = self.operations.get(operation_id)
        if op is None or op.state != SyncState.RUNNING:
            raise PersistenceError(f"Sync operation {operation_id} is not running")
        done = op.model_copy(
            update={
                "state": state,
                "completed_at": completed_at,
                "items_processed": items_processed,
                "items_created": items_created,
                "items_updated": items_updated,
                "error_message": error_message,
                "cursor_after": cursor_after,
            }
        )
        self.operations[operation_id] = done
        return done

    async def list_operations(self, source_id, limit=20):
        ops = [o for o in self.operations.values() if o.source_id == source_id]
        ops.sort(key=lambda o: o.started_at, reverse=True)
        return ops[:limit]

    async def expire_stale_operations(self, started_before, completed_at):
        count = 0
        for op_id, op in list(self.operations.items()):
            if op.state == SyncState.RUNNING and op.started_at < started_before:
                self.operations[op_id] = op.model_copy(
                    update={"state": SyncState.FAILED, "completed_at": completed_at}
                )
                count += 1
        return count

    # ---- Audit / health ----
    async def record_audit(self, event):
        self.audit.append(event)

    async def ping(self):
        return True


# ---------------------------------------------------------------------------
# AI collaborators
# ---------------------------------------------------------------------------
Responder = Callable[[List[Dict[str, str]]], Union[str, Exception]]


class FakeCompletion(TextCompletion):
    """Answers from a responder function; exceptions returned by it are raised."""

    def __init__(self, responder: Responder, tokens_per_call: int = 10):
        self.responder = responder
        self.tokens_per_call = tokens_per_call
        self.calls: List[List[Dict[str, str]]] = []

    async def complete(self, messages, temperature=0.0, max_tokens=500):
        self.calls.append(messages)
        answer = self.responder(messages)
        if isinstance(answer, Exception):
            raise answer
        return Completion(text=answer, tokens_used=self.tokens_per_call)


class FakeRecognizer(EntityRecognizer):
    def __init__(self, entities: Optional[List[PIIEntity]] = None, error: Optional[Exception] = None):
        self.entities = entities or []
        self.error = error
        self.calls = 0

    async def detect_entities(self, text, categories, language="en"):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.entities)


# ---------------------------------------------------------------------------
# Source adapters
# ---------------------------------------------------------------------------
class FakeAdapter(SourceAdapter):
    def __init__(
        self,
        items: Sequence[ChangedItem] = (),
        new_cursor: Optional[str] = "cursor-1",
        contents: Optional[Dict[str, str]] = None,
        fetch_errors: Optional[Dict[str, Exception]] = None,
        list_error: Optional[Exception] = None,
        provider: ProviderType = ProviderType.TEAMS,
    ):
        self.provider = provider
        self.items = list(items)
        self.new_cursor = new_cursor
        self.contents = contents or {}
        self.fetch_errors = fetch_errors or {}
        self.list_error = list_error
        self.cursors_seen: List[Optional[str]] = []
        self.closed = False

    async def list_changes(self, cursor):
        self.cursors_seen.append(cursor)
        if self.list_error is not None:
            raise self.list_error
        return ChangeBatch(items=self.items, new_cursor=self.new_cursor, total_checked=len(self.items))

    async def fetch_content(self, external_id):
        if external_id in self.fetch_errors:
            raise self.fetch_errors[external_id]
        return self.contents[external_id]

    async def is_in_scope(self, item, scope_ids):
        if isinstance(item, TeamsMessageItem):
            return item.scope_key in scope_ids
        if isinstance(item, DriveFileItem):
            return any(p in scope_ids for p in item.parents)
        return False

    async def aclose(self):
        self.closed = True


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
def make_source(**overrides) -> ConnectedSource:
    data = dict(
        id="src-1",
        provider=ProviderType.TEAMS,
        name="Engineering Teams",
        owner_id="user-1",
        organization_id="org-1",
        selected_scope=["team-1/channel-1"],
        sync_frequency_minutes=15,
    )
    data.update(overrides)
    return ConnectedSource(**data)


def make_message(external_id: str, content: Optional[str], **overrides) -> TeamsMessageItem:
    data = dict(
        external_id=external_id,
        title="Message from Ada Lovelace in General",
        content=content,
        author="Ada Lovelace",
        created_at=NOW - timedelta(days=1),
        modified_at=NOW - timedelta(days=1),
        team_id="team-1",
        channel_id="channel-1",
        channel_name="General",
    )
    data.update(overrides)
    return TeamsMessageItem(**data)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        azure_openai_endpoint=None,
        azure_openai_api_key=None,
        azure_language_endpoint=None,
        azure_language_api_key=None,
        enrichment_batch_cooldown_seconds=0.0,
    )


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def adapters() -> Dict[str, FakeAdapter]:
    """Per-source adapters; tests register ``adapters[source_id] = FakeAdapter(...)``."""
    return {}


@pytest.fixture
def container(test_settings, repository, adapters):
    return build_container(
        test_settings,
        repository=repository,
        adapter_factory=lambda source: adapters[source.id],
    )
