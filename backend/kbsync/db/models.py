"""
Database Models — SQLAlchemy ORM
==================================
Connected sources, file states, draft documents, sync operations, audit logs.

JSON columns use JSONB on PostgreSQL and plain JSON elsewhere, so the same
schema runs on SQLite in tests.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Float, Integer, DateTime, Boolean,
    ForeignKey, Index, JSON, UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase

JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ConnectedSourceRecord(Base):
    """A user's authorized link to one external provider."""
    __tablename__ = "connected_sources"

    id = Column(String(64), primary_key=True)
    provider = Column(String(32), nullable=False)
    name = Column(String(256), nullable=False)
    owner_id = Column(String(64), nullable=False)
    organization_id = Column(String(64), nullable=False, index=True)
    selected_scope = Column(JSONType, default=list)
    cursor = Column(Text)
    last_checked_at = Column(DateTime(timezone=True))
    is_active = Column(Boolean, default=True, nullable=False)
    sync_frequency_minutes = Column(Integer, default=15, nullable=False)
    credentials = Column(JSONType, default=dict)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class FileStateRecord(Base):
    """Last-seen content digest per (organization, external id)."""
    __tablename__ = "file_states"

    id = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False)
    external_id = Column(String(256), nullable=False)
    source_id = Column(String(64), ForeignKey("connected_sources.id", ondelete="SET NULL"))
    content_digest = Column(String(64), nullable=False)
    modified_at = Column(DateTime(timezone=True))
    last_synced_at = Column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("organization_id", "external_id", name="uq_file_states_org_external"),
    )


class DraftDocumentRecord(Base):
    """Enrichment output awaiting human review."""
    __tablename__ = "draft_documents"

    id = Column(String(64), primary_key=True)
    organization_id = Column(String(64), nullable=False)
    source_id = Column(String(64), ForeignKey("connected_sources.id", ondelete="SET NULL"))
    external_id = Column(String(256), nullable=False)
    content_digest = Column(String(64), nullable=False)
    title = Column(String(512), nullable=False)
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=False)
    topics = Column(JSONType, default=list)
    confidence_score = Column(Float, nullable=False)
    confidence_level = Column(String(8), nullable=False)
    confidence_reasoning = Column(Text, nullable=False)
    pii_entity_count = Column(Integer, default=0)
    pii_categories = Column(JSONType, default=list)
    source_references = Column(JSONType, default=list)
    is_update = Column(Boolean, default=False)
    original_document_id = Column(String(64))
    changes_made = Column(JSONType, default=list)
    status = Column(String(16), default="pending", nullable=False, index=True)
    processing_metadata = Column(JSONType, default=dict)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "external_id", "content_digest",
            name="uq_draft_documents_org_external_digest",
        ),
        Index("ix_draft_documents_org_external", "organization_id", "external_id"),
    )


class SyncOperationRecord(Base):
    """One detection/ingestion run. Append-only."""
    __tablename__ = "sync_operations"

    id = Column(String(64), primary_key=True)
    source_id = Column(String(64), ForeignKey("connected_sources.id", ondelete="CASCADE"), nullable=False)
    kind = Column(String(16), nullable=False)
    state = Column(String(16), nullable=False)
    items_processed = Column(Integer, default=0)
    items_created = Column(Integer, default=0)
    items_updated = Column(Integer, default=0)
    error_message = Column(Text)
    cursor_before = Column(Text)
    cursor_after = Column(Text)
    started_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    completed_at = Column(DateTime(timezone=True))

    __table_args__ = (
        # At most one running operation per source
        Index(
            "uq_sync_operations_running",
            "source_id",
            unique=True,
            postgresql_where=text("state = 'running'"),
            sqlite_where=text("state = 'running'"),
        ),
        Index("ix_sync_operations_source_started", "source_id", "started_at"),
    )


class AuditLog(Base):
    """Sync and operational-control audit trail."""
    __tablename__ = "audit_logs"

    id = Column(String(64), primary_key=True)
    event_type = Column(String(64), nullable=False, index=True)
    action = Column(String(128), nullable=False)
    outcome = Column(String(16), nullable=False)
    source_id = Column(String(64))
    organization_id = Column(String(64))
    operation_id = Column(String(64))
    resource = Column(String(256))
    details = Column(JSONType, default=dict)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
