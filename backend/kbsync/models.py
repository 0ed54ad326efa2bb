"""
Knowledge Base Sync — Data Models
===================================
Core Pydantic models for connected sources, changed items, sync operations,
PII entities, confidence results, and draft documents.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from datetime import datetime

from pydantic import BaseModel, Field
from typing_extensions import Annotated


# ---------------------------------------------------------------------------
# Sources
# ---------------------------------------------------------------------------
class ProviderType(str, Enum):
    """External collaboration providers."""
    TEAMS = "teams"
    GOOGLE_DRIVE = "google_drive"


class ConnectedSource(BaseModel):
    """A user's authorized link to one external provider."""
    id: str
    provider: ProviderType
    name: str
    owner_id: str
    organization_id: str
    # Teams: "<team_id>/<channel_id>" keys; Drive: folder ids
    selected_scope: List[str] = Field(default_factory=list)
    cursor: Optional[str] = None
    last_checked_at: Optional[datetime] = None
    is_active: bool = True
    sync_frequency_minutes: int = 15
    # Access credentials produced by the OAuth flow (opaque to the engine)
    credentials: Dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None


# ---------------------------------------------------------------------------
# Changed items (tagged union)
# ---------------------------------------------------------------------------
class ItemKind(str, Enum):
    TEAMS_MESSAGE = "teams_message"
    DRIVE_FILE = "drive_file"


class _ChangedItemBase(BaseModel):
    external_id: str
    title: str
    content: Optional[str] = None
    author: Optional[str] = None
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    source_url: Optional[str] = None
    removed: bool = False

    @property
    def provider(self) -> ProviderType:
        raise NotImplementedError

    @property
    def is_container(self) -> bool:
        return False

    @property
    def participants(self) -> List[str]:
        return [self.author] if self.author else []


class TeamsMessageItem(_ChangedItemBase):
    """A channel message from Microsoft Teams."""
    kind: Literal["teams_message"] = "teams_message"
    team_id: str
    channel_id: str
    channel_name: Optional[str] = None
    reply_count: int = 0
    is_system: bool = False
    mentioned: List[str] = Field(default_factory=list)

    @property
    def provider(self) -> ProviderType:
        return ProviderType.TEAMS

    @property
    def scope_key(self) -> str:
        return f"{self.team_id}/{self.channel_id}"

    @property
    def is_container(self) -> bool:
        return self.is_system

    @property
    def participants(self) -> List[str]:
        people = [self.author] if self.author else []
        people.extend(m for m in self.mentioned if m not in people)
        return people


class DriveFileItem(_ChangedItemBase):
    """A file from Google Drive."""
    kind: Literal["drive_file"] = "drive_file"
    mime_type: str = ""
    parents: List[str] = Field(default_factory=list)
    trashed: bool = False
    size_bytes: Optional[int] = None

    @property
    def provider(self) -> ProviderType:
        return ProviderType.GOOGLE_DRIVE

    @property
    def is_container(self) -> bool:
        return self.mime_type == "application/vnd.google-apps.folder"


ChangedItem = Annotated[
    Union[TeamsMessageItem, DriveFileItem], Field(discriminator="kind")
]


class ChangeBatch(BaseModel):
    """What a source adapter returns for one ``list_changes`` call."""
    items: List[ChangedItem] = Field(default_factory=list)
    new_cursor: Optional[str] = None
    total_checked: int = 0


# ---------------------------------------------------------------------------
# State & ledger
# ---------------------------------------------------------------------------
class FileState(BaseModel):
    """Last-seen digest of one external item within an organization."""
    organization_id: str
    external_id: str
    source_id: Optional[str] = None
    content_digest: str
    modified_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None


class SyncKind(str, Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class SyncState(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncOperation(BaseModel):
    """One detection/ingestion run for one source."""
    id: str
    source_id: str
    kind: SyncKind = SyncKind.SCHEDULED
    state: SyncState = SyncState.RUNNING
    items_processed: int = 0
    items_created: int = 0
    items_updated: int = 0
    error_message: Optional[str] = None
    cursor_before: Optional[str] = None
    cursor_after: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------
class DocumentDomain(str, Enum):
    """Document-type taxonomy used to pick a structuring template."""
    TECHNICAL_GUIDE = "TECHNICAL_GUIDE"
    HR_POLICY = "HR_POLICY"
    MEETING_NOTES = "MEETING_NOTES"
    PROJECT_PLAN = "PROJECT_PLAN"
    TROUBLESHOOTING = "TROUBLESHOOTING"
    CUSTOMER_SUPPORT = "CUSTOMER_SUPPORT"
    DEFAULT_SOP = "DEFAULT_SOP"
    AI_DETERMINED = "AI_DETERMINED"


class PIIEntity(BaseModel):
    """A detected sensitive span."""
    text: str
    category: str
    confidence: float
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


class SourceReference(BaseModel):
    """Pointer from an enriched document back to its raw source item."""
    provider: ProviderType
    external_id: str
    title: str = ""
    original_content: str = ""
    author: Optional[str] = None
    created_at: Optional[datetime] = None
    source_url: Optional[str] = None
    participants: List[str] = Field(default_factory=list)
    message_count: Optional[int] = None


class SourceMetadata(BaseModel):
    """Per-source signals consumed by the confidence scorer."""
    provider: ProviderType
    author_count: int = 0
    message_count: Optional[int] = None
    file_size: Optional[int] = None
    last_modified: datetime
    participants: List[str] = Field(default_factory=list)


class TriageLevel(str, Enum):
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


class ConfidenceFactors(BaseModel):
    content_clarity: float
    information_density: float
    source_consistency: float
    authority: float


class AIAssessment(BaseModel):
    """Parsed output of the external quality assessment."""
    overall_score: Optional[float] = None
    content_clarity: Optional[float] = None
    information_density: Optional[float] = None
    source_consistency: Optional[float] = None
    authority: Optional[float] = None
    reasoning: Optional[str] = None
    recommendations: Optional[List[str]] = None


class SourceQualityLevel(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class SourceQuality(BaseModel):
    """Structural quality of the original, pre-enrichment content."""
    level: SourceQualityLevel
    length: int
    penalty: float
    signals: Dict[str, float] = Field(default_factory=dict)


class ConfidenceResult(BaseModel):
    """Immutable output of the confidence scorer."""
    model_config = {"frozen": True}

    score: float
    level: TriageLevel
    factors: ConfidenceFactors
    reasoning: str
    recommendations: Optional[List[str]] = None
    source_quality_penalty: Optional[float] = None
    ai_driven: bool = False


class EnrichedResult(BaseModel):
    """Output of the enrichment pipeline for one content item."""
    structured_content: str
    redacted_content: str
    summary: str
    topics: List[str] = Field(default_factory=list)
    confidence: ConfidenceResult
    pii_entities: List[PIIEntity] = Field(default_factory=list)
    domain: DocumentDomain = DocumentDomain.DEFAULT_SOP
    processing_time_ms: int = 0
    tokens_used: int = 0
    fallbacks: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Draft documents
# ---------------------------------------------------------------------------
class DraftStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUPERSEDED = "superseded"


class DraftDocument(BaseModel):
    """Enrichment output awaiting human review."""
    id: str
    organization_id: str
    source_id: str
    external_id: str
    content_digest: str
    title: str
    content: str
    summary: str
    topics: List[str] = Field(default_factory=list)
    confidence_score: float
    confidence_level: TriageLevel
    confidence_reasoning: str
    pii_entity_count: int = 0
    pii_categories: List[str] = Field(default_factory=list)
    source_references: List[SourceReference] = Field(default_factory=list)
    is_update: bool = False
    original_document_id: Optional[str] = None
    changes_made: List[str] = Field(default_factory=list)
    status: DraftStatus = DraftStatus.PENDING
    processing_metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class IngestionResult(BaseModel):
    """Aggregate result of ingesting one batch of changed items."""
    documents_created: int = 0
    documents_updated: int = 0
    errors: List[str] = Field(default_factory=list)
    # Failures worth re-delivering (everything except unusable content)
    retryable_failures: int = 0
    processing_time_ms: int = 0
