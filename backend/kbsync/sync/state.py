"""
Content Hasher / State Tracker
===============================
Suppresses no-op re-ingestion by comparing a SHA-256 digest of the trimmed raw
content against the last digest recorded for the same (organization, external id).

The digest is committed by the caller only after the item's draft is stored, so
a failed enrichment is retried on the next run.
"""

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog

from kbsync.db.repository import Repository
from kbsync.models import FileState

logger = structlog.get_logger()


class ContentHasher:
    """Byte-exact digest of trimmed content."""

    @staticmethod
    def digest(content: str) -> str:
        return hashlib.sha256(content.strip().encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class ProcessDecision:
    process: bool
    digest: str
    previous_digest: Optional[str] = None

    @property
    def is_new(self) -> bool:
        return self.previous_digest is None


class StateTracker:
    def __init__(
        self,
        repository: Repository,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.repository = repository
        self.clock = clock

    async def should_process(self, organization_id: str, external_id: str, raw_content: str) -> ProcessDecision:
        digest = ContentHasher.digest(raw_content)
        state = await self.repository.get_file_state(organization_id, external_id)

        if state is not None and state.content_digest == digest:
            await self.repository.touch_file_state(organization_id, external_id, self.clock())
            logger.debug("Content unchanged, skipping", external_id=external_id)
            return ProcessDecision(process=False, digest=digest, previous_digest=state.content_digest)

        return ProcessDecision(
            process=True,
            digest=digest,
            previous_digest=state.content_digest if state else None,
        )

    async def commit(
        self,
        organization_id: str,
        external_id: str,
        digest: str,
        modified_at: Optional[datetime] = None,
        source_id: Optional[str] = None,
    ) -> FileState:
        return await self.repository.upsert_file_state(
            FileState(
                organization_id=organization_id,
                external_id=external_id,
                source_id=source_id,
                content_digest=digest,
                modified_at=modified_at,
                last_synced_at=self.clock(),
            )
        )
