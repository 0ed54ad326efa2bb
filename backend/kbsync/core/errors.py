"""
Error Taxonomy
===============
Exceptions raised across source adapters, the sync engine, and persistence.

AI-stage problems are not represented here: those stages return an
``Outcome`` (see ``kbsync.core.results``) and never raise.
"""

from typing import Optional


class KbSyncError(Exception):
    """Base for all Knowledge Base Sync errors."""


class ProviderError(KbSyncError):
    """An external provider call failed for a non-transient reason."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class SourceAuthError(ProviderError):
    """Credentials for a connected source are expired or revoked.

    Fails the whole sync operation; the cursor is left untouched and the
    user is asked to reconnect.
    """


class TransientProviderError(ProviderError):
    """Timeout, throttling (429) or 5xx — safe to retry with backoff."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, status_code)
        self.retry_after = retry_after


class ContentQualityError(KbSyncError):
    """Input content is empty or too short to enrich."""


class PersistenceError(KbSyncError):
    """The datastore rejected or failed an operation."""


class ConcurrentSyncError(KbSyncError):
    """A sync operation is already running for this source."""

    def __init__(self, source_id: str):
        super().__init__(f"Sync already running for source {source_id}")
        self.source_id = source_id


class SourceNotFoundError(KbSyncError):
    """No active connected source with this id."""

    def __init__(self, source_id: str):
        super().__init__(f"Source {source_id} not found")
        self.source_id = source_id
