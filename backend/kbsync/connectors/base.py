"""
Source Adapters — Common Interface
====================================
Every provider adapter normalizes its payloads into ``ChangedItem`` variants
and exposes the same three operations to the change detection engine.
"""

from abc import ABC, abstractmethod
from typing import Optional, Sequence

import structlog
from tenacity import wait_exponential

from kbsync.core.errors import TransientProviderError
from kbsync.models import ChangeBatch, ChangedItem, ProviderType

logger = structlog.get_logger()


class SourceAdapter(ABC):
    """Abstract base for external provider adapters."""

    provider: ProviderType

    @abstractmethod
    async def list_changes(self, cursor: Optional[str]) -> ChangeBatch:
        """Changes since ``cursor``. A None cursor means a full scan."""
        ...

    @abstractmethod
    async def fetch_content(self, external_id: str) -> str:
        """Raw text content of one item."""
        ...

    @abstractmethod
    async def is_in_scope(self, item: ChangedItem, scope_ids: Sequence[str]) -> bool:
        """Whether the item lives under one of the selected channels/folders."""
        ...

    async def aclose(self) -> None:
        """Release provider resources."""
        pass


class RetryAfterWait:
    """tenacity wait strategy: honor ``Retry-After`` when the provider sends one."""

    def __init__(self, base_seconds: float = 0.5, max_seconds: float = 30.0):
        self._fallback = wait_exponential(multiplier=base_seconds, min=base_seconds, max=max_seconds)
        self.max_seconds = max_seconds

    def __call__(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, TransientProviderError) and exc.retry_after is not None:
            return min(max(exc.retry_after, 0.0), self.max_seconds)
        return self._fallback(retry_state)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
