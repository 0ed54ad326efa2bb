"""
Explicit fallback results.

Stages that can degrade (classification, structuring, topics, AI assessment,
diff summaries, entity recognition) return an ``Outcome`` so that callers see
in the signature whether the primary path or a fallback produced the value.
"""

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    value: T
    fallback_used: bool = False
    reason: Optional[str] = None
    tokens_used: int = 0

    @classmethod
    def primary(cls, value: T, tokens_used: int = 0) -> "Outcome[T]":
        return cls(value=value, tokens_used=tokens_used)

    @classmethod
    def fallback(cls, value: T, reason: str, tokens_used: int = 0) -> "Outcome[T]":
        return cls(value=value, fallback_used=True, reason=reason, tokens_used=tokens_used)
