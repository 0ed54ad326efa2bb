"""
Diff Summarizer
================
Short, human-readable list of what changed between two revisions of a
document (at most five entries).

Two tiers:
1. AI comparison of bounded excerpts, parsed defensively as a JSON array.
2. ``heuristic_changes``: line delta, added/removed headings, shifted key
   terms, and a generic "Content updated" sentinel. Deterministic and
   dependency-free, so it never fails.
"""

import asyncio
import re
from collections import Counter
from typing import List, Optional

import structlog

from kbsync.ai.completion import TextCompletion
from kbsync.ai.parsing import parse_llm_json_array
from kbsync.ai.prompts import PromptTemplates
from kbsync.core.results import Outcome

logger = structlog.get_logger()

MAX_CHANGES = 5
EXCERPT_CHARS = 6000  # ~3000 tokens across both excerpts
DIFF_TEMPERATURE = 0.2
DIFF_MAX_TOKENS = 300
TOP_KEYWORDS = 10

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "by", "is", "are", "was", "were", "be", "been", "this", "that",
    "these", "those", "it", "its", "as", "from", "will", "can", "should",
    "have", "has", "had", "not", "all", "any", "our", "your", "their", "you",
    "we", "they", "then", "than", "also", "into", "when", "which", "what",
})

_HEADING = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$")
_WORD = re.compile(r"[a-z][a-z0-9_\-]{2,}")


# ---------------------------------------------------------------------------
# Heuristic tier
# ---------------------------------------------------------------------------
def _lines(text: str) -> List[str]:
    return [line for line in text.splitlines() if line.strip()]


def _headings(text: str) -> List[str]:
    found = []
    for line in text.splitlines():
        match = _HEADING.match(line)
        if match and match.group(1) not in found:
            found.append(match.group(1))
    return found


def _keywords(text: str) -> List[str]:
    words = [w for w in _WORD.findall(text.lower()) if w not in STOP_WORDS]
    ranked = sorted(Counter(words).items(), key=lambda kv: (-kv[1], kv[0]))
    return [word for word, _ in ranked[:TOP_KEYWORDS]]


def _plural(n: int, noun: str) -> str:
    return f"{n} {noun}" if n == 1 else f"{n} {noun}s"


def heuristic_changes(old: str, new: str) -> List[str]:
    """Deterministic change list; empty only when the texts are equivalent."""
    if old.strip() == new.strip():
        return []

    changes: List[str] = []

    delta = len(_lines(new)) - len(_lines(old))
    if delta > 0:
        changes.append(f"Added {_plural(delta, 'line')}")
    elif delta < 0:
        changes.append(f"Removed {_plural(-delta, 'line')}")

    old_headings, new_headings = _headings(old), _headings(new)
    changes.extend(f'Added section "{h}"' for h in new_headings if h not in old_headings)
    changes.extend(f'Removed section "{h}"' for h in old_headings if h not in new_headings)

    old_terms, new_terms = _keywords(old), _keywords(new)
    added_terms = [t for t in new_terms if t not in old_terms]
    removed_terms = [t for t in old_terms if t not in new_terms]
    if added_terms:
        changes.append("New key terms: " + ", ".join(added_terms[:5]))
    if removed_terms:
        changes.append("Removed key terms: " + ", ".join(removed_terms[:5]))

    if not changes:
        changes.append("Content updated")
    return changes[:MAX_CHANGES]


# ---------------------------------------------------------------------------
# Summarizer
# ---------------------------------------------------------------------------
class DiffSummarizer:
    def __init__(self, completion: Optional[TextCompletion] = None, timeout: float = 30.0):
        self.completion = completion
        self.timeout = timeout

    async def summarize(self, old: str, new: str) -> List[str]:
        return (await self.compare(old, new)).value

    async def compare(self, old: str, new: str) -> Outcome[List[str]]:
        if old.strip() == new.strip():
            return Outcome.primary([])

        if self.completion is None:
            return Outcome.fallback(heuristic_changes(old, new), "completion not configured")

        prompt = PromptTemplates.diff_summary(old[:EXCERPT_CHARS], new[:EXCERPT_CHARS])
        try:
            result = await asyncio.wait_for(
                self.completion.complete(
                    prompt.messages(), temperature=DIFF_TEMPERATURE, max_tokens=DIFF_MAX_TOKENS
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Diff summary timed out, using heuristic", timeout=self.timeout)
            return Outcome.fallback(heuristic_changes(old, new), "timeout")
        except Exception as e:
            logger.warning("Diff summary failed, using heuristic", error=str(e))
            return Outcome.fallback(heuristic_changes(old, new), str(e))

        parsed = parse_llm_json_array(result.text)
        changes = [c.strip() for c in parsed or [] if isinstance(c, str) and c.strip()]
        if not changes:
            logger.warning("Unparseable diff summary, using heuristic", raw=result.text[:80])
            return Outcome.fallback(
                heuristic_changes(old, new), "unparseable response", tokens_used=result.tokens_used
            )
        return Outcome.primary(changes[:MAX_CHANGES], tokens_used=result.tokens_used)
