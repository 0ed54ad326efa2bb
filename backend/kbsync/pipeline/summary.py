"""
Text-local helpers for the enrichment pipeline: extractive summary,
deterministic structuring fallback, and topic-list parsing.

Nothing here performs I/O.
"""

import re
from typing import List, Optional, Tuple

from kbsync.ai.parsing import parse_llm_json_array

MAX_TOPICS = 5
SUMMARY_TRUNCATE_AT = 120

_HEADING = re.compile(r"^#{1,6}\s")
_TOP_HEADING = re.compile(r"^#{1,2}\s")
_HEADING_PREFIX = re.compile(r"^#+\s*")
_NUMBERED = re.compile(r"^\d+\.")
_LIST_LINE = re.compile(r"^\s*(?:[-*•+]|\d+[.)])\s+(.*)$")
_FIRST_SENTENCE = re.compile(r"^[^.!?]*[.!?]")
_TOPIC_BULLET = re.compile(r"^\s*[-•*]\s*")


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------
def extract_first_sentence(text: str) -> str:
    """First complete sentence; long unterminated text is cut at a word boundary."""
    clean = re.sub(r"\s+", " ", text).strip()
    match = _FIRST_SENTENCE.match(clean)
    if match:
        return match.group(0).strip()

    if len(clean) > SUMMARY_TRUNCATE_AT:
        truncated = clean[:SUMMARY_TRUNCATE_AT]
        last_space = truncated.rfind(" ")
        if last_space > 80:
            return truncated[:last_space] + "."

    if not clean:
        return "Document content summary not available."
    return clean if clean[-1] in ".!?" else clean + "."


def extract_summary(content: str) -> str:
    """One-sentence extractive summary of structured markdown. Never empty."""
    lines = [line for line in content.split("\n") if line.strip()]

    # 1. An explicit summary / overview section
    for index, line in enumerate(lines):
        lowered = line.lower()
        if "summary" in lowered or "overview" in lowered or "description" in lowered:
            if index < len(lines) - 1:
                following = [
                    l for l in lines[index + 1 : index + 3]
                    if not l.startswith("#") and len(l.strip()) > 10
                ]
                if following:
                    sentence = extract_first_sentence(" ".join(following))
                    if len(sentence) > 20:
                        return sentence
            break

    # 2. First substantial non-heading, non-list paragraph
    for line in lines:
        if (
            not line.startswith("#")
            and not line.startswith("-")
            and not line.startswith("*")
            and not _NUMBERED.match(line)
            and len(line) > 30
        ):
            sentence = extract_first_sentence(line)
            if len(sentence) > 20:
                return sentence
            break

    # 3. Synthesize from the top two headings
    headings = [_HEADING_PREFIX.sub("", l).strip() for l in lines if _TOP_HEADING.match(l)][:2]
    if len(headings) == 1:
        return f"Documentation about {headings[0].lower()}."
    if len(headings) == 2:
        return f"Documentation covering {' and '.join(headings).lower()}."

    if "procedure" in content or "steps" in content:
        return "Standard operating procedure documentation."
    if "policy" in content or "guidelines" in content:
        return "Policy and guidelines documentation."
    return "Internal documentation and reference material."


# ---------------------------------------------------------------------------
# Structuring fallback
# ---------------------------------------------------------------------------
def fallback_structure(text: str, title: Optional[str] = None) -> str:
    """Deterministic markdown rendering used when AI structuring is unavailable."""
    lines = [line.rstrip() for line in text.strip().splitlines()]
    if not title:
        first = next((l.strip() for l in lines if l.strip()), "Untitled")
        title = first if len(first) <= 80 else first[:77].rstrip() + "..."

    blocks: List[str] = [f"# {title}"]
    paragraph: List[str] = []
    bullets: List[str] = []

    def flush():
        if paragraph:
            blocks.append(" ".join(paragraph))
            paragraph.clear()
        if bullets:
            blocks.append("\n".join(bullets))
            bullets.clear()

    for line in lines:
        stripped = line.strip()
        if not stripped:
            flush()
            continue
        if _HEADING.match(stripped):
            flush()
            blocks.append(stripped)
            continue
        match = _LIST_LINE.match(stripped)
        if match:
            if paragraph:
                blocks.append(" ".join(paragraph))
                paragraph.clear()
            bullets.append(f"- {match.group(1).strip()}")
        else:
            if bullets:
                blocks.append("\n".join(bullets))
                bullets.clear()
            paragraph.append(stripped)
    flush()

    return "\n\n".join(blocks)


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------
def parse_topics(raw: str) -> Tuple[List[str], bool]:
    """Parse up to five topics. Returns (topics, used_bullet_fallback)."""
    parsed = parse_llm_json_array(raw)
    if parsed is not None:
        topics = [t.strip() for t in parsed if isinstance(t, str) and t.strip()]
        return topics[:MAX_TOPICS], False

    topics = []
    for line in (raw or "").split("\n"):
        stripped = line.strip()
        if stripped.startswith(("-", "•", "*")):
            topic = _TOPIC_BULLET.sub("", stripped).strip()
            if topic:
                topics.append(topic)
    return topics[:MAX_TOPICS], True
