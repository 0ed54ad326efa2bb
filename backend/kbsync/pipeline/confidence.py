"""
Confidence Scorer — Triage Scoring
====================================
Combines heuristic content-quality signals with an optional AI quality
assessment into a 0–1 score, a green/yellow/red triage level, and
human-readable reasoning.

Two modes:
- AI-driven: a usable ``overall_score`` from the assessment is used directly
  (clamped), minus a small penalty only when the raw source was low quality.
- Heuristic: four factor scores combined with fixed weights, minus a bounded
  penalty derived from the structural quality of the *original* source.

The scorer is pure. It performs no I/O and can be re-run at any time (the
admin recalculation job depends on this).
"""

import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from kbsync.models import (
    AIAssessment,
    ConfidenceFactors,
    ConfidenceResult,
    SourceMetadata,
    SourceQuality,
    SourceQualityLevel,
    TriageLevel,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_WEIGHTS: Dict[str, float] = {
    "content_clarity": 0.4,
    "information_density": 0.3,
    "source_consistency": 0.2,
    "authority": 0.1,
}

GREEN_THRESHOLD = 0.80
YELLOW_THRESHOLD = 0.60

AI_LOW_QUALITY_PENALTY = 0.05
SOURCE_QUALITY_PENALTIES = {
    SourceQualityLevel.HIGH: 0.0,
    SourceQualityLevel.MEDIUM: 0.05,
    SourceQualityLevel.LOW: 0.15,
}
MAX_SOURCE_PENALTY = 0.15

# Value handed to the AI assessment prompt for each raw-source tier
SOURCE_QUALITY_SCORES = {
    SourceQualityLevel.HIGH: 0.8,
    SourceQualityLevel.MEDIUM: 0.6,
    SourceQualityLevel.LOW: 0.4,
}

MIN_AI_REASONING_CHARS = 20

_NOISE_PATTERNS = [
    re.compile(r"\b(um|uh|like|you know|basically|actually)\b", re.IGNORECASE),
    re.compile(r"\b(thanks|thank you|please|hi|hello|bye)\b", re.IGNORECASE),
    re.compile(r"[.]{2,}"),
    re.compile(r"\s+"),
]
_HEADING_LINE = re.compile(r"^#{1,6}\s|^[A-Z][^.!?\n]*:\s*$", re.MULTILINE)
_LIST_LINE = re.compile(r"^\s*[-*+]\s|^\s*\d+\.\s", re.MULTILINE)
_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_WORD = re.compile(r"[A-Za-z0-9']+")

_DENSITY_BONUSES = [
    re.compile(r"\b(is defined as|means|refers to|definition)\b", re.IGNORECASE),
    re.compile(r"\b(for example|e\.g\.|such as|for instance)\b", re.IGNORECASE),
    re.compile(r"^\s*\d+\.\s|\b(must|should|click|run|select|open|configure)\b", re.IGNORECASE | re.MULTILINE),
    re.compile(r"\b\d+(?:\.\d+)?\s*(?:%|ms|s|mb|gb|days?|hours?|minutes?)?\b", re.IGNORECASE),
]


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def level_for(score: float) -> TriageLevel:
    if score >= GREEN_THRESHOLD:
        return TriageLevel.GREEN
    if score >= YELLOW_THRESHOLD:
        return TriageLevel.YELLOW
    return TriageLevel.RED


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class ConfidenceScorer:
    """Weighted confidence scoring over content, sources and an optional AI assessment."""

    def __init__(
        self,
        weights: Optional[Dict[str, float]] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        weights = dict(weights or DEFAULT_WEIGHTS)
        if set(weights) != set(DEFAULT_WEIGHTS):
            raise ValueError(f"Confidence weights must define exactly {sorted(DEFAULT_WEIGHTS)}")
        if abs(sum(weights.values()) - 1.0) > 0.01:
            raise ValueError("Confidence weights must sum to 1.0")
        self.weights = weights
        self._now = now or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Raw source quality
    # ------------------------------------------------------------------
    def analyze_source_quality(self, raw: str) -> SourceQuality:
        """Judge the structural quality of the original, unprocessed content."""
        text = (raw or "").strip()
        length = len(text)
        sentences = [s.strip() for s in _SENTENCE_SPLIT.split(text) if s.strip()]
        sentence_count = len(sentences)
        word_counts = [len(_WORD.findall(s)) for s in sentences]
        avg_words = sum(word_counts) / sentence_count if sentence_count else 0.0
        fragments = sum(1 for n in word_counts if n < 4)
        fragment_ratio = fragments / sentence_count if sentence_count else 1.0
        lines = [l for l in text.splitlines() if l.strip()]

        signals = {
            "length": 0.0 if length < 50 else 0.5 if length < 200 else 1.0,
            "sentences": 1.0 if sentence_count >= 3 else 0.5 if sentence_count >= 1 else 0.0,
            "sentence_length": 1.0 if 5 <= avg_words <= 30 else 0.5 if avg_words > 0 else 0.0,
            "fragments": round(1.0 - fragment_ratio, 4),
            "punctuation": 1.0 if re.search(r"[.!?]", text) else 0.0,
            "organization": 1.0 if len(lines) > 1 or _LIST_LINE.search(text) or _HEADING_LINE.search(text) else 0.5,
        }
        overall = sum(signals.values()) / len(signals)

        if overall >= 0.7:
            level = SourceQualityLevel.HIGH
        elif overall >= 0.45:
            level = SourceQualityLevel.MEDIUM
        else:
            level = SourceQualityLevel.LOW

        penalty = min(SOURCE_QUALITY_PENALTIES[level], MAX_SOURCE_PENALTY)
        signals["overall"] = round(overall, 4)
        return SourceQuality(level=level, length=length, penalty=penalty, signals=signals)

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------
    def content_clarity(self, content: str) -> float:
        score = 0.5
        parts = _SENTENCE_SPLIT.split(content)
        if _HEADING_LINE.search(content):
            score += 0.15
        if _LIST_LINE.search(content):
            score += 0.1
        if len(parts) > 2:
            score += 0.15
        avg_sentence_chars = len(content) / (len(parts) or 1)
        if 20 < avg_sentence_chars < 100:
            score += 0.1
        return clamp(score)

    def information_density(self, content: str) -> float:
        total = len(content)
        if total == 0:
            return 0.0

        clean = content
        for pattern in _NOISE_PATTERNS:
            clean = pattern.sub(" ", clean)
        signal_ratio = clamp(len(clean.strip()) / total)

        words = [w.lower() for w in _WORD.findall(content)]
        uniqueness = len(set(words)) / len(words) if words else 0.0

        score = 0.6 * signal_ratio + 0.4 * uniqueness
        if total < 100:
            score *= 0.7
        elif total < 300:
            score *= 0.85

        bonus = 0.1 if _LIST_LINE.search(content) or _HEADING_LINE.search(content) else 0.0
        bonus += 0.05 * sum(1 for pattern in _DENSITY_BONUSES if pattern.search(content))
        return clamp(score + min(bonus, 0.25))

    def source_consistency(self, sources: Sequence[SourceMetadata]) -> float:
        if len(sources) <= 1:
            return 0.7
        score = min(0.9, 0.5 + (len(sources) - 1) * 0.1)
        if len({s.provider for s in sources}) > 1:
            score += 0.1
        if sum(s.author_count for s in sources) > 2:
            score += 0.1
        return clamp(score)

    def authority(self, sources: Sequence[SourceMetadata]) -> float:
        score = 0.5
        if not sources:
            return score

        now = _as_utc(self._now())
        ages = [(now - _as_utc(s.last_modified)).total_seconds() / 86400 for s in sources]
        avg_age = sum(ages) / len(ages)
        if avg_age < 30:
            score += 0.2
        elif avg_age < 90:
            score += 0.1
        elif avg_age > 365:
            score -= 0.1

        participants = sum(len(s.participants) or s.author_count for s in sources)
        if participants > 5:
            score += 0.2
        elif participants > 2:
            score += 0.1

        teams = [s for s in sources if s.provider.value == "teams"]
        if teams:
            avg_messages = sum(s.message_count or 1 for s in teams) / len(teams)
            if avg_messages > 10:
                score += 0.1
        return clamp(score)

    def factors(self, content: str, sources: Sequence[SourceMetadata]) -> ConfidenceFactors:
        return ConfidenceFactors(
            content_clarity=self.content_clarity(content),
            information_density=self.information_density(content),
            source_consistency=self.source_consistency(sources),
            authority=self.authority(sources),
        )

    def combine(self, factors: ConfidenceFactors, penalty: float = 0.0) -> float:
        """Weighted sum of factor scores minus ``penalty``, clamped and rounded."""
        weighted = sum(getattr(factors, name) * weight for name, weight in self.weights.items())
        return round(clamp(weighted - penalty), 4)

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def score(
        self,
        content: str,
        sources: Sequence[SourceMetadata],
        ai_assessment: Optional[AIAssessment] = None,
        source_quality: Optional[SourceQuality] = None,
        change_summary: Optional[List[str]] = None,
    ) -> ConfidenceResult:
        factors = self._merge_ai_factors(self.factors(content, sources), ai_assessment)

        if ai_assessment is not None and ai_assessment.overall_score is not None:
            penalty = None
            score = clamp(ai_assessment.overall_score)
            if source_quality is not None and source_quality.level == SourceQualityLevel.LOW:
                penalty = AI_LOW_QUALITY_PENALTY
                score -= penalty
            score = round(clamp(score), 4)
            ai_driven = True
        else:
            penalty = source_quality.penalty if source_quality is not None else None
            score = self.combine(factors, penalty or 0.0)
            ai_driven = False

        level = level_for(score)
        reasoning = self._reasoning(factors, score, level, ai_assessment, source_quality)
        if change_summary:
            reasoning = f"{reasoning} Changes: {'; '.join(change_summary)}"

        return ConfidenceResult(
            score=score,
            level=level,
            factors=factors,
            reasoning=reasoning,
            recommendations=(ai_assessment.recommendations if ai_assessment else None) or None,
            source_quality_penalty=penalty,
            ai_driven=ai_driven,
        )

    def describe(
        self,
        content: str,
        sources: Sequence[SourceMetadata],
        source_quality: Optional[SourceQuality] = None,
    ) -> Dict[str, str]:
        """Heuristic observations handed to the AI assessment prompt."""
        words = _WORD.findall(content)
        has_headings = bool(_HEADING_LINE.search(content))
        has_lists = bool(_LIST_LINE.search(content))
        uniqueness = len({w.lower() for w in words}) / (len(words) or 1)

        issues = []
        if len(content) < 200:
            issues.append("very short content")
        if not has_headings:
            issues.append("no headings")
        if uniqueness < 0.3:
            issues.append("highly repetitive")
        if source_quality is not None and source_quality.level == SourceQualityLevel.LOW:
            issues.append("poor source quality")

        structure = [n for n, present in (("headings", has_headings), ("lists", has_lists)) if present]
        return {
            "structure": ", ".join(structure) or "minimal structure",
            "information_density": f"{uniqueness:.0%} unique words, {len(words)} total words",
            "sources": f"{len(sources)} source(s), {sum(s.author_count for s in sources)} author(s)",
            "issues": ", ".join(issues) or "none detected",
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _merge_ai_factors(
        factors: ConfidenceFactors, ai_assessment: Optional[AIAssessment]
    ) -> ConfidenceFactors:
        if ai_assessment is None:
            return factors
        values = factors.model_dump()
        for name in values:
            ai_value = getattr(ai_assessment, name, None)
            if ai_value is not None:
                values[name] = clamp(ai_value)
        return ConfidenceFactors(**values)

    @staticmethod
    def _reasoning(
        factors: ConfidenceFactors,
        score: float,
        level: TriageLevel,
        ai_assessment: Optional[AIAssessment],
        source_quality: Optional[SourceQuality],
    ) -> str:
        if ai_assessment is not None and ai_assessment.reasoning:
            text = ai_assessment.reasoning.strip()
            if len(text) >= MIN_AI_REASONING_CHARS:
                return text

        strengths = []
        weaknesses = []
        labels = {
            "content_clarity": ("well-structured content", "unclear or unstructured content"),
            "source_consistency": ("consistent across sources", "limited source validation"),
            "information_density": ("high information density", "low information content"),
            "authority": ("authoritative sources", "questionable source authority"),
        }
        for name, (strong, weak) in labels.items():
            value = getattr(factors, name)
            if value >= 0.7:
                strengths.append(strong)
            elif value < 0.4:
                weaknesses.append(weak)

        reasoning = f"Confidence: {round(score * 100)}% ({level.value})."
        if strengths:
            reasoning += f" Strengths: {', '.join(strengths)}."
        if weaknesses:
            reasoning += f" Areas for review: {', '.join(weaknesses)}."
        if source_quality is not None:
            reasoning += f" Original source quality: {source_quality.level.value}."
        return reasoning
