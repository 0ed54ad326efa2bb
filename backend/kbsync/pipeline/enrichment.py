"""
Enrichment Pipeline — Raw Content to Draft
============================================
Orchestrates, for a single content item:

1. Input validation        (fatal: ContentQualityError)
2. PII redaction           (regex fallback)
3. Document classification (DEFAULT_SOP fallback)
4. Domain-aware structuring (deterministic markdown fallback)
5. Extractive summary       (pure)
6. Topic extraction         (bullet-list fallback)
7. Confidence scoring       (heuristic fallback)

Only step 1 can fail an item. ``process_many`` runs items in bounded
concurrent batches and always returns one ``ItemOutcome`` per input.
"""

import asyncio
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import structlog

from kbsync.ai.completion import TextCompletion
from kbsync.ai.parsing import parse_llm_json
from kbsync.ai.prompts import PromptTemplates
from kbsync.core.errors import ContentQualityError
from kbsync.core.results import Outcome
from kbsync.models import (
    AIAssessment,
    DocumentDomain,
    EnrichedResult,
    ProviderType,
    SourceMetadata,
    SourceQuality,
    SourceReference,
)
from kbsync.pipeline.classifier import DocumentClassifier
from kbsync.pipeline.confidence import SOURCE_QUALITY_SCORES, ConfidenceScorer
from kbsync.pipeline.redactor import PIIRedactor
from kbsync.pipeline.summary import extract_summary, fallback_structure, parse_topics

logger = structlog.get_logger()

MIN_CONTENT_CHARS = 10
MIN_TOPIC_CONTENT_CHARS = 100

STRUCTURE_TEMPERATURE = 0.3
STRUCTURE_MAX_TOKENS = 2000
TOPIC_TEMPERATURE = 0.2
TOPIC_MAX_TOKENS = 200
ASSESS_TEMPERATURE = 0.1
ASSESS_MAX_TOKENS = 300


# ---------------------------------------------------------------------------
# Batch input / output
# ---------------------------------------------------------------------------
@dataclass
class EnrichmentRequest:
    raw_content: str
    source_references: List[SourceReference]
    change_summary: Optional[List[str]] = None
    title: Optional[str] = None


@dataclass(frozen=True)
class ItemOutcome:
    """Settled result for one item of a batch."""
    index: int
    ok: bool
    result: Optional[EnrichedResult] = None
    error: Optional[Exception] = None

    @property
    def error_message(self) -> Optional[str]:
        return str(self.error) if self.error is not None else None


# ---------------------------------------------------------------------------
# AI assessment parsing
# ---------------------------------------------------------------------------
_SCRAPE_FIELDS = {
    "content_clarity": "contentClarity",
    "information_density": "informationCompleteness",
    "source_consistency": "factualConsistency",
    "authority": "professionalStandards",
}


def _score(value) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return max(0.0, min(1.0, float(value)))


def parse_assessment(text: str) -> Outcome[Optional[AIAssessment]]:
    """Parse the confidence-assessment reply.

    JSON (fenced or embedded) is preferred; otherwise individual factor
    numbers are scraped. The scrape never yields an overall score, so the
    scorer stays in heuristic mode with the scraped factors applied.
    """
    parsed = parse_llm_json(text)
    if parsed is not None and isinstance(parsed.get("factors"), dict):
        f = parsed["factors"]
        reasoning = parsed.get("reasoning")
        recommendations = parsed.get("recommendations")
        return Outcome.primary(
            AIAssessment(
                overall_score=_score(parsed.get("overallConfidence")),
                content_clarity=_score(f.get("contentClarity")),
                source_consistency=_score(f.get("factualConsistency", f.get("informationCompleteness"))),
                information_density=_score(f.get("informationCompleteness", f.get("actionability"))),
                authority=_score(f.get("professionalStandards", f.get("factualConsistency"))),
                reasoning=reasoning.strip() if isinstance(reasoning, str) and reasoning.strip() else None,
                recommendations=[r for r in recommendations if isinstance(r, str)]
                if isinstance(recommendations, list)
                else None,
            )
        )

    scraped = {}
    for name, key in _SCRAPE_FIELDS.items():
        match = re.search(rf"[\"']?{key}[\"']?\s*:\s*([0-9]*\.?[0-9]+)", text or "", re.IGNORECASE)
        if match:
            scraped[name] = max(0.0, min(1.0, float(match.group(1))))
    if scraped:
        return Outcome.fallback(AIAssessment(**scraped), "assessment JSON unparseable, factors scraped")
    return Outcome.fallback(None, "assessment unparseable")


def build_source_metadata(
    references: Sequence[SourceReference], now: Optional[datetime] = None
) -> List[SourceMetadata]:
    now = now or datetime.now(timezone.utc)
    metadata = []
    for ref in references:
        participants = list(ref.participants) or ([ref.author] if ref.author else [])
        message_count = ref.message_count
        if message_count is None and ref.provider == ProviderType.TEAMS:
            message_count = 1
        metadata.append(
            SourceMetadata(
                provider=ref.provider,
                author_count=1 if ref.author else 0,
                message_count=message_count,
                file_size=len(ref.original_content),
                last_modified=ref.created_at or now,
                participants=participants,
            )
        )
    return metadata


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------
class EnrichmentPipeline:
    """Multi-stage transformation from raw content to a scored draft."""

    def __init__(
        self,
        redactor: PIIRedactor,
        classifier: DocumentClassifier,
        scorer: ConfidenceScorer,
        completion: Optional[TextCompletion] = None,
        max_concurrency: int = 3,
        batch_cooldown_seconds: float = 1.0,
        ai_timeout_seconds: float = 30.0,
    ):
        self.redactor = redactor
        self.classifier = classifier
        self.scorer = scorer
        self.completion = completion
        self.max_concurrency = max_concurrency
        self.batch_cooldown_seconds = batch_cooldown_seconds
        self.ai_timeout_seconds = ai_timeout_seconds

    async def process(
        self,
        raw_content: str,
        source_references: Sequence[SourceReference],
        change_summary: Optional[List[str]] = None,
        title: Optional[str] = None,
    ) -> EnrichedResult:
        started = time.monotonic()

        if not raw_content or not raw_content.strip():
            raise ContentQualityError("No readable content found")
        if len(raw_content.strip()) < MIN_CONTENT_CHARS:
            raise ContentQualityError("Content is too short to enrich")

        fallbacks: List[str] = []
        tokens = 0

        redaction = await self.redactor.redact(raw_content)
        redacted = redaction.redacted_text
        if redaction.stats.fallback_used:
            fallbacks.append("redaction")

        # Classification sees redacted text; raw PII never leaves the process
        domain = await self.classifier.classify(redacted)
        tokens += domain.tokens_used
        if domain.fallback_used:
            fallbacks.append("classification")

        structured = await self._structure(
            domain.value, redacted, source_references, redaction.stats.entity_count, title
        )
        tokens += structured.tokens_used
        if structured.fallback_used:
            fallbacks.append("structuring")

        summary = extract_summary(structured.value)

        topics = await self._topics(structured.value)
        tokens += topics.tokens_used
        if topics.fallback_used:
            fallbacks.append("topics")

        sources = build_source_metadata(source_references)
        quality = self.scorer.analyze_source_quality(raw_content)
        assessment = await self._assess(structured.value, sources, quality, len(source_references))
        tokens += assessment.tokens_used
        if assessment.fallback_used:
            fallbacks.append("assessment")

        confidence = self.scorer.score(
            structured.value,
            sources,
            ai_assessment=assessment.value,
            source_quality=quality,
            change_summary=change_summary,
        )

        elapsed_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            "Content enriched",
            domain=domain.value.value,
            pii_entities=redaction.stats.entity_count,
            confidence=confidence.score,
            level=confidence.level.value,
            tokens=tokens,
            fallbacks=fallbacks,
            processing_ms=elapsed_ms,
        )

        return EnrichedResult(
            structured_content=structured.value,
            redacted_content=redacted,
            summary=summary,
            topics=topics.value,
            confidence=confidence,
            pii_entities=redaction.entities,
            domain=domain.value,
            processing_time_ms=elapsed_ms,
            tokens_used=tokens,
            fallbacks=fallbacks,
        )

    async def process_many(
        self,
        items: Sequence[EnrichmentRequest],
        max_concurrency: Optional[int] = None,
    ) -> List[ItemOutcome]:
        """Process items in concurrent batches; one outcome per item, in input order."""
        size = max(1, max_concurrency or self.max_concurrency)
        outcomes: List[Optional[ItemOutcome]] = [None] * len(items)
        done = 0

        try:
            for start in range(0, len(items), size):
                batch = items[start : start + size]
                settled = await asyncio.gather(
                    *(self._process_request(item) for item in batch),
                    return_exceptions=True,
                )
                for offset, value in enumerate(settled):
                    outcomes[start + offset] = self._settle(start + offset, value)
                done = start + len(batch)
                if done < len(items) and self.batch_cooldown_seconds > 0:
                    await asyncio.sleep(self.batch_cooldown_seconds)
        except Exception as e:
            logger.error(
                "Batch processing failed, continuing sequentially",
                error=str(e),
                remaining=len(items) - done,
            )
            for index in range(done, len(items)):
                try:
                    result = await self._process_request(items[index])
                    outcomes[index] = ItemOutcome(index=index, ok=True, result=result)
                except Exception as item_error:
                    outcomes[index] = self._settle(index, item_error)

        failed = sum(1 for o in outcomes if o is not None and not o.ok)
        logger.info("Batch enrichment finished", total=len(items), failed=failed)
        return [o for o in outcomes if o is not None]

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------
    async def _process_request(self, item: EnrichmentRequest) -> EnrichedResult:
        return await self.process(
            item.raw_content,
            item.source_references,
            change_summary=item.change_summary,
            title=item.title,
        )

    @staticmethod
    def _settle(index: int, value) -> ItemOutcome:
        if isinstance(value, Exception):
            logger.error("Item enrichment failed", index=index, error=str(value))
            return ItemOutcome(index=index, ok=False, error=value)
        if isinstance(value, BaseException):
            raise value
        return ItemOutcome(index=index, ok=True, result=value)

    async def _structure(
        self,
        domain: DocumentDomain,
        redacted: str,
        references: Sequence[SourceReference],
        pii_count: int,
        title: Optional[str],
    ) -> Outcome[str]:
        if self.completion is None:
            return Outcome.fallback(fallback_structure(redacted, title), "completion not configured")

        if domain == DocumentDomain.AI_DETERMINED:
            prompt = PromptTemplates.ai_determined(redacted, len(references), pii_count)
        else:
            source_type = references[0].provider.value if references else ProviderType.TEAMS.value
            prompt = PromptTemplates.specialist(domain, redacted, source_type, len(references), pii_count)

        try:
            result = await self.completion.complete(
                prompt.messages(),
                temperature=STRUCTURE_TEMPERATURE,
                max_tokens=STRUCTURE_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("Content structuring failed, using markdown fallback", error=str(e))
            return Outcome.fallback(fallback_structure(redacted, title), str(e))

        if not result.text.strip():
            logger.warning("Content structuring returned empty output, using markdown fallback")
            return Outcome.fallback(
                fallback_structure(redacted, title), "empty completion", tokens_used=result.tokens_used
            )
        return Outcome.primary(result.text.strip(), tokens_used=result.tokens_used)

    async def _topics(self, structured: str) -> Outcome[List[str]]:
        if len(structured) <= MIN_TOPIC_CONTENT_CHARS or self.completion is None:
            return Outcome.primary([])

        prompt = PromptTemplates.topic_identification(structured)
        try:
            result = await self.completion.complete(
                prompt.messages(), temperature=TOPIC_TEMPERATURE, max_tokens=TOPIC_MAX_TOKENS
            )
        except Exception as e:
            logger.warning("Topic extraction failed", error=str(e))
            return Outcome.fallback([], str(e))

        topics, used_bullets = parse_topics(result.text)
        if used_bullets:
            logger.warning("Topic JSON unparseable, used bullet list", topics=len(topics))
            return Outcome.fallback(topics, "bullet-list parse", tokens_used=result.tokens_used)
        return Outcome.primary(topics, tokens_used=result.tokens_used)

    async def _assess(
        self,
        structured: str,
        sources: List[SourceMetadata],
        quality: SourceQuality,
        source_count: int,
    ) -> Outcome[Optional[AIAssessment]]:
        if self.completion is None:
            return Outcome.fallback(None, "completion not configured")

        prompt = PromptTemplates.confidence_assessment(
            structured,
            source_quality=SOURCE_QUALITY_SCORES[quality.level],
            source_count=source_count,
            heuristic_notes=self.scorer.describe(structured, sources, quality),
            document_type=infer_document_type(structured),
        )
        try:
            result = await asyncio.wait_for(
                self.completion.complete(
                    prompt.messages(), temperature=ASSESS_TEMPERATURE, max_tokens=ASSESS_MAX_TOKENS
                ),
                timeout=self.ai_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("AI confidence assessment timed out", timeout=self.ai_timeout_seconds)
            return Outcome.fallback(None, "timeout")
        except Exception as e:
            logger.warning("AI confidence assessment failed", error=str(e))
            return Outcome.fallback(None, str(e))

        parsed = parse_assessment(result.text)
        if parsed.fallback_used:
            logger.warning("AI confidence assessment unparseable", reason=parsed.reason)
        return Outcome(
            value=parsed.value,
            fallback_used=parsed.fallback_used,
            reason=parsed.reason,
            tokens_used=result.tokens_used,
        )


def infer_document_type(content: str) -> str:
    lowered = content.lower()
    if any(k in lowered for k in ("procedure", "steps", "process")):
        return "Standard Operating Procedure"
    if any(k in lowered for k in ("policy", "guidelines", "rules")):
        return "Policy Document"
    if "handbook" in lowered or "manual" in lowered:
        return "Reference Manual"
    if "plan" in lowered or "strategy" in lowered:
        return "Strategic Document"
    return "Business Document"
