"""Knowledge Base Sync — Enrichment Pipeline Package."""

from kbsync.pipeline.classifier import DocumentClassifier
from kbsync.pipeline.confidence import ConfidenceScorer, level_for
from kbsync.pipeline.enrichment import EnrichmentPipeline, EnrichmentRequest, ItemOutcome
from kbsync.pipeline.redactor import PIIRedactor, RedactionOptions, RedactionResult

__all__ = [
    "DocumentClassifier",
    "ConfidenceScorer",
    "level_for",
    "EnrichmentPipeline",
    "EnrichmentRequest",
    "ItemOutcome",
    "PIIRedactor",
    "RedactionOptions",
    "RedactionResult",
]
