"""
Document-Type Classifier
=========================
Single-label classification over ``DocumentDomain`` used to choose the
structuring template. Any failure or unrecognized label degrades to
``DEFAULT_SOP``; classification never fails an item.
"""

import re
from typing import Optional

import structlog

from kbsync.ai.completion import TextCompletion
from kbsync.ai.parsing import strip_code_fences
from kbsync.ai.prompts import PromptTemplates
from kbsync.core.results import Outcome
from kbsync.models import DocumentDomain

logger = structlog.get_logger()

CLASSIFY_TEMPERATURE = 0.0
CLASSIFY_MAX_TOKENS = 20

_VALID = {d.value for d in DocumentDomain}


def normalize_label(raw: str) -> str:
    """Upper-case, fence-free, punctuation-free label with underscores."""
    text = strip_code_fences(raw or "").strip().strip("\"'`.")
    text = text.splitlines()[0] if text else ""
    text = re.sub(r"[\s\-]+", "_", text.strip().upper())
    return re.sub(r"[^A-Z_]", "", text).strip("_")


class DocumentClassifier:
    def __init__(self, completion: Optional[TextCompletion] = None):
        self.completion = completion

    async def classify(self, raw_content: str) -> Outcome[DocumentDomain]:
        if self.completion is None:
            return Outcome.fallback(DocumentDomain.DEFAULT_SOP, "completion not configured")

        prompt = PromptTemplates.document_classification(raw_content)
        try:
            result = await self.completion.complete(
                prompt.messages(),
                temperature=CLASSIFY_TEMPERATURE,
                max_tokens=CLASSIFY_MAX_TOKENS,
            )
        except Exception as e:
            logger.warning("Document classification failed, defaulting to DEFAULT_SOP", error=str(e))
            return Outcome.fallback(DocumentDomain.DEFAULT_SOP, str(e))

        label = normalize_label(result.text)
        if label in _VALID:
            logger.debug("Document classified", domain=label)
            return Outcome.primary(DocumentDomain(label), tokens_used=result.tokens_used)

        logger.warning("Invalid classification label, defaulting to DEFAULT_SOP", raw=result.text[:80])
        return Outcome.fallback(
            DocumentDomain.DEFAULT_SOP,
            f"invalid label: {result.text[:80]!r}",
            tokens_used=result.tokens_used,
        )
