"""
PII Redactor — Detection & Masking
====================================
Detects sensitive spans with an external entity recognizer and masks them.

Recognition failures (auth, timeout, malformed response) fall back to a
deterministic set of regular expressions. Overlapping spans are merged
before masking, and replacement runs in descending offset order so earlier
replacements never shift the offsets of entities still to be processed.
"""

import asyncio
import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Pattern, Sequence, Tuple, Union

import structlog

from kbsync.ai.entities import EntityRecognizer
from kbsync.core.cache import TTLCache
from kbsync.core.results import Outcome
from kbsync.models import PIIEntity

logger = structlog.get_logger()


class PIICategory(str, Enum):
    PERSON = "Person"
    PERSON_TYPE = "PersonType"
    PHONE_NUMBER = "PhoneNumber"
    EMAIL = "Email"
    ADDRESS = "Address"
    IP_ADDRESS = "IPAddress"
    ORGANIZATION = "Organization"
    URL = "URL"
    DATE_TIME = "DateTime"
    QUANTITY = "Quantity"
    SSN = "SSN"
    NATIONAL_ID = "NationalID"
    CREDIT_CARD = "CreditCard"


DEFAULT_CATEGORIES: Tuple[str, ...] = (
    PIICategory.PERSON.value,
    PIICategory.PERSON_TYPE.value,
    PIICategory.PHONE_NUMBER.value,
    PIICategory.EMAIL.value,
    PIICategory.ADDRESS.value,
    PIICategory.IP_ADDRESS.value,
    PIICategory.ORGANIZATION.value,
    PIICategory.URL.value,
    PIICategory.DATE_TIME.value,
    PIICategory.QUANTITY.value,
)

BRACKET_TOKEN = "[REDACTED]"
REGEX_CONFIDENCE = 0.9
BATCH_SIZE = 10

MaskFunction = Callable[[PIIEntity], str]


# ---------------------------------------------------------------------------
# Options & results
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class RedactionOptions:
    categories: Tuple[str, ...] = DEFAULT_CATEGORIES
    confidence_threshold: float = 0.8
    # "stars" | "bracket" | "hash" | callable(entity) -> replacement
    masking_style: Union[str, MaskFunction] = "stars"
    masking_character: str = "*"
    language: str = "en"

    def fingerprint(self) -> Optional[tuple]:
        """Hashable cache key part, or None when the mask is a callable."""
        if callable(self.masking_style):
            return None
        return (
            tuple(sorted(self.categories)),
            self.confidence_threshold,
            self.masking_style,
            self.masking_character,
            self.language,
        )


@dataclass(frozen=True)
class RedactionStats:
    original_length: int
    redacted_length: int
    entity_count: int
    by_category: Dict[str, int] = field(default_factory=dict)
    fallback_used: bool = False


@dataclass(frozen=True)
class RedactionResult:
    redacted_text: str
    entities: List[PIIEntity]
    stats: RedactionStats


def mask_keep_last(n: int = 4, masking_character: str = "*") -> MaskFunction:
    """Mask function that preserves the last ``n`` characters of each entity."""

    def _mask(entity: PIIEntity) -> str:
        visible = entity.text[-n:] if n > 0 else ""
        return masking_character * (len(entity.text) - len(visible)) + visible

    return _mask


# ---------------------------------------------------------------------------
# Regex fallback
# ---------------------------------------------------------------------------
_STREET_SUFFIX = (
    r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Lane|Ln|Drive|Dr|"
    r"Court|Ct|Way|Place|Pl|Terrace|Parkway|Pkwy)"
)

# Order matters: on overlap the earlier pattern's category wins.
FALLBACK_PATTERNS: List[Tuple[str, Pattern]] = [
    (PIICategory.EMAIL.value, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")),
    (PIICategory.URL.value, re.compile(r"\bhttps?://[^\s<>\"')]+|\bwww\.[^\s<>\"')]+")),
    (PIICategory.CREDIT_CARD.value, re.compile(r"\b\d{4}[-\s]?\d{4}[-\s]?\d{4}[-\s]?\d{4}\b")),
    (PIICategory.SSN.value, re.compile(r"\b\d{3}-?\d{2}-?\d{4}\b")),
    # UK National Insurance number, e.g. AB123456C
    (PIICategory.NATIONAL_ID.value, re.compile(r"\b[A-CEGHJ-PR-TW-Z]{2}\d{6}[A-D]\b")),
    # Six digits, dash, seven digits, e.g. 900101-1234567
    (PIICategory.NATIONAL_ID.value, re.compile(r"\b\d{6}-\d{7}\b")),
    # +country-code mobile numbers, e.g. +44 7911 123456
    (PIICategory.PHONE_NUMBER.value, re.compile(r"\+\d{1,3}[-.\s]?\d{2,4}[-.\s]?\d{3,4}[-.\s]?\d{3,4}\b")),
    (PIICategory.PHONE_NUMBER.value, re.compile(r"(?<!\d)(?:\+?1[-.\s]?)?\(?\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b")),
    (PIICategory.IP_ADDRESS.value, re.compile(r"\b(?:(?:25[0-5]|2[0-4]\d|1?\d?\d)\.){3}(?:25[0-5]|2[0-4]\d|1?\d?\d)\b")),
    (PIICategory.ADDRESS.value, re.compile(r"\b\d{1,5}\s+(?:[A-Z][a-z]+\s+){1,3}" + _STREET_SUFFIX + r"\b\.?")),
]


def regex_entities(text: str) -> List[PIIEntity]:
    """Find PII spans with the deterministic pattern set, in discovery order."""
    entities = []
    for category, pattern in FALLBACK_PATTERNS:
        for match in pattern.finditer(text):
            entities.append(
                PIIEntity(
                    text=match.group(0),
                    category=category,
                    confidence=REGEX_CONFIDENCE,
                    offset=match.start(),
                    length=match.end() - match.start(),
                )
            )
    return entities


# ---------------------------------------------------------------------------
# Span merging & masking
# ---------------------------------------------------------------------------
def merge_overlapping(text: str, entities: Sequence[PIIEntity]) -> List[PIIEntity]:
    """Merge entities whose spans overlap.

    The merged entity covers the union of the overlapping spans, keeps the
    category of the earliest-discovered entity and the highest confidence.
    Input order is discovery order. Output is sorted by offset.
    """
    indexed = sorted(enumerate(entities), key=lambda pair: (pair[1].offset, pair[0]))
    merged: List[Tuple[int, PIIEntity]] = []

    for index, entity in indexed:
        if merged and entity.offset < merged[-1][1].end:
            first_index, current = merged[-1]
            start = current.offset
            end = max(current.end, entity.end)
            winner_index = min(first_index, index)
            category = current.category if first_index <= index else entity.category
            merged[-1] = (
                winner_index,
                PIIEntity(
                    text=text[start:end],
                    category=category,
                    confidence=max(current.confidence, entity.confidence),
                    offset=start,
                    length=end - start,
                ),
            )
        else:
            merged.append((index, entity))

    return [entity for _, entity in merged]


def apply_masks(text: str, entities: Sequence[PIIEntity], options: RedactionOptions) -> str:
    """Replace each entity span, walking from the highest offset down."""
    redacted = text
    for entity in sorted(entities, key=lambda e: e.offset, reverse=True):
        replacement = _replacement(entity, options)
        redacted = redacted[: entity.offset] + replacement + redacted[entity.end:]
    return redacted


def _replacement(entity: PIIEntity, options: RedactionOptions) -> str:
    style = options.masking_style
    if callable(style):
        return style(entity)
    if style == "bracket":
        return BRACKET_TOKEN
    if style == "hash":
        return "#" * entity.length
    if style == "stars":
        return options.masking_character * entity.length
    raise ValueError(f"Unknown masking style: {style}")


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------
class PIIRedactor:
    """Redacts PII using an entity recognizer with a regex fallback.

    Results are cached per instance by (content digest, options fingerprint).
    """

    def __init__(
        self,
        recognizer: Optional[EntityRecognizer] = None,
        cache: Optional[TTLCache] = None,
        default_options: Optional[RedactionOptions] = None,
    ):
        self.recognizer = recognizer
        self.cache = cache if cache is not None else TTLCache(max_entries=256, ttl_seconds=300.0)
        self.default_options = default_options or RedactionOptions()

    async def redact(self, text: str, options: Optional[RedactionOptions] = None) -> RedactionResult:
        options = options or self.default_options
        fingerprint = options.fingerprint()
        cache_key = None
        if fingerprint is not None:
            digest = hashlib.sha256(text.encode("utf-8")).hexdigest()
            cache_key = (digest, fingerprint)
            cached = self.cache.get(cache_key)
            if cached is not None:
                return cached

        detected = await self._detect(text, options)
        entities = merge_overlapping(text, detected.value)
        redacted = apply_masks(text, entities, options)

        by_category: Dict[str, int] = {}
        for entity in entities:
            by_category[entity.category] = by_category.get(entity.category, 0) + 1

        result = RedactionResult(
            redacted_text=redacted,
            entities=entities,
            stats=RedactionStats(
                original_length=len(text),
                redacted_length=len(redacted),
                entity_count=len(entities),
                by_category=by_category,
                fallback_used=detected.fallback_used,
            ),
        )
        if cache_key is not None:
            self.cache.set(cache_key, result)
        return result

    async def redact_many(
        self, texts: Sequence[str], options: Optional[RedactionOptions] = None
    ) -> List[RedactionResult]:
        results: List[RedactionResult] = []
        for start in range(0, len(texts), BATCH_SIZE):
            batch = texts[start : start + BATCH_SIZE]
            results.extend(await asyncio.gather(*(self.redact(t, options) for t in batch)))
        return results

    async def _detect(self, text: str, options: RedactionOptions) -> Outcome[List[PIIEntity]]:
        if self.recognizer is None:
            return Outcome.fallback(regex_entities(text), "recognizer not configured")

        try:
            found = await self.recognizer.detect_entities(
                text, list(options.categories), options.language
            )
            entities = []
            for entity in found:
                _validate_entity(text, entity)
                if entity.category in options.categories and entity.confidence >= options.confidence_threshold:
                    entities.append(entity)
            return Outcome.primary(entities)
        except Exception as e:
            logger.warning("Entity recognition failed, using regex fallback", error=str(e))
            return Outcome.fallback(regex_entities(text), str(e))


def _validate_entity(text: str, entity: PIIEntity) -> None:
    if entity.offset < 0 or entity.length <= 0 or entity.end > len(text):
        raise ValueError(
            f"Entity span out of range: offset={entity.offset} length={entity.length}"
        )
