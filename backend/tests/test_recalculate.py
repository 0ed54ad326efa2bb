"""Confidence recalculation over the pending-draft queue."""

from datetime import timedelta

import pytest

from conftest import NOW
from kbsync.admin.recalculate import ConfidenceRecalculator
from kbsync.core.audit import AuditEventType
from kbsync.models import (
    DraftDocument,
    DraftStatus,
    ProviderType,
    SourceQualityLevel,
    SourceReference,
    TriageLevel,
)
from kbsync.pipeline.confidence import ConfidenceScorer
from kbsync.sync.ledger import SyncLedger

GUIDE = """# Rotating Database Credentials

## Overview
Credentials for the reporting database must be rotated every 90 days.

## Steps
1. Open the secrets vault and select the reporting entry
2. Run the rotation job from the admin console
3. Configure the new password in the connection pool settings"""


def draft(draft_id, original, score=0.9, level=TriageLevel.GREEN, **overrides):
    data = dict(
        id=draft_id,
        organization_id="org-1",
        source_id="src-1",
        external_id=f"ext-{draft_id}",
        content_digest=f"digest-{draft_id}",
        title=f"Draft {draft_id}",
        content=GUIDE,
        summary="Credentials for the reporting database must be rotated every 90 days.",
        confidence_score=score,
        confidence_level=level,
        confidence_reasoning="Stored reasoning from enrichment.",
        source_references=[
            SourceReference(
                provider=ProviderType.TEAMS,
                external_id=f"ext-{draft_id}",
                original_content=original,
                author="Ada Lovelace",
                created_at=NOW - timedelta(days=1),
            )
        ],
        created_at=NOW,
    )
    data.update(overrides)
    return DraftDocument(**data)


@pytest.fixture
def scorer():
    return ConfidenceScorer(now=lambda: NOW)


async def test_pending_drafts_are_rescored(repository, scorer):
    repository.drafts["terse"] = draft("terse", "Short text.")
    repository.drafts["rich"] = draft("rich", GUIDE)

    report = await ConfidenceRecalculator(repository, scorer).recalculate_pending()

    assert {d.draft_id for d in report.updated} == {"terse", "rich"}
    assert report.skipped == []
    terse = next(d for d in report.updated if d.draft_id == "terse")
    assert terse.source_quality == SourceQualityLevel.LOW
    assert terse.source_quality_penalty == 0.15
    assert terse.change == pytest.approx(terse.new_score - 0.9, abs=1e-4)
    # Stored draft now carries the recomputed score
    stored = repository.drafts["terse"]
    assert stored.confidence_score == terse.new_score
    assert stored.confidence_level == terse.new_level
    assert stored.confidence_reasoning != "Stored reasoning from enrichment."


async def test_report_is_sorted_by_magnitude_of_change(repository, scorer):
    repository.drafts["a"] = draft("a", GUIDE, score=0.0, level=TriageLevel.RED)
    repository.drafts["b"] = draft("b", GUIDE, score=0.7, level=TriageLevel.YELLOW)

    report = await ConfidenceRecalculator(repository, scorer).recalculate_pending()

    changes = [abs(d.change) for d in report.updated]
    assert changes == sorted(changes, reverse=True)
    assert report.updated[0].draft_id == "a"


async def test_drafts_without_source_text_are_skipped(repository, scorer):
    repository.drafts["empty"] = draft("empty", "")
    repository.drafts["approved"] = draft("approved", GUIDE, status=DraftStatus.APPROVED)

    report = await ConfidenceRecalculator(repository, scorer).recalculate_pending()

    assert report.updated == []
    assert report.skipped == ["empty"]
    assert repository.drafts["empty"].confidence_score == 0.9


async def test_recalculation_is_audited(repository, scorer):
    repository.drafts["terse"] = draft("terse", "Short text.")
    ledger = SyncLedger(repository, clock=lambda: NOW)

    await ConfidenceRecalculator(repository, scorer, ledger).recalculate_pending("org-1")

    (event,) = repository.audit
    assert event.event_type == AuditEventType.CONTROL_RECALCULATE
    assert event.details["updated"] == 1
