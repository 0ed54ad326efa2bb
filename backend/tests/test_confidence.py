"""
Confidence Scorer Tests
========================
Triage thresholds, weighted combination, raw-source quality penalties and
the AI-driven scoring mode.
"""

from datetime import datetime, timedelta, timezone

import pytest

from kbsync.models import (
    AIAssessment,
    ConfidenceFactors,
    ProviderType,
    SourceMetadata,
    SourceQualityLevel,
    TriageLevel,
)
from kbsync.pipeline.confidence import (
    AI_LOW_QUALITY_PENALTY,
    ConfidenceScorer,
    level_for,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)

GUIDE = """# Rotating Database Credentials

## Overview
Credentials for the reporting database must be rotated every 90 days.

## Steps
1. Open the secrets vault and select the reporting entry
2. Run the rotation job, for example from the admin console
3. Configure the new password in the connection pool settings

## Notes
Rotation takes about 5 minutes and should happen outside business hours."""


def metadata(**overrides):
    data = dict(
        provider=ProviderType.TEAMS,
        author_count=1,
        message_count=1,
        file_size=200,
        last_modified=NOW - timedelta(days=2),
        participants=["Ada Lovelace"],
    )
    data.update(overrides)
    return SourceMetadata(**data)


@pytest.fixture
def scorer():
    return ConfidenceScorer(now=lambda: NOW)


# ---------------------------------------------------------------------------
# Levels & combination
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "score, level",
    [
        (1.0, TriageLevel.GREEN),
        (0.80, TriageLevel.GREEN),
        (0.7999, TriageLevel.YELLOW),
        (0.60, TriageLevel.YELLOW),
        (0.5999, TriageLevel.RED),
        (0.0, TriageLevel.RED),
    ],
)
def test_level_thresholds(score, level):
    assert level_for(score) == level


def test_combine_is_monotonic(scorer):
    low = ConfidenceFactors(content_clarity=0.5, information_density=0.5, source_consistency=0.5, authority=0.5)
    higher_clarity = low.model_copy(update={"content_clarity": 0.9})
    higher_authority = low.model_copy(update={"authority": 0.9})

    assert scorer.combine(low) == 0.5
    assert scorer.combine(higher_clarity) > scorer.combine(low)
    assert scorer.combine(higher_authority) > scorer.combine(low)
    assert scorer.combine(low, penalty=0.15) == 0.35


def test_combine_clamps(scorer):
    perfect = ConfidenceFactors(content_clarity=1.0, information_density=1.0, source_consistency=1.0, authority=1.0)

    assert scorer.combine(perfect) == 1.0
    assert scorer.combine(perfect, penalty=2.0) == 0.0


@pytest.mark.parametrize(
    "weights",
    [
        {"content_clarity": 0.5, "information_density": 0.5, "source_consistency": 0.5, "authority": 0.5},
        {"content_clarity": 1.0},
    ],
)
def test_invalid_weights_rejected(weights):
    with pytest.raises(ValueError):
        ConfidenceScorer(weights=weights)


# ---------------------------------------------------------------------------
# Source quality
# ---------------------------------------------------------------------------
def test_short_text_is_low_quality(scorer):
    quality = scorer.analyze_source_quality("Short text.")

    assert quality.level == SourceQualityLevel.LOW
    assert quality.penalty == 0.15
    assert quality.length == 11


def test_structured_text_is_high_quality(scorer):
    quality = scorer.analyze_source_quality(GUIDE)

    assert quality.level == SourceQualityLevel.HIGH
    assert quality.penalty == 0.0


def test_penalty_is_applied_in_heuristic_mode(scorer):
    sources = [metadata()]
    unpenalized = scorer.score(GUIDE, sources)
    penalized = scorer.score(GUIDE, sources, source_quality=scorer.analyze_source_quality("Short text."))

    assert unpenalized.source_quality_penalty is None
    assert penalized.source_quality_penalty == 0.15
    assert penalized.score == pytest.approx(unpenalized.score - 0.15, abs=2e-4)
    assert penalized.ai_driven is False


# ---------------------------------------------------------------------------
# Factors
# ---------------------------------------------------------------------------
def test_structure_raises_clarity(scorer):
    flat = "credentials rotate sometimes"

    assert scorer.content_clarity(GUIDE) > scorer.content_clarity(flat)


def test_authority_rewards_recent_busy_threads(scorer):
    fresh = metadata(message_count=25, participants=["a", "b", "c", "d", "e", "f"])
    stale = metadata(last_modified=NOW - timedelta(days=400), participants=[])

    assert scorer.authority([fresh]) > scorer.authority([stale])


def test_single_source_consistency(scorer):
    assert scorer.source_consistency([metadata()]) == 0.7
    assert scorer.source_consistency([metadata(), metadata(provider=ProviderType.GOOGLE_DRIVE, author_count=2)]) > 0.6


# ---------------------------------------------------------------------------
# AI mode
# ---------------------------------------------------------------------------
def test_ai_overall_score_is_used(scorer):
    result = scorer.score(
        GUIDE,
        [metadata()],
        ai_assessment=AIAssessment(overall_score=0.83, reasoning="Complete, accurate rotation procedure."),
        source_quality=scorer.analyze_source_quality(GUIDE),
    )

    assert result.ai_driven is True
    assert result.score == 0.83
    assert result.level == TriageLevel.GREEN
    assert result.reasoning == "Complete, accurate rotation procedure."
    assert result.source_quality_penalty is None


def test_ai_mode_penalizes_low_quality_sources(scorer):
    result = scorer.score(
        GUIDE,
        [metadata()],
        ai_assessment=AIAssessment(overall_score=0.83),
        source_quality=scorer.analyze_source_quality("Short text."),
    )

    assert result.score == pytest.approx(0.83 - AI_LOW_QUALITY_PENALTY)
    assert result.level == TriageLevel.YELLOW
    assert result.source_quality_penalty == AI_LOW_QUALITY_PENALTY


def test_partial_ai_factors_override_heuristics(scorer):
    result = scorer.score(GUIDE, [metadata()], ai_assessment=AIAssessment(content_clarity=0.1))

    assert result.ai_driven is False
    assert result.factors.content_clarity == 0.1
    assert result.factors.authority == scorer.authority([metadata()])


def test_change_summary_is_appended_to_reasoning(scorer):
    result = scorer.score(GUIDE, [metadata()], change_summary=["Added 2 lines", 'Added section "Notes"'])

    assert result.reasoning.endswith('Changes: Added 2 lines; Added section "Notes"')


def test_short_ai_reasoning_is_replaced(scorer):
    result = scorer.score(GUIDE, [metadata()], ai_assessment=AIAssessment(overall_score=0.7, reasoning="ok"))

    assert result.reasoning.startswith("Confidence: 70% (yellow).")
