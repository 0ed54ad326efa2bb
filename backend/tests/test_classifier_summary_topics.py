"""Document classification, extractive summaries, structuring fallback and topic parsing."""

import pytest

from conftest import FakeCompletion
from kbsync.models import DocumentDomain
from kbsync.pipeline.classifier import DocumentClassifier, normalize_label
from kbsync.pipeline.summary import extract_first_sentence, extract_summary, fallback_structure, parse_topics


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------
@pytest.mark.parametrize(
    "raw, label",
    [
        ("TECHNICAL_GUIDE", "TECHNICAL_GUIDE"),
        ("  meeting notes.", "MEETING_NOTES"),
        ("`hr-policy`", "HR_POLICY"),
        ("```\nTROUBLESHOOTING\n```", "TROUBLESHOOTING"),
    ],
)
def test_normalize_label(raw, label):
    assert normalize_label(raw) == label


async def test_valid_label():
    classifier = DocumentClassifier(FakeCompletion(lambda messages: "Meeting Notes"))

    outcome = await classifier.classify("Attendees discussed the Q3 roadmap.")

    assert outcome.value == DocumentDomain.MEETING_NOTES
    assert outcome.fallback_used is False
    assert outcome.tokens_used == 10


async def test_unknown_label_defaults():
    classifier = DocumentClassifier(FakeCompletion(lambda messages: "RECIPE"))

    outcome = await classifier.classify("Mix flour and water.")

    assert outcome.value == DocumentDomain.DEFAULT_SOP
    assert outcome.fallback_used is True


async def test_completion_error_defaults():
    classifier = DocumentClassifier(FakeCompletion(lambda messages: TimeoutError("slow")))

    outcome = await classifier.classify("anything")

    assert outcome.value == DocumentDomain.DEFAULT_SOP
    assert outcome.reason == "slow"


async def test_no_completion_defaults():
    outcome = await DocumentClassifier().classify("anything")

    assert outcome.value == DocumentDomain.DEFAULT_SOP
    assert outcome.fallback_used is True


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------
def test_summary_prefers_overview_section():
    content = "# VPN Access\n\n## Overview\nRemote staff connect through the corporate VPN gateway. It requires MFA.\n\n## Steps\n- Install the client"

    assert extract_summary(content) == "Remote staff connect through the corporate VPN gateway."


def test_summary_uses_first_paragraph():
    content = "# VPN Access\n\nRemote staff connect through the corporate VPN gateway every day.\n\n- Install the client"

    assert extract_summary(content) == "Remote staff connect through the corporate VPN gateway every day."


def test_summary_from_headings():
    assert extract_summary("# VPN Access\n## Setup\n- a\n- b") == "Documentation covering vpn access and setup."
    assert extract_summary("# VPN Access\n- a") == "Documentation about vpn access."


def test_summary_never_empty():
    assert extract_summary("- a\n- b") == "Internal documentation and reference material."
    assert extract_summary("") == "Internal documentation and reference material."


def test_first_sentence_truncates_long_text():
    text = " ".join(["word"] * 60)

    sentence = extract_first_sentence(text)

    assert sentence.endswith(".")
    assert len(sentence) <= 121


# ---------------------------------------------------------------------------
# Structuring fallback
# ---------------------------------------------------------------------------
def test_fallback_structure():
    raw = "Deploy checklist\nOpen the dashboard\nselect the build\n\n- run smoke tests\n* announce rollbacks\n## Notes\nFridays are frozen."

    structured = fallback_structure(raw, title="Deploy Checklist")

    assert structured == (
        "# Deploy Checklist\n\n"
        "Deploy checklist Open the dashboard select the build\n\n"
        "- run smoke tests\n- announce rollbacks\n\n"
        "## Notes\n\n"
        "Fridays are frozen."
    )


def test_fallback_structure_derives_title():
    assert fallback_structure("Quarterly access review\nAll admins must re-certify.").startswith(
        "# Quarterly access review\n\n"
    )


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------
def test_topics_from_json():
    assert parse_topics('["VPN", "Security", "Remote Work"]') == (["VPN", "Security", "Remote Work"], False)


def test_topics_from_bullets():
    assert parse_topics("Topics:\n- VPN\n• Security\n* Remote Work") == (["VPN", "Security", "Remote Work"], True)


def test_topics_are_capped():
    topics, _ = parse_topics('["a", "b", "c", "d", "e", "f", "g"]')

    assert topics == ["a", "b", "c", "d", "e"]
