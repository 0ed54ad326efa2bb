"""Diff summarizer: heuristic change lists and the AI tier's fallbacks."""

import asyncio

from conftest import FakeCompletion
from kbsync.ai.completion import Completion, TextCompletion
from kbsync.sync.diff import MAX_CHANGES, DiffSummarizer, heuristic_changes


def test_identical_revisions_have_no_changes():
    assert heuristic_changes("Same text.\n", "  Same text.") == []


def test_added_section():
    changes = heuristic_changes("# A\nfoo", "# A\n# B\nfoo bar")

    assert changes[0] == "Added 1 line"
    assert 'Added section "B"' in changes


def test_removed_lines_and_section():
    old = "# Setup\nInstall the agent.\n# Cleanup\nRemove the agent.\nDelete the logs."
    new = "# Setup\nInstall the agent."

    changes = heuristic_changes(old, new)

    assert changes[0] == "Removed 3 lines"
    assert 'Removed section "Cleanup"' in changes


def test_key_term_shift():
    changes = heuristic_changes(
        "Restart the scheduler nightly.",
        "Restart the exporter nightly.",
    )

    assert "New key terms: exporter" in changes
    assert "Removed key terms: scheduler" in changes


def test_sentinel_when_nothing_specific_changed():
    assert heuristic_changes("Deploy on Friday", "Deploy on Friday!") == ["Content updated"]


def test_changes_are_capped():
    old = "\n".join(f"# Old {i}" for i in range(10))
    new = "\n".join(f"# New {i}" for i in range(10))

    assert len(heuristic_changes(old, new)) == MAX_CHANGES


# ---------------------------------------------------------------------------
# Summarizer
# ---------------------------------------------------------------------------
async def test_without_completion_uses_heuristic():
    outcome = await DiffSummarizer().compare("# A\nfoo", "# A\n# B\nfoo bar")

    assert outcome.fallback_used is True
    assert 'Added section "B"' in outcome.value


async def test_ai_changes_are_used():
    completion = FakeCompletion(lambda messages: '```json\n["Added approval step", "Clarified rollback owner"]\n```')

    outcome = await DiffSummarizer(completion).compare("old text", "new text")

    assert outcome.fallback_used is False
    assert outcome.value == ["Added approval step", "Clarified rollback owner"]
    assert outcome.tokens_used == 10


async def test_ai_garbage_falls_back():
    completion = FakeCompletion(lambda messages: "Lots of things changed, honestly.")

    outcome = await DiffSummarizer(completion).compare("# A\nfoo", "# A\n# B\nfoo bar")

    assert outcome.fallback_used is True
    assert outcome.reason == "unparseable response"
    assert 'Added section "B"' in outcome.value


async def test_ai_error_falls_back():
    completion = FakeCompletion(lambda messages: ConnectionError("reset by peer"))

    changes = await DiffSummarizer(completion).summarize("# A\nfoo", "# A\n# B\nfoo bar")

    assert 'Added section "B"' in changes


async def test_ai_timeout_falls_back():
    class SlowCompletion(TextCompletion):
        async def complete(self, messages, temperature=0.0, max_tokens=500):
            await asyncio.sleep(1)
            return Completion(text='["never"]')

    outcome = await DiffSummarizer(SlowCompletion(), timeout=0.01).compare("# A\nfoo", "# A\n# B\nfoo bar")

    assert outcome.reason == "timeout"
    assert 'Added section "B"' in outcome.value


async def test_identical_revisions_skip_completion():
    completion = FakeCompletion(lambda messages: '["should not be called"]')

    outcome = await DiffSummarizer(completion).compare("text", " text ")

    assert outcome.value == []
    assert completion.calls == []
