"""
Prompt Templates
=================
System/user prompt pairs for every completion call the pipeline makes.
Each builder returns a ``Prompt``; ``Prompt.messages()`` yields the chat
message list expected by ``TextCompletion.complete``.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

from kbsync.models import DocumentDomain


@dataclass(frozen=True)
class Prompt:
    system: str
    user: str

    def messages(self) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": self.system},
            {"role": "user", "content": self.user},
        ]


# ---------------------------------------------------------------------------
# Domain-specific structuring instructions
# ---------------------------------------------------------------------------
_DOMAIN_GUIDELINES: Dict[DocumentDomain, str] = {
    DocumentDomain.TECHNICAL_GUIDE: (
        "You are a technical writer. Produce a technical guide with an Overview, "
        "Prerequisites, numbered Steps, Configuration details and a Troubleshooting "
        "section. Keep commands, versions and identifiers exact."
    ),
    DocumentDomain.HR_POLICY: (
        "You are an HR policy editor. Produce a policy document with Purpose, Scope, "
        "Policy Statements, Responsibilities and Exceptions. Use neutral, precise language."
    ),
    DocumentDomain.MEETING_NOTES: (
        "You are a meeting secretary. Produce meeting notes with Summary, Attendees "
        "(roles only), Discussion Points, Decisions and Action Items with owners."
    ),
    DocumentDomain.PROJECT_PLAN: (
        "You are a project manager. Produce a project plan with Overview, Goals, "
        "Milestones, Timeline, Risks and Dependencies."
    ),
    DocumentDomain.TROUBLESHOOTING: (
        "You are a support engineer. Produce a troubleshooting article with Symptoms, "
        "Cause, Resolution steps and Verification."
    ),
    DocumentDomain.CUSTOMER_SUPPORT: (
        "You are a customer support lead. Produce a support article with Summary, "
        "Customer Issue, Response Guidance and Escalation Path."
    ),
    DocumentDomain.DEFAULT_SOP: (
        "You are an expert at writing standard operating procedures. Produce an SOP "
        "with Overview, Scope, numbered Procedure steps and Notes."
    ),
}

_COMMON_RULES = """Guidelines:
- Create clear headings and sections
- Maintain factual accuracy and do not invent information
- Remove redundant chatter
- Use proper markdown formatting
- Preserve masked values (*****, [REDACTED]) exactly as given"""


class PromptTemplates:
    """Builders for every prompt the service sends."""

    @staticmethod
    def document_classification(raw_content: str) -> Prompt:
        labels = ", ".join(d.value for d in DocumentDomain)
        return Prompt(
            system=(
                "You classify business documents into exactly one category.\n"
                f"Valid categories: {labels}.\n"
                "Use AI_DETERMINED only when the document fits none of the others.\n"
                "Respond with the category label only, no punctuation or explanation."
            ),
            user=f"Classify this content:\n\n{raw_content[:4000]}",
        )

    @staticmethod
    def specialist(
        domain: DocumentDomain,
        content: str,
        source_type: str,
        source_count: int,
        pii_entities_found: int,
    ) -> Prompt:
        guideline = _DOMAIN_GUIDELINES.get(domain, _DOMAIN_GUIDELINES[DocumentDomain.DEFAULT_SOP])
        return Prompt(
            system=(
                f"{guideline}\n\n{_COMMON_RULES}\n\n"
                f"The content comes from {source_type} and has been processed for PII "
                f"removal ({pii_entities_found} entities found)."
            ),
            user=(
                f"Please structure the following content from {source_count} source(s):\n\n"
                f"{content}\n\n"
                "Return only the structured content in markdown format, starting with a "
                "clear title heading and ending with a brief summary."
            ),
        )

    @staticmethod
    def ai_determined(content: str, source_count: int, pii_entities_found: int) -> Prompt:
        return Prompt(
            system=(
                "You are an expert information architect. The document below does not fit "
                "a standard template. First decide which structure best serves a reader, "
                "then produce the document in that structure.\n\n"
                f"{_COMMON_RULES}\n\n"
                f"PII has been removed ({pii_entities_found} entities found)."
            ),
            user=(
                f"Structure the following content from {source_count} source(s):\n\n"
                f"{content}\n\n"
                "Return only the structured markdown document."
            ),
        )

    @staticmethod
    def topic_identification(content: str, existing_topics: Optional[List[str]] = None) -> Prompt:
        existing = ""
        if existing_topics:
            existing = f"\n\nExisting topics in the system: {', '.join(existing_topics)}"
        return Prompt(
            system=(
                "You are a topic classification expert. Identify 2-5 relevant topics "
                "that best categorize the document.\n\n"
                "Rules:\n"
                "- Return topics as a JSON array of strings\n"
                "- Topics should be concise (1-3 words)\n"
                f"- Focus on the main themes and subject matter{existing}"
            ),
            user=(
                f"Analyze this content and identify the most relevant topics:\n\n{content}\n\n"
                'Return a JSON array, for example: ["HR Policy", "Remote Work", "Benefits"]'
            ),
        )

    @staticmethod
    def confidence_assessment(
        structured_content: str,
        source_quality: float,
        source_count: int,
        heuristic_notes: Dict[str, str],
        document_type: str,
    ) -> Prompt:
        notes = "\n".join(f"- {key}: {value}" for key, value in heuristic_notes.items())
        return Prompt(
            system=(
                "You are a content quality assessor for a knowledge base. Score how much a "
                "reviewer can trust the document without edits.\n\n"
                "Score these factors from 0.0 to 1.0:\n"
                "- contentClarity: structure and readability\n"
                "- informationCompleteness: coverage of the subject\n"
                "- factualConsistency: internal consistency and reliability\n"
                "- actionability: can a reader act on it\n\n"
                f"Context:\n- Document type: {document_type}\n"
                f"- Original source quality: {source_quality}\n"
                f"- Content length: {len(structured_content)} characters\n"
                f"- Number of sources: {source_count}\n"
                f"Heuristic observations:\n{notes}"
            ),
            user=(
                f"Assess this structured content:\n\n{structured_content}\n\n"
                "Return JSON only:\n"
                "{\n"
                '  "factors": {"contentClarity": 0.8, "informationCompleteness": 0.7,\n'
                '              "factualConsistency": 0.9, "actionability": 0.7},\n'
                '  "overallConfidence": 0.8,\n'
                '  "reasoning": "Brief explanation",\n'
                '  "recommendations": ["..."]\n'
                "}"
            ),
        )

    @staticmethod
    def diff_summary(old_excerpt: str, new_excerpt: str) -> Prompt:
        return Prompt(
            system=(
                "You compare two revisions of a document and list what changed. "
                "Return a JSON array of at most 5 short change descriptions, "
                "most important first. Return [] if nothing meaningful changed."
            ),
            user=(
                f"PREVIOUS VERSION:\n{old_excerpt}\n\n"
                f"NEW VERSION:\n{new_excerpt}\n\n"
                "Return only the JSON array."
            ),
        )
