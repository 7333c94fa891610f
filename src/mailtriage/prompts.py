"""Default instructions and prompt rendering helpers.

Every completion call is driven by a ``TaskKind``. Users may store their own
base instruction per kind; when they have not, the kind's default is used.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from mailtriage.models import LabelRule, Memory, MemoryTier


class TaskKind(str, Enum):
    """Closed set of completion tasks, each with a default instruction."""

    ANALYZE = "email_analyze"
    DECIDE = "email_actions"
    DAILY_REVIEW = "daily_review"
    WEEKLY_SUMMARY = "weekly_summary"
    MONTHLY_SUMMARY = "monthly_summary"
    YEARLY_SUMMARY = "yearly_summary"
    WRAPUP_REPORT = "wrapup_report"

    @property
    def default_instruction(self) -> str:
        return DEFAULT_INSTRUCTIONS[self]

    @classmethod
    def triage_kinds(cls) -> tuple[TaskKind, TaskKind]:
        """Kinds used by the triage pipeline; these receive prompt supplements."""
        return (cls.ANALYZE, cls.DECIDE)


ANALYZE_INSTRUCTION = """\
You are an email classification assistant. Analyze the email and report:
1. A snake_case slug that categorizes this type of email (e.g. "marketing_newsletter", \
"invoice_due", "meeting_request"). If one of the slugs previously used for this sender \
still fits, reuse it exactly so categories stay stable over time.
2. Between 3 and 5 keywords describing the email content.
3. A single-line summary of at most 100 characters."""

DECIDE_INSTRUCTION = """\
You are an email automation assistant. Based on the email analysis and past learnings, decide:
1. Which labels to apply. Use exact label names from the available labels only, and only \
when they clearly match. Never invent a label.
2. Whether to bypass the inbox (archive immediately).
3. A brief reasoning for your decisions.

Use the learnings from past email processing to make better decisions about labeling and archiving."""

DAILY_REVIEW_INSTRUCTION = """\
You are creating learnings to improve future email processing decisions. Do NOT summarize \
what happened; extract insights that will help process email better tomorrow.

**Key learnings for tomorrow:** specific rules to apply, sender patterns to remember, \
content patterns that indicate specific labels.
**What worked well:** categorization decisions that look correct and should be repeated.
**What to improve:** emails that may have been miscategorized and why, patterns that were missed.

Keep the response to about 100 words of concise, actionable bullet points."""

_INITIAL_ROLLUP_TEMPLATE = """\
You are creating the first {period} email processing memory. Review the provided memories \
and produce insights focused on:
1. Overarching patterns and trends
2. Important sender and content behaviours
3. Recurring themes
4. Strategic guidance for labeling and archiving
5. Process improvements

Keep the response to about {words} words. Format as bullet points."""

EVOLVE_ROLLUP_TEMPLATE = """\
You are evolving an existing {period} email processing memory. UPDATE the current memory \
with the new lower-level memories. DO NOT write a new memory from scratch.

**Reinforce:** keep and strengthen insights the new memories confirm.
**Amend:** refine insights where the new memories show a change; add genuinely new learnings.
**Prune:** drop or de-emphasize insights that are stale.

Build on the current memory's structure. Keep the response to about 400 words. Format as bullet points."""

WRAPUP_INSTRUCTION = """\
You are writing an email processing digest for quick review. Cover:
1. Total number of emails processed
2. Most common senders and types
3. The most important emails (by subject and sender) and why
4. Labels applied
5. What was archived versus kept in the inbox

Keep it brief and scannable."""

SUPPLEMENT_INSTRUCTION = """\
You maintain a short set of learned instructions that is appended to a user's own \
instruction for the "{kind}" email task. You are given the user's instruction (read-only), \
the current learned instructions (if any) and the latest weekly memory.

Write the updated learned instructions:
- Never contradict or restate the user's instruction; only add guidance it does not cover.
- Evolve the current learned instructions rather than starting over; the output replaces them.
- Only reference label names that appear in the memory or the user's instruction.
- Be concise and imperative, one bullet per rule, at most 15 bullets.

Output only the bullets."""

_ROLLUP_WORD_CAPS = {
    "weekly": 300,
    "monthly": 800,
    "yearly": 800,
}

DEFAULT_INSTRUCTIONS = {
    TaskKind.ANALYZE: ANALYZE_INSTRUCTION,
    TaskKind.DECIDE: DECIDE_INSTRUCTION,
    TaskKind.DAILY_REVIEW: DAILY_REVIEW_INSTRUCTION,
    TaskKind.WEEKLY_SUMMARY: _INITIAL_ROLLUP_TEMPLATE.format(period="weekly", words=_ROLLUP_WORD_CAPS["weekly"]),
    TaskKind.MONTHLY_SUMMARY: _INITIAL_ROLLUP_TEMPLATE.format(period="monthly", words=_ROLLUP_WORD_CAPS["monthly"]),
    TaskKind.YEARLY_SUMMARY: _INITIAL_ROLLUP_TEMPLATE.format(period="yearly", words=_ROLLUP_WORD_CAPS["yearly"]),
    TaskKind.WRAPUP_REPORT: WRAPUP_INSTRUCTION,
}


def evolve_instruction(tier: MemoryTier) -> str:
    return EVOLVE_ROLLUP_TEMPLATE.format(period=tier.value)


def supplement_instruction(kind: TaskKind) -> str:
    return SUPPLEMENT_INSTRUCTION.format(kind=kind.value)


# -------------------------------------------------------------------------
# Rendering
# -------------------------------------------------------------------------

def render_label_vocabulary(labels: Iterable[LabelRule]) -> str:
    """Bullet list of labels with descriptions and example reasons."""
    lines = []
    for rule in labels:
        line = f'- "{rule.name}"'
        if rule.description:
            line += f": {rule.description}"
        if rule.reasons:
            line += f" (e.g. {', '.join(rule.reasons)})"
        lines.append(line)
    return "\n".join(lines)


def render_label_section(labels: list[LabelRule]) -> str:
    """Label section appended to rollup instructions, empty when there are no labels."""
    if not labels:
        return ""
    lines = [
        f"- {rule.name}: {rule.description}" if rule.description else f"- {rule.name}"
        for rule in labels
    ]
    return (
        "\n\nAvailable labels (ONLY reference these exact label names in your learnings):\n"
        + "\n".join(lines)
    )


def render_memory_context(memories: list[Memory]) -> str:
    if not memories:
        return ""
    parts = ["Past learnings from email processing:"]
    for mem in memories:
        parts.append(f"**{mem.tier.value.upper()} Memory:**\n{mem.content}")
    return "\n\n".join(parts)


def compose_instruction(base: str, supplement: str | None = None, memory_context: str = "") -> str:
    """Base instruction, then learned guidance, then the memory window."""
    text = base.rstrip()
    if supplement:
        text += "\n\nLearned guidance (from past processing):\n" + supplement.strip()
    if memory_context:
        text += "\n\n" + memory_context
    return text
