"""Daily, weekly, monthly and yearly memory rollups.

Daily memories are distilled from processed messages. Each higher tier
consumes the memories of the tier below whose period starts inside its
consumption window. That window starts where the tier's latest memory ended,
so nothing is skipped or folded in twice.
"""

from __future__ import annotations

import json
import logging
from datetime import date, datetime, time, timedelta, tzinfo

from dateutil.relativedelta import relativedelta
from dateutil.tz import tzlocal

from mailtriage.llm.completion import CompletionService
from mailtriage.models import Account, Memory, MemoryTier, ProcessedMessage
from mailtriage.prompts import evolve_instruction, render_label_section
from mailtriage.store.base import Store

logger = logging.getLogger(__name__)

MAX_DAILY_MESSAGES = 50


def _midnight(day: date, tz: tzinfo | None) -> datetime:
    return datetime.combine(day, time(), tzinfo=tz)


def nominal_window(tier: MemoryTier, now: datetime) -> tuple[datetime, datetime]:
    """Default [start, end) period a rollup of ``tier`` covers when run at ``now``.

    Boundaries are local midnights in ``now``'s zone, computed on calendar
    dates so a DST change inside the window does not shift them.
    """
    today = now.date()
    if tier is MemoryTier.DAILY:
        start, end = today - timedelta(days=1), today
    elif tier is MemoryTier.WEEKLY:
        start, end = today - timedelta(days=7), today
    elif tier is MemoryTier.MONTHLY:
        end = today.replace(day=1)
        start = end - relativedelta(months=1)
    else:
        end = today.replace(month=1, day=1)
        start = end - relativedelta(years=1)
    return _midnight(start, now.tzinfo), _midnight(end, now.tzinfo)


def _day(dt: datetime) -> str:
    return dt.astimezone().date().isoformat()


class MemoryHierarchy:
    """Builds and evolves the per-account memory tiers."""

    def __init__(self, store: Store, completion: CompletionService):
        self.store = store
        self.completion = completion

    async def run_tier(self, account: Account, tier: MemoryTier, now: datetime | None = None) -> Memory | None:
        """Roll up one tier. Returns the new memory, or None when there was nothing to consume."""
        now = now or datetime.now(tzlocal())
        if tier is MemoryTier.DAILY:
            return await self.daily(account, now)
        return await self.consolidate(account, tier, now)

    # -------------------------------------------------------------------------
    # Daily
    # -------------------------------------------------------------------------

    async def daily(self, account: Account, now: datetime) -> Memory | None:
        start, end = nominal_window(MemoryTier.DAILY, now)
        messages = self.store.messages_in_range(account.id, start, end)

        if not messages:
            # useful when the rollup is triggered by hand during the day
            logger.info(f"[{account.email}] No messages processed yesterday, trying last 24 hours")
            messages = self.store.messages_in_range(account.id, now - timedelta(hours=24), now)
            if not messages:
                logger.info(f"[{account.email}] No messages in last 24 hours, skipping daily memory")
                return None

        system_prompt = self._instruction(account, MemoryTier.DAILY)
        content = await self.completion.generate_text(
            system_prompt, self._daily_user_prompt(messages),
        )
        memory = self.store.create_memory(Memory(
            account_id=account.id,
            tier=MemoryTier.DAILY,
            content=content,
            period_start=start,
            period_end=end,
        ))
        logger.info(f"[{account.email}] Created daily memory ({len(messages)} emails analyzed)")
        return memory

    @staticmethod
    def _daily_user_prompt(messages: list[ProcessedMessage]) -> str:
        lines = []
        feedback = []
        for msg in messages[:MAX_DAILY_MESSAGES]:
            line = (
                f"- From: {msg.sender} | Subject: {msg.subject} | Slug: {msg.slug} | "
                f"Labels: {json.dumps(msg.labels_applied)} | Archived: {str(msg.archived).lower()} | "
                f"Keywords: {json.dumps(msg.keywords)}"
            )
            if msg.reasoning:
                line += f" | AI Reasoning: {msg.reasoning}"
            lines.append(line)
            if msg.human_correction:
                feedback.append(
                    f"- Email from {msg.sender} (Subject: {msg.subject}): {msg.human_correction}"
                )
        if len(messages) > MAX_DAILY_MESSAGES:
            lines.append(f"... and {len(messages) - MAX_DAILY_MESSAGES} more emails")

        prompt = (
            f"Review these {len(messages)} processed emails and extract learnings "
            f"to improve future email handling:\n\n" + "\n".join(lines)
        )
        prompt += _feedback_section(feedback)
        prompt += (
            "\nFocus on actionable insights that will help process similar emails better. "
            "What patterns should be reinforced? What should be done differently?"
        )
        return prompt

    # -------------------------------------------------------------------------
    # Weekly, monthly, yearly
    # -------------------------------------------------------------------------

    async def consolidate(self, account: Account, tier: MemoryTier, now: datetime) -> Memory | None:
        lower = tier.lower
        nominal_start, end = nominal_window(tier, now)
        previous = self.store.latest_memory(account.id, tier)
        start = previous.period_end if previous else nominal_start

        if start >= end:
            logger.info(f"[{account.email}] {tier.value} memory already covers up to {_day(end)}, skipping")
            return None

        sources = self.store.memories_in_range(account.id, lower, start, end)
        if not sources:
            logger.info(f"[{account.email}] No new {lower.value} memories, skipping {tier.value} memory")
            return None

        corrections = [
            msg for msg in self.store.messages_in_range(account.id, start, end)
            if msg.human_correction
        ]
        system_prompt = self._instruction(account, tier, evolving=previous is not None)
        user_prompt = self._consolidation_user_prompt(tier, previous, sources, corrections)

        content = await self.completion.generate_text(system_prompt, user_prompt)
        memory = self.store.create_memory(Memory(
            account_id=account.id,
            tier=tier,
            content=content,
            period_start=start,
            period_end=end,
        ))
        action = "Evolved" if previous else "Created first"
        logger.info(
            f"[{account.email}] {action} {tier.value} memory from {len(sources)} "
            f"{lower.value} memories ({_day(start)} to {_day(end)})"
        )
        return memory

    @staticmethod
    def _consolidation_user_prompt(
        tier: MemoryTier,
        previous: Memory | None,
        sources: list[Memory],
        corrections: list[ProcessedMessage],
    ) -> str:
        summaries = "\n\n".join(
            f"New Memory {i} ({_day(mem.period_start)} to {_day(mem.period_end)}):\n{mem.content}"
            for i, mem in enumerate(sources, start=1)
        )
        feedback = _feedback_section([
            f"- Email from {msg.sender} (Subject: {msg.subject}): {msg.human_correction}"
            for msg in corrections
        ])

        if previous is None:
            return (
                f"Create the first {tier.value} memory by consolidating these "
                f"{len(sources)} memories:\n\n{summaries}\n{feedback}\n"
                f"Provide a concise {tier.value} summary with key patterns and strategic insights."
            )

        return (
            f"**CURRENT {tier.value.upper()} MEMORY (to be evolved):**\n"
            f"Period: {_day(previous.period_start)} to {_day(previous.period_end)}\n"
            f"{previous.content}\n\n"
            f"**NEW INSIGHTS FROM RECENT MEMORIES ({len(sources)} new):**\n"
            f"{summaries}\n{feedback}\n"
            "Task: Evolve the current memory by:\n"
            "1. Reinforcing patterns that continue in the new memories\n"
            "2. Updating insights where new data shows changes\n"
            "3. Adding new learnings not present in the current memory\n"
            "4. Removing outdated insights\n\n"
            f"Output an evolved {tier.value} memory that builds on the current one."
        )

    def _instruction(self, account: Account, tier: MemoryTier, evolving: bool = False) -> str:
        custom = self.store.get_base_instruction(account.id, tier.task_kind)
        if custom:
            base = custom
        elif evolving:
            base = evolve_instruction(tier)
        else:
            base = tier.task_kind.default_instruction
        return base + render_label_section(self.store.list_labels(account.id))


def _feedback_section(items: list[str]) -> str:
    if not items:
        return ""
    return (
        "\n\n**IMPORTANT - HUMAN FEEDBACK (PRIORITIZE THESE):**\n"
        "The human gave explicit feedback on these emails. Include these instructions "
        "prominently in the memory:\n\n"
        + "\n".join(items)
        + "\n\nThese human corrections take priority over inferred patterns.\n"
    )
