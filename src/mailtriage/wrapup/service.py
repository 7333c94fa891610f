"""Morning and evening digests of recently processed mail."""

from __future__ import annotations

import json
import logging
from datetime import datetime, time, timedelta

from dateutil.tz import tzlocal

from mailtriage.llm.completion import CompletionService
from mailtriage.models import Account, ProcessedMessage, WrapupKind, WrapupReport
from mailtriage.prompts import TaskKind
from mailtriage.store.base import Store

logger = logging.getLogger(__name__)

MAX_LISTED_MESSAGES = 100

MORNING_SINCE = time(17, 0)  # previous evening
EVENING_SINCE = time(8, 0)  # this morning


def wrapup_window(kind: WrapupKind, now: datetime) -> tuple[datetime, datetime]:
    if kind is WrapupKind.MORNING:
        day = now.date() - timedelta(days=1)
        return datetime.combine(day, MORNING_SINCE, tzinfo=now.tzinfo), now
    return datetime.combine(now.date(), EVENING_SINCE, tzinfo=now.tzinfo), now


class WrapupService:
    def __init__(self, store: Store, completion: CompletionService):
        self.store = store
        self.completion = completion

    async def generate(
        self, account: Account, kind: WrapupKind, now: datetime | None = None,
    ) -> WrapupReport | None:
        """Write a digest for the kind's window. Returns None when nothing was processed."""
        now = now or datetime.now(tzlocal())
        start, end = wrapup_window(kind, now)
        messages = self.store.messages_in_range(account.id, start, end)
        if not messages:
            logger.info(f"[{account.email}] No emails for the {kind.value} wrap-up, skipping")
            return None

        system_prompt = (
            self.store.get_base_instruction(account.id, TaskKind.WRAPUP_REPORT)
            or TaskKind.WRAPUP_REPORT.default_instruction
        )
        content = await self.completion.generate_text(
            system_prompt, self._user_prompt(kind, messages),
        )
        report = self.store.create_wrapup(WrapupReport(
            account_id=account.id,
            kind=kind,
            content=content,
            message_count=len(messages),
            generated_at=now,
        ))
        logger.info(f"[{account.email}] Created {kind.value} wrap-up ({len(messages)} emails)")
        return report

    @staticmethod
    def _user_prompt(kind: WrapupKind, messages: list[ProcessedMessage]) -> str:
        lines = []
        for msg in messages[:MAX_LISTED_MESSAGES]:
            archived = " [ARCHIVED]" if msg.archived else ""
            lines.append(
                f"- {msg.sender}: {msg.subject} | Labels: {json.dumps(msg.labels_applied)}{archived}"
            )
        if len(messages) > MAX_LISTED_MESSAGES:
            lines.append(f"... and {len(messages) - MAX_LISTED_MESSAGES} more emails")

        timeframe = "overnight" if kind is WrapupKind.MORNING else "today"
        return (
            f"Create a {kind.value} wrap-up report for these {len(messages)} emails "
            f"processed {timeframe}:\n\n" + "\n".join(lines) + "\n\nProvide a brief, scannable summary."
        )
