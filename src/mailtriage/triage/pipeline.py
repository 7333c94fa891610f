"""Two-stage triage: analyze, decide, record, then apply to the mailbox."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timezone

from mailtriage.exceptions import MailTriageError, StoreError
from mailtriage.gmail.gateway import MailGateway
from mailtriage.gmail.parser import prepare_body
from mailtriage.llm.completion import CompletionService
from mailtriage.models import Account, Decision, LabelRule, MailMessage, ProcessedMessage
from mailtriage.prompts import (
    TaskKind,
    compose_instruction,
    render_label_vocabulary,
    render_memory_context,
)
from mailtriage.store.base import Store

logger = logging.getLogger(__name__)


class MessageSink(ABC):
    """Anything the sync engine can hand a discovered message to."""

    @abstractmethod
    async def handle(self, account: Account, message: MailMessage) -> bool:
        """Process one message. Returns False if it had already been recorded.

        Raises ``MailTriageError`` when the message could not be triaged; in
        that case nothing was recorded.
        """
        ...


class TriagePipeline(MessageSink):
    """Turns one message into a recorded ``ProcessedMessage`` and applies it.

    Args:
        store: Durable state.
        gateway: Mailbox access for label and archive mutations.
        completion: Analyze and decide calls.
        body_limit: Characters of body text sent for analysis.
        past_slug_limit: How many of the sender's recent slugs to offer for reuse.
        serialize_labels: Hold a per-account lock around label resolve-or-create
            so two concurrent messages cannot create the same label twice.
    """

    def __init__(
        self,
        store: Store,
        gateway: MailGateway,
        completion: CompletionService,
        body_limit: int = 2000,
        past_slug_limit: int = 5,
        serialize_labels: bool = True,
    ):
        self.store = store
        self.gateway = gateway
        self.completion = completion
        self.body_limit = body_limit
        self.past_slug_limit = past_slug_limit
        self.serialize_labels = serialize_labels
        self._label_locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def handle(self, account: Account, message: MailMessage) -> bool:
        if self.store.message_exists(account.id, message.message_id):
            logger.info(f"[{account.email}] Skipping already processed message {message.message_id}")
            return False

        logger.info(f"[{account.email}] Processing email: {message.sender} - {message.subject}")
        body = prepare_body(message.body, self.body_limit)

        memory_context = render_memory_context(self._memory_context(account))
        analyze_instruction = self._instruction(account, TaskKind.ANALYZE, memory_context)
        decide_instruction = self._instruction(account, TaskKind.DECIDE, memory_context)

        past_slugs = self._past_slugs(account, message.sender)
        analysis = await self.completion.analyze(
            message.sender, message.subject, body, past_slugs, analyze_instruction,
        )
        logger.info(f"[{account.email}] Analyze: slug={analysis.slug}, keywords={analysis.keywords}")

        labels = self._labels(account)
        label_names = [rule.name for rule in labels]
        decision = await self.completion.decide(
            message.sender,
            message.subject,
            analysis,
            label_names,
            render_label_vocabulary(labels),
            decide_instruction,
        )
        decision = self._restrict_labels(account, decision, label_names)
        logger.info(
            f"[{account.email}] Decide: labels={decision.labels}, archive={decision.archive}, "
            f"reason={decision.reasoning}"
        )

        record = ProcessedMessage(
            account_id=account.id,
            message_id=message.message_id,
            sender=message.sender,
            subject=message.subject,
            slug=analysis.slug,
            keywords=analysis.keywords,
            summary=analysis.summary,
            labels_applied=decision.labels,
            archived=decision.archive,
            reasoning=decision.reasoning,
            processed_at=datetime.now(timezone.utc),
        )
        if not self.store.record_message(record):
            logger.info(f"[{account.email}] Message {message.message_id} was recorded concurrently")
            return False

        await self.apply(account, message.message_id, decision)
        logger.info(f"[{account.email}] Email processed: {message.subject}")
        return True

    async def apply(self, account: Account, message_id: str, decision: Decision) -> None:
        """Write the decision to the mailbox; failures are logged, never raised."""
        label_ids = []
        for name in decision.labels:
            try:
                label_ids.append(await self._resolve_label(account, name))
            except MailTriageError as e:
                logger.warning(f"[{account.email}] Failed to resolve label '{name}': {e}")

        if label_ids:
            try:
                await self.gateway.add_labels(account, message_id, label_ids)
                logger.info(f"[{account.email}] Applied labels {decision.labels} to {message_id}")
            except MailTriageError as e:
                logger.error(f"[{account.email}] Failed to add labels to {message_id}: {e}")

        if decision.archive:
            try:
                await self.gateway.archive(account, message_id)
                logger.info(f"[{account.email}] Archived message {message_id}")
            except MailTriageError as e:
                logger.error(f"[{account.email}] Failed to archive {message_id}: {e}")

    async def _resolve_label(self, account: Account, name: str) -> str:
        if not self.serialize_labels:
            return await self.gateway.resolve_label(account, name)
        async with self._label_locks[account.id]:
            return await self.gateway.resolve_label(account, name)

    def _instruction(self, account: Account, kind: TaskKind, memory_context: str) -> str:
        base = self.store.get_base_instruction(account.id, kind) or kind.default_instruction
        supplement = self.store.latest_supplement(account.id, kind)
        return compose_instruction(
            base, supplement.content if supplement else None, memory_context,
        )

    def _memory_context(self, account: Account):
        try:
            return self.store.memory_context(account.id)
        except StoreError as e:
            logger.warning(f"[{account.email}] Memory context unavailable: {e}")
            return []

    def _past_slugs(self, account: Account, sender: str) -> list[str]:
        try:
            return self.store.past_slugs(account.id, sender, self.past_slug_limit)
        except StoreError as e:
            logger.warning(f"[{account.email}] Error getting past slugs: {e}")
            return []

    def _labels(self, account: Account) -> list[LabelRule]:
        try:
            return self.store.list_labels(account.id)
        except StoreError as e:
            logger.warning(f"[{account.email}] Error getting labels: {e}")
            return []

    @staticmethod
    def _restrict_labels(account: Account, decision: Decision, label_names: list[str]) -> Decision:
        known = set(label_names)
        unknown = [name for name in decision.labels if name not in known]
        if unknown:
            logger.warning(f"[{account.email}] Dropping labels outside the vocabulary: {unknown}")
        kept = []
        for name in decision.labels:
            if name in known and name not in kept:
                kept.append(name)
        return Decision(labels=kept, archive=decision.archive, reasoning=decision.reasoning)
