"""Versioned, machine-authored additions to the triage instructions."""

from __future__ import annotations

import logging

from mailtriage.exceptions import MailTriageError
from mailtriage.llm.completion import CompletionService
from mailtriage.models import Account, MemoryTier, PromptSupplement
from mailtriage.prompts import TaskKind, supplement_instruction
from mailtriage.store.base import Store

logger = logging.getLogger(__name__)


class PromptEvolution:
    """Regenerates the supplement for each triage kind from the latest weekly memory.

    The user's own instruction is read, never written. Each run persists a new
    version per kind; a failure for one kind does not stop the other.
    """

    def __init__(self, store: Store, completion: CompletionService):
        self.store = store
        self.completion = completion

    async def evolve(self, account: Account) -> list[PromptSupplement]:
        weekly = self.store.latest_memory(account.id, MemoryTier.WEEKLY)
        if weekly is None:
            logger.info(f"[{account.email}] No weekly memory yet, skipping prompt evolution")
            return []

        created = []
        for kind in TaskKind.triage_kinds():
            try:
                created.append(await self.evolve_kind(account, kind, weekly.content))
            except MailTriageError as e:
                logger.error(f"[{account.email}] Failed to evolve {kind.value} supplement: {e}")
        return created

    async def evolve_kind(self, account: Account, kind: TaskKind, weekly_memory: str) -> PromptSupplement:
        base = self.store.get_base_instruction(account.id, kind) or kind.default_instruction
        current = self.store.latest_supplement(account.id, kind)

        parts = [f"**USER INSTRUCTION (read-only):**\n{base}"]
        if current:
            parts.append(f"**CURRENT LEARNED INSTRUCTIONS (version {current.version}):**\n{current.content}")
        else:
            parts.append("**CURRENT LEARNED INSTRUCTIONS:**\n(none yet)")
        parts.append(f"**LATEST WEEKLY MEMORY:**\n{weekly_memory}")
        parts.append("Write the updated learned instructions.")

        content = await self.completion.generate_text(
            supplement_instruction(kind), "\n\n".join(parts),
        )
        supplement = self.store.create_supplement(account.id, kind, content)
        logger.info(f"[{account.email}] Stored {kind.value} supplement v{supplement.version}")
        return supplement
