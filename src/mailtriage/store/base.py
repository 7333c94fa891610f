"""Abstract persistence contract consumed by the triage core."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime

from mailtriage.models import (
    Account,
    Credential,
    LabelRule,
    Memory,
    MemoryTier,
    ProcessedMessage,
    PromptSupplement,
    WrapupReport,
)
from mailtriage.prompts import TaskKind

# (tier, limit) slots of the memory context window, least specific first.
MEMORY_CONTEXT_SLOTS = (
    (MemoryTier.YEARLY, 1),
    (MemoryTier.MONTHLY, 1),
    (MemoryTier.WEEKLY, 1),
    (MemoryTier.DAILY, 7),
)


class Store(ABC):
    """Durable state for accounts, decisions, labels, memories and prompts.

    Implementations must serialize their own access: the sync engine and the
    scheduler call into one store from many concurrent workers.
    """

    # -- accounts -----------------------------------------------------------

    @abstractmethod
    def upsert_account(self, email: str, provider_id: str, credential: Credential) -> Account:
        """Create the account on first login, otherwise refresh its credential and reactivate it."""
        ...

    @abstractmethod
    def get_account(self, account_id: int) -> Account:
        ...

    @abstractmethod
    def get_account_by_email(self, email: str) -> Account:
        ...

    @abstractmethod
    def list_active_accounts(self) -> list[Account]:
        ...

    @abstractmethod
    def set_account_active(self, account_id: int, active: bool) -> None:
        ...

    @abstractmethod
    def update_credential(self, account_id: int, credential: Credential) -> None:
        ...

    @abstractmethod
    def update_watermark(self, account_id: int, watermark_ms: int) -> None:
        ...

    @abstractmethod
    def update_history_cursor(self, account_id: int, cursor: int) -> None:
        ...

    # -- processed messages ---------------------------------------------------

    @abstractmethod
    def record_message(self, message: ProcessedMessage) -> bool:
        """Insert-or-ignore by (account, message id). Returns True if a row was written."""
        ...

    @abstractmethod
    def message_exists(self, account_id: int, message_id: str) -> bool:
        ...

    @abstractmethod
    def get_message(self, account_id: int, message_id: str) -> ProcessedMessage | None:
        ...

    @abstractmethod
    def set_correction(self, account_id: int, message_id: str, correction: str) -> None:
        """Attach human correction text to a recorded decision."""
        ...

    @abstractmethod
    def past_slugs(self, account_id: int, sender: str, limit: int = 5) -> list[str]:
        """The ``limit`` most recently used distinct slugs for a sender."""
        ...

    @abstractmethod
    def messages_in_range(
        self, account_id: int, start: datetime, end: datetime,
    ) -> list[ProcessedMessage]:
        """Messages processed in [start, end), oldest first."""
        ...

    @abstractmethod
    def recent_messages(self, account_id: int, limit: int = 50) -> list[ProcessedMessage]:
        ...

    # -- labels -------------------------------------------------------------

    @abstractmethod
    def list_labels(self, account_id: int) -> list[LabelRule]:
        ...

    @abstractmethod
    def create_label(
        self,
        account_id: int,
        name: str,
        description: str = "",
        reasons: list[str] | None = None,
    ) -> LabelRule:
        ...

    @abstractmethod
    def delete_label(self, account_id: int, label_id: int) -> None:
        ...

    # -- base instructions ------------------------------------------------------

    @abstractmethod
    def get_base_instruction(self, account_id: int, kind: TaskKind) -> str | None:
        """User-authored instruction for ``kind``, or None if never set."""
        ...

    @abstractmethod
    def set_base_instruction(self, account_id: int, kind: TaskKind, content: str) -> None:
        ...

    # -- memories -------------------------------------------------------------

    @abstractmethod
    def create_memory(self, memory: Memory) -> Memory:
        ...

    @abstractmethod
    def latest_memory(self, account_id: int, tier: MemoryTier) -> Memory | None:
        """Most recent memory of a tier (greatest period start)."""
        ...

    @abstractmethod
    def memories_in_range(
        self, account_id: int, tier: MemoryTier, start: datetime, end: datetime,
    ) -> list[Memory]:
        """Memories of ``tier`` whose period starts in [start, end), oldest first."""
        ...

    @abstractmethod
    def memory_context(self, account_id: int) -> list[Memory]:
        """1 yearly, 1 monthly, 1 weekly and up to 7 daily memories, most specific last."""
        ...

    @abstractmethod
    def list_memories(self, account_id: int, limit: int = 100) -> list[Memory]:
        ...

    # -- prompt supplements -----------------------------------------------------

    @abstractmethod
    def create_supplement(self, account_id: int, kind: TaskKind, content: str) -> PromptSupplement:
        """Persist a new version; versions are 1, 2, 3, ... per (account, kind)."""
        ...

    @abstractmethod
    def latest_supplement(self, account_id: int, kind: TaskKind) -> PromptSupplement | None:
        ...

    @abstractmethod
    def supplement_history(
        self, account_id: int, kind: TaskKind, limit: int = 20,
    ) -> list[PromptSupplement]:
        ...

    # -- wrap-up reports ---------------------------------------------------------

    @abstractmethod
    def create_wrapup(self, report: WrapupReport) -> WrapupReport:
        ...

    @abstractmethod
    def list_wrapups(self, account_id: int, limit: int = 20) -> list[WrapupReport]:
        ...
