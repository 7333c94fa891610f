"""Data models shared across mailtriage."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from mailtriage.exceptions import CompletionFormatError
from mailtriage.prompts import TaskKind


class MemoryTier(str, Enum):
    """Consolidation tiers, from most to least specific."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"

    @property
    def lower(self) -> MemoryTier | None:
        """The tier whose memories this tier consumes (None for daily)."""
        return _LOWER_TIER[self]

    @property
    def task_kind(self) -> TaskKind:
        """Instruction kind a user can customise for this tier's rollup."""
        return _TIER_TASK_KIND[self]


_LOWER_TIER = {
    MemoryTier.DAILY: None,
    MemoryTier.WEEKLY: MemoryTier.DAILY,
    MemoryTier.MONTHLY: MemoryTier.WEEKLY,
    MemoryTier.YEARLY: MemoryTier.MONTHLY,
}

_TIER_TASK_KIND = {
    MemoryTier.DAILY: TaskKind.DAILY_REVIEW,
    MemoryTier.WEEKLY: TaskKind.WEEKLY_SUMMARY,
    MemoryTier.MONTHLY: TaskKind.MONTHLY_SUMMARY,
    MemoryTier.YEARLY: TaskKind.YEARLY_SUMMARY,
}


class WrapupKind(str, Enum):
    MORNING = "morning"
    EVENING = "evening"


@dataclass
class Credential:
    """Refreshable mailbox credential."""

    access_token: str
    refresh_token: str
    expiry: datetime | None = None

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expiry is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now >= self.expiry


@dataclass
class Account:
    """A mailbox owner tracked by the system."""

    id: int
    email: str
    provider_id: str
    credential: Credential
    is_active: bool = True
    watermark_ms: int | None = None  # poll checkpoint (arrival time, epoch ms)
    history_cursor: int | None = None  # push checkpoint
    created_at: datetime | None = None

    @property
    def poll_start_ms(self) -> int:
        """Watermark to poll from; falls back to the signup time."""
        if self.watermark_ms is not None:
            return self.watermark_ms
        created = self.created_at or datetime.now(timezone.utc)
        return int(created.timestamp() * 1000)


@dataclass
class MailMessage:
    """A message as delivered by the mail gateway."""

    message_id: str
    thread_id: str
    sender: str
    subject: str
    body: str
    label_ids: list[str] = field(default_factory=list)
    internal_date: int = 0  # arrival time, epoch ms


@dataclass
class Analysis:
    """Stage 1 (analyze) output."""

    slug: str
    keywords: list[str]
    summary: str

    @classmethod
    def from_payload(cls, payload: dict) -> Analysis:
        slug = payload.get("slug")
        keywords = payload.get("keywords")
        summary = payload.get("summary")
        if not isinstance(slug, str) or not slug.strip():
            raise CompletionFormatError(f"analysis has no usable slug: {payload!r}")
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            raise CompletionFormatError(f"analysis keywords must be a list of strings: {payload!r}")
        if not isinstance(summary, str):
            raise CompletionFormatError(f"analysis summary must be a string: {payload!r}")
        return cls(slug=slug.strip(), keywords=keywords, summary=summary.strip())


@dataclass
class Decision:
    """Stage 2 (decide) output."""

    labels: list[str]
    archive: bool
    reasoning: str

    @classmethod
    def from_payload(cls, payload: dict) -> Decision:
        labels = payload.get("labels")
        archive = payload.get("bypass_inbox")
        reasoning = payload.get("reasoning")
        if not isinstance(labels, list) or not all(isinstance(name, str) for name in labels):
            raise CompletionFormatError(f"decision labels must be a list of strings: {payload!r}")
        if not isinstance(archive, bool):
            raise CompletionFormatError(f"decision bypass_inbox must be a boolean: {payload!r}")
        if not isinstance(reasoning, str):
            raise CompletionFormatError(f"decision reasoning must be a string: {payload!r}")
        return cls(labels=labels, archive=archive, reasoning=reasoning)


@dataclass
class ProcessedMessage:
    """Immutable record of one triage decision, keyed by (account, message id)."""

    account_id: int
    message_id: str
    sender: str
    subject: str
    slug: str
    keywords: list[str]
    summary: str
    labels_applied: list[str]
    archived: bool
    reasoning: str
    processed_at: datetime
    human_correction: str = ""


@dataclass
class LabelRule:
    """A named tag in an account's label vocabulary."""

    name: str
    description: str = ""
    reasons: list[str] = field(default_factory=list)
    id: int | None = None


@dataclass
class Memory:
    """A consolidated narrative memory covering [period_start, period_end)."""

    account_id: int
    tier: MemoryTier
    content: str
    period_start: datetime
    period_end: datetime
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class PromptSupplement:
    """Machine-authored instruction text appended to a base instruction."""

    account_id: int
    kind: TaskKind
    content: str
    version: int
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class WrapupReport:
    """A write-once digest of recently processed messages."""

    account_id: int
    kind: WrapupKind
    content: str
    message_count: int
    generated_at: datetime
    id: int | None = None


@dataclass
class PushNotification:
    """Decoded inner payload of a push envelope."""

    email_address: str
    history_id: int
