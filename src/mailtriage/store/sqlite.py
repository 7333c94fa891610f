"""SQLite-backed store."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from mailtriage.exceptions import AccountNotFoundError, StoreError
from mailtriage.models import (
    Account,
    Credential,
    LabelRule,
    Memory,
    MemoryTier,
    ProcessedMessage,
    PromptSupplement,
    WrapupKind,
    WrapupReport,
)
from mailtriage.prompts import TaskKind
from mailtriage.store.base import MEMORY_CONTEXT_SLOTS, Store

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT NOT NULL UNIQUE,
    provider_id TEXT NOT NULL,
    access_token TEXT NOT NULL,
    refresh_token TEXT NOT NULL,
    token_expiry TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    watermark_ms INTEGER,
    history_cursor INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processed_messages (
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    message_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    subject TEXT NOT NULL,
    slug TEXT NOT NULL,
    keywords TEXT NOT NULL DEFAULT '[]',
    summary TEXT NOT NULL,
    labels_applied TEXT NOT NULL DEFAULT '[]',
    archived INTEGER NOT NULL DEFAULT 0,
    reasoning TEXT NOT NULL DEFAULT '',
    human_correction TEXT NOT NULL DEFAULT '',
    processed_at TEXT NOT NULL,
    PRIMARY KEY (account_id, message_id)
);
CREATE INDEX IF NOT EXISTS idx_processed_sender ON processed_messages(account_id, sender);
CREATE INDEX IF NOT EXISTS idx_processed_at ON processed_messages(account_id, processed_at);

CREATE TABLE IF NOT EXISTS labels (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    reasons TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (account_id, name)
);

CREATE TABLE IF NOT EXISTS base_instructions (
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    kind TEXT NOT NULL,
    content TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (account_id, kind)
);

CREATE TABLE IF NOT EXISTS memories (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    tier TEXT NOT NULL,
    content TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_memories_period ON memories(account_id, tier, period_start);

CREATE TABLE IF NOT EXISTS prompt_supplements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    kind TEXT NOT NULL,
    content TEXT NOT NULL,
    version INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (account_id, kind, version)
);

CREATE TABLE IF NOT EXISTS wrapup_reports (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    account_id INTEGER NOT NULL REFERENCES accounts(id),
    kind TEXT NOT NULL,
    content TEXT NOT NULL,
    message_count INTEGER NOT NULL,
    generated_at TEXT NOT NULL,
    UNIQUE (account_id, kind, generated_at)
);
"""


def _ts(dt: datetime) -> str:
    """UTC ISO-8601 with fixed precision, so string order is time order."""
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _now() -> str:
    return _ts(datetime.now(timezone.utc))


class SQLiteStore(Store):
    """Store on a single SQLite connection, serialized with a lock."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(SCHEMA)
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open store at {self.db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        """Run statements in one transaction under the store lock."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                raise StoreError(f"Store operation failed: {e}") from e

    # -------------------------------------------------------------------------
    # Accounts
    # -------------------------------------------------------------------------

    def upsert_account(self, email: str, provider_id: str, credential: Credential) -> Account:
        now = _now()
        expiry = _ts(credential.expiry) if credential.expiry else None
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO accounts (email, provider_id, access_token, refresh_token,
                                      token_expiry, is_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    provider_id = excluded.provider_id,
                    access_token = excluded.access_token,
                    refresh_token = CASE WHEN excluded.refresh_token != ''
                                         THEN excluded.refresh_token
                                         ELSE accounts.refresh_token END,
                    token_expiry = excluded.token_expiry,
                    is_active = 1,
                    updated_at = excluded.updated_at
                """,
                (email, provider_id, credential.access_token, credential.refresh_token,
                 expiry, now, now),
            )
            row = conn.execute("SELECT * FROM accounts WHERE email = ?", (email,)).fetchone()
        return self._row_to_account(row)

    def get_account(self, account_id: int) -> Account:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            raise AccountNotFoundError(f"No account with id {account_id}")
        return self._row_to_account(row)

    def get_account_by_email(self, email: str) -> Account:
        with self._tx() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE email = ?", (email,)).fetchone()
        if row is None:
            raise AccountNotFoundError(f"No account for {email}")
        return self._row_to_account(row)

    def list_active_accounts(self) -> list[Account]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM accounts WHERE is_active = 1 ORDER BY id"
            ).fetchall()
        return [self._row_to_account(r) for r in rows]

    def set_account_active(self, account_id: int, active: bool) -> None:
        self._update_account(account_id, "is_active", int(active))

    def update_credential(self, account_id: int, credential: Credential) -> None:
        expiry = _ts(credential.expiry) if credential.expiry else None
        with self._tx() as conn:
            cur = conn.execute(
                """
                UPDATE accounts
                SET access_token = ?, refresh_token = ?, token_expiry = ?, updated_at = ?
                WHERE id = ?
                """,
                (credential.access_token, credential.refresh_token, expiry, _now(), account_id),
            )
        if cur.rowcount == 0:
            raise AccountNotFoundError(f"No account with id {account_id}")

    def update_watermark(self, account_id: int, watermark_ms: int) -> None:
        self._update_account(account_id, "watermark_ms", watermark_ms)

    def update_history_cursor(self, account_id: int, cursor: int) -> None:
        self._update_account(account_id, "history_cursor", cursor)

    def _update_account(self, account_id: int, column: str, value) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                f"UPDATE accounts SET {column} = ?, updated_at = ? WHERE id = ?",
                (value, _now(), account_id),
            )
        if cur.rowcount == 0:
            raise AccountNotFoundError(f"No account with id {account_id}")

    @staticmethod
    def _row_to_account(row: sqlite3.Row) -> Account:
        return Account(
            id=row["id"],
            email=row["email"],
            provider_id=row["provider_id"],
            credential=Credential(
                access_token=row["access_token"],
                refresh_token=row["refresh_token"],
                expiry=_parse_ts(row["token_expiry"]),
            ),
            is_active=bool(row["is_active"]),
            watermark_ms=row["watermark_ms"],
            history_cursor=row["history_cursor"],
            created_at=_parse_ts(row["created_at"]),
        )

    # -------------------------------------------------------------------------
    # Processed messages
    # -------------------------------------------------------------------------

    def record_message(self, message: ProcessedMessage) -> bool:
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT INTO processed_messages (
                    account_id, message_id, sender, subject, slug, keywords, summary,
                    labels_applied, archived, reasoning, human_correction, processed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(account_id, message_id) DO NOTHING
                """,
                (
                    message.account_id,
                    message.message_id,
                    message.sender,
                    message.subject,
                    message.slug,
                    json.dumps(message.keywords),
                    message.summary,
                    json.dumps(message.labels_applied),
                    int(message.archived),
                    message.reasoning,
                    message.human_correction,
                    _ts(message.processed_at),
                ),
            )
        return cur.rowcount == 1

    def message_exists(self, account_id: int, message_id: str) -> bool:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_messages WHERE account_id = ? AND message_id = ?",
                (account_id, message_id),
            ).fetchone()
        return row is not None

    def get_message(self, account_id: int, message_id: str) -> ProcessedMessage | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM processed_messages WHERE account_id = ? AND message_id = ?",
                (account_id, message_id),
            ).fetchone()
        return self._row_to_message(row) if row else None

    def set_correction(self, account_id: int, message_id: str, correction: str) -> None:
        with self._tx() as conn:
            cur = conn.execute(
                """
                UPDATE processed_messages SET human_correction = ?
                WHERE account_id = ? AND message_id = ?
                """,
                (correction, account_id, message_id),
            )
        if cur.rowcount == 0:
            raise StoreError(f"No processed message {message_id} for account {account_id}")

    def past_slugs(self, account_id: int, sender: str, limit: int = 5) -> list[str]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT slug, MAX(processed_at) AS last_used
                FROM processed_messages
                WHERE account_id = ? AND sender = ?
                GROUP BY slug
                ORDER BY last_used DESC
                LIMIT ?
                """,
                (account_id, sender, limit),
            ).fetchall()
        return [r["slug"] for r in rows]

    def messages_in_range(
        self, account_id: int, start: datetime, end: datetime,
    ) -> list[ProcessedMessage]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT * FROM processed_messages
                WHERE account_id = ? AND processed_at >= ? AND processed_at < ?
                ORDER BY processed_at ASC
                """,
                (account_id, _ts(start), _ts(end)),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def recent_messages(self, account_id: int, limit: int = 50) -> list[ProcessedMessage]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT * FROM processed_messages
                WHERE account_id = ?
                ORDER BY processed_at DESC
                LIMIT ?
                """,
                (account_id, limit),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ProcessedMessage:
        return ProcessedMessage(
            account_id=row["account_id"],
            message_id=row["message_id"],
            sender=row["sender"],
            subject=row["subject"],
            slug=row["slug"],
            keywords=json.loads(row["keywords"]),
            summary=row["summary"],
            labels_applied=json.loads(row["labels_applied"]),
            archived=bool(row["archived"]),
            reasoning=row["reasoning"],
            processed_at=_parse_ts(row["processed_at"]),
            human_correction=row["human_correction"],
        )

    # -------------------------------------------------------------------------
    # Labels
    # -------------------------------------------------------------------------

    def list_labels(self, account_id: int) -> list[LabelRule]:
        with self._tx() as conn:
            rows = conn.execute(
                "SELECT * FROM labels WHERE account_id = ? ORDER BY name ASC",
                (account_id,),
            ).fetchall()
        return [
            LabelRule(
                id=r["id"],
                name=r["name"],
                description=r["description"],
                reasons=json.loads(r["reasons"] or "[]"),
            )
            for r in rows
        ]

    def create_label(
        self,
        account_id: int,
        name: str,
        description: str = "",
        reasons: list[str] | None = None,
    ) -> LabelRule:
        now = _now()
        reasons = reasons or []
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT INTO labels (account_id, name, description, reasons, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (account_id, name, description, json.dumps(reasons), now, now),
            )
        return LabelRule(id=cur.lastrowid, name=name, description=description, reasons=reasons)

    def delete_label(self, account_id: int, label_id: int) -> None:
        with self._tx() as conn:
            conn.execute(
                "DELETE FROM labels WHERE id = ? AND account_id = ?", (label_id, account_id),
            )

    # -------------------------------------------------------------------------
    # Base instructions
    # -------------------------------------------------------------------------

    def get_base_instruction(self, account_id: int, kind: TaskKind) -> str | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT content FROM base_instructions WHERE account_id = ? AND kind = ?",
                (account_id, kind.value),
            ).fetchone()
        return row["content"] if row else None

    def set_base_instruction(self, account_id: int, kind: TaskKind, content: str) -> None:
        with self._tx() as conn:
            conn.execute(
                """
                INSERT INTO base_instructions (account_id, kind, content, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account_id, kind) DO UPDATE SET
                    content = excluded.content, updated_at = excluded.updated_at
                """,
                (account_id, kind.value, content, _now()),
            )

    # -------------------------------------------------------------------------
    # Memories
    # -------------------------------------------------------------------------

    def create_memory(self, memory: Memory) -> Memory:
        created_at = memory.created_at or datetime.now(timezone.utc)
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT INTO memories (account_id, tier, content, period_start, period_end, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    memory.account_id,
                    memory.tier.value,
                    memory.content,
                    _ts(memory.period_start),
                    _ts(memory.period_end),
                    _ts(created_at),
                ),
            )
        memory.id = cur.lastrowid
        memory.created_at = created_at
        return memory

    def latest_memory(self, account_id: int, tier: MemoryTier) -> Memory | None:
        with self._tx() as conn:
            row = conn.execute(
                """
                SELECT * FROM memories
                WHERE account_id = ? AND tier = ?
                ORDER BY period_start DESC, id DESC
                LIMIT 1
                """,
                (account_id, tier.value),
            ).fetchone()
        return self._row_to_memory(row) if row else None

    def memories_in_range(
        self, account_id: int, tier: MemoryTier, start: datetime, end: datetime,
    ) -> list[Memory]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT * FROM memories
                WHERE account_id = ? AND tier = ? AND period_start >= ? AND period_start < ?
                ORDER BY period_start ASC, id ASC
                """,
                (account_id, tier.value, _ts(start), _ts(end)),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    def memory_context(self, account_id: int) -> list[Memory]:
        memories: list[Memory] = []
        with self._tx() as conn:
            for tier, limit in MEMORY_CONTEXT_SLOTS:
                rows = conn.execute(
                    """
                    SELECT * FROM memories
                    WHERE account_id = ? AND tier = ?
                    ORDER BY period_start DESC, id DESC
                    LIMIT ?
                    """,
                    (account_id, tier.value, limit),
                ).fetchall()
                # newest last within a tier
                memories.extend(self._row_to_memory(r) for r in reversed(rows))
        return memories

    def list_memories(self, account_id: int, limit: int = 100) -> list[Memory]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT * FROM memories WHERE account_id = ?
                ORDER BY period_start DESC, id DESC
                LIMIT ?
                """,
                (account_id, limit),
            ).fetchall()
        return [self._row_to_memory(r) for r in rows]

    @staticmethod
    def _row_to_memory(row: sqlite3.Row) -> Memory:
        return Memory(
            id=row["id"],
            account_id=row["account_id"],
            tier=MemoryTier(row["tier"]),
            content=row["content"],
            period_start=_parse_ts(row["period_start"]),
            period_end=_parse_ts(row["period_end"]),
            created_at=_parse_ts(row["created_at"]),
        )

    # -------------------------------------------------------------------------
    # Prompt supplements
    # -------------------------------------------------------------------------

    def create_supplement(self, account_id: int, kind: TaskKind, content: str) -> PromptSupplement:
        created_at = datetime.now(timezone.utc)
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT INTO prompt_supplements (account_id, kind, content, version, created_at)
                VALUES (?, ?, ?, COALESCE((
                    SELECT MAX(version) FROM prompt_supplements WHERE account_id = ? AND kind = ?
                ), 0) + 1, ?)
                """,
                (account_id, kind.value, content, account_id, kind.value, _ts(created_at)),
            )
            row = conn.execute(
                "SELECT version FROM prompt_supplements WHERE id = ?", (cur.lastrowid,),
            ).fetchone()
        return PromptSupplement(
            id=cur.lastrowid,
            account_id=account_id,
            kind=kind,
            content=content,
            version=row["version"],
            created_at=created_at,
        )

    def latest_supplement(self, account_id: int, kind: TaskKind) -> PromptSupplement | None:
        history = self.supplement_history(account_id, kind, limit=1)
        return history[0] if history else None

    def supplement_history(
        self, account_id: int, kind: TaskKind, limit: int = 20,
    ) -> list[PromptSupplement]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT * FROM prompt_supplements
                WHERE account_id = ? AND kind = ?
                ORDER BY version DESC
                LIMIT ?
                """,
                (account_id, kind.value, limit),
            ).fetchall()
        return [
            PromptSupplement(
                id=r["id"],
                account_id=r["account_id"],
                kind=TaskKind(r["kind"]),
                content=r["content"],
                version=r["version"],
                created_at=_parse_ts(r["created_at"]),
            )
            for r in rows
        ]

    # -------------------------------------------------------------------------
    # Wrap-up reports
    # -------------------------------------------------------------------------

    def create_wrapup(self, report: WrapupReport) -> WrapupReport:
        with self._tx() as conn:
            cur = conn.execute(
                """
                INSERT INTO wrapup_reports (account_id, kind, content, message_count, generated_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    report.account_id,
                    report.kind.value,
                    report.content,
                    report.message_count,
                    _ts(report.generated_at),
                ),
            )
        report.id = cur.lastrowid
        return report

    def list_wrapups(self, account_id: int, limit: int = 20) -> list[WrapupReport]:
        with self._tx() as conn:
            rows = conn.execute(
                """
                SELECT * FROM wrapup_reports WHERE account_id = ?
                ORDER BY generated_at DESC
                LIMIT ?
                """,
                (account_id, limit),
            ).fetchall()
        return [
            WrapupReport(
                id=r["id"],
                account_id=r["account_id"],
                kind=WrapupKind(r["kind"]),
                content=r["content"],
                message_count=r["message_count"],
                generated_at=_parse_ts(r["generated_at"]),
            )
            for r in rows
        ]
