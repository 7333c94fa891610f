"""Discover new mail per account and hand it to the triage pipeline.

Poll mode walks every active account on a fixed interval using an arrival-time
watermark; push mode reacts to change notifications using the mailbox
history cursor. A deployment runs one or the other.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

from mailtriage.config import CHECKPOINT_BATCH, CHECKPOINT_CONTIGUOUS
from mailtriage.exceptions import HistoryExpiredError, MailTriageError
from mailtriage.gmail.auth import CredentialRefresher
from mailtriage.gmail.gateway import MailGateway
from mailtriage.models import Account, MailMessage, PushNotification
from mailtriage.store.base import Store
from mailtriage.triage.pipeline import MessageSink

logger = logging.getLogger(__name__)


class AccountLocks:
    """One ``asyncio.Lock`` per account, shared by every sync path."""

    def __init__(self):
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    def __call__(self, account_id: int) -> asyncio.Lock:
        return self._locks[account_id]


class SyncEngine:
    """Per-account sync cycles for poll and push delivery.

    Args:
        store: Accounts and checkpoints.
        gateway: Mailbox access.
        refresher: Refreshes expired credentials before any mailbox call.
        sink: Receives each discovered message.
        interval_seconds: Poll interval.
        checkpoint_mode: ``batch`` advances the watermark to the newest
            message in the batch even if some handlers failed;
            ``contiguous`` stops short of the oldest failed message so it is
            fetched again next cycle.
        locks: Per-account locks; pass the same instance to every component
            that may sync an account.
    """

    def __init__(
        self,
        store: Store,
        gateway: MailGateway,
        refresher: CredentialRefresher,
        sink: MessageSink,
        interval_seconds: float = 300.0,
        checkpoint_mode: str = CHECKPOINT_BATCH,
        locks: AccountLocks | None = None,
    ):
        if checkpoint_mode not in (CHECKPOINT_BATCH, CHECKPOINT_CONTIGUOUS):
            raise ValueError(f"Unknown checkpoint mode: {checkpoint_mode}")
        self.store = store
        self.gateway = gateway
        self.refresher = refresher
        self.sink = sink
        self.interval_seconds = interval_seconds
        self.checkpoint_mode = checkpoint_mode
        self.locks = locks or AccountLocks()

    # -------------------------------------------------------------------------
    # Poll mode
    # -------------------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        """Poll immediately, then every interval, until ``stop`` is set.

        A cycle in flight when ``stop`` is set runs to completion.
        """
        logger.info(f"Starting mail poll loop (every {self.interval_seconds:.0f}s)")
        while not stop.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Mail poll loop stopped")

    async def poll_once(self) -> None:
        """One cycle over all active accounts, concurrently, joined before returning."""
        try:
            accounts = self.store.list_active_accounts()
        except MailTriageError as e:
            logger.error(f"Failed to list active accounts: {e}")
            return

        if not accounts:
            logger.info("No active accounts to poll")
            return

        logger.info(f"Checking mail for {len(accounts)} active account(s)")
        await asyncio.gather(*(self._sync_isolated(account) for account in accounts))

    async def _sync_isolated(self, account: Account) -> None:
        try:
            await self.sync_account(account)
        except MailTriageError as e:
            logger.error(f"[{account.email}] Sync cycle failed: {e}")
        except Exception:
            logger.exception(f"[{account.email}] Unexpected error in sync cycle")

    async def sync_account(self, account: Account) -> int | None:
        """Fetch and triage everything since the watermark. Returns the new watermark, if it moved."""
        async with self.locks(account.id):
            account = await self.ensure_credential(account)
            since_ms = account.poll_start_ms
            messages = await self.gateway.fetch_since(account, since_ms)

            if not messages:
                logger.info(f"[{account.email}] No new messages")
                return None

            logger.info(f"[{account.email}] Found {len(messages)} new message(s)")
            failed = await self._process_batch(account, messages)
            watermark = self._next_watermark(messages, failed)

            if watermark is None or watermark <= since_ms:
                if failed:
                    logger.warning(
                        f"[{account.email}] Watermark held at {since_ms}: "
                        f"{len(failed)} message(s) will be retried"
                    )
                return None

            self.store.update_watermark(account.id, watermark)
            logger.info(f"[{account.email}] Updated watermark to {watermark}")
            return watermark

    async def _process_batch(self, account: Account, messages: list[MailMessage]) -> list[MailMessage]:
        """Hand every message to the sink; returns those whose handler failed."""
        failed = []
        for message in messages:
            try:
                await self.sink.handle(account, message)
            except MailTriageError as e:
                logger.error(f"[{account.email}] Error handling message {message.message_id}: {e}")
                failed.append(message)
            except Exception:
                logger.exception(f"[{account.email}] Unexpected error handling message {message.message_id}")
                failed.append(message)
        return failed

    def _next_watermark(self, messages: list[MailMessage], failed: list[MailMessage]) -> int | None:
        if self.checkpoint_mode == CHECKPOINT_BATCH or not failed:
            return max(m.internal_date for m in messages)

        oldest_failure = min(m.internal_date for m in failed)
        before = [m.internal_date for m in messages if m.internal_date < oldest_failure]
        return max(before) if before else None

    # -------------------------------------------------------------------------
    # Push mode
    # -------------------------------------------------------------------------

    async def handle_notification(self, notification: PushNotification) -> int:
        """Process the changes behind one push notification. Returns messages recorded."""
        account = self.store.get_account_by_email(notification.email_address)
        if not account.is_active:
            logger.info(f"[{account.email}] Account is inactive, skipping push notification")
            return 0

        async with self.locks(account.id):
            # re-read under the lock; a concurrent path may have moved the cursor
            account = self.store.get_account(account.id)
            account = await self.ensure_credential(account)

            start = max(notification.history_id - 1, account.history_cursor or 0)
            try:
                messages, new_cursor = await self.gateway.fetch_changes(account, start)
            except HistoryExpiredError:
                logger.warning(
                    f"[{account.email}] Cursor {start} expired; resetting to {notification.history_id}"
                )
                self.store.update_history_cursor(account.id, notification.history_id)
                raise

            if messages:
                logger.info(f"[{account.email}] Processing {len(messages)} message(s) from push")
            else:
                logger.info(f"[{account.email}] No new messages (historyId={notification.history_id})")

            recorded = 0
            for message in messages:
                try:
                    if await self.sink.handle(account, message):
                        recorded += 1
                except MailTriageError as e:
                    logger.error(f"[{account.email}] Error handling message {message.message_id}: {e}")
                except Exception:
                    logger.exception(
                        f"[{account.email}] Unexpected error handling message {message.message_id}"
                    )

            if new_cursor > 0:
                self.store.update_history_cursor(account.id, new_cursor)
            return recorded

    # -------------------------------------------------------------------------
    # Credentials
    # -------------------------------------------------------------------------

    async def ensure_credential(self, account: Account) -> Account:
        """Refresh and persist the credential if it has expired."""
        if not account.credential.is_expired():
            return account
        logger.info(f"[{account.email}] Token expired, refreshing")
        account.credential = await self.refresher.refresh(account.credential)
        self.store.update_credential(account.id, account.credential)
        logger.info(f"[{account.email}] Token refreshed")
        return account
