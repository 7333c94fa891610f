"""Composition root: wires the collaborators and runs the background loops."""

from __future__ import annotations

import asyncio
import logging
import signal
import time

from mailtriage.config import Settings
from mailtriage.exceptions import MailTriageError
from mailtriage.gmail.auth import CredentialRefresher
from mailtriage.gmail.gateway import GmailGateway, MailGateway
from mailtriage.llm.client import AsyncLLMClient
from mailtriage.llm.completion import CompletionService
from mailtriage.memory.hierarchy import MemoryHierarchy
from mailtriage.memory.supplements import PromptEvolution
from mailtriage.models import Account, Credential
from mailtriage.scheduler.clock import Clock
from mailtriage.scheduler.scheduler import Scheduler
from mailtriage.store.base import Store
from mailtriage.store.sqlite import SQLiteStore
from mailtriage.sync.engine import AccountLocks, SyncEngine
from mailtriage.sync.push import PushReceiver, WatchRenewer
from mailtriage.triage.pipeline import TriagePipeline
from mailtriage.wrapup.service import WrapupService

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


class TriageService:
    """Owns every component for one process.

    In poll mode the sync loop and the scheduler loop run side by side; in
    push mode only the scheduler runs and mail arrives through
    ``receive_push``. Collaborators may be injected for tests.
    """

    def __init__(
        self,
        settings: Settings,
        store: Store | None = None,
        gateway: MailGateway | None = None,
        completion: CompletionService | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.store = store or SQLiteStore(settings.db_path)
        self.refresher = CredentialRefresher(
            settings.google_client_id,
            settings.google_client_secret,
            settings.google_token_uri,
        )
        self.gateway = gateway or GmailGateway(self.refresher)
        # one attempt per call; failures wait for the next natural cycle
        self.completion = completion or CompletionService(
            AsyncLLMClient(
                api_key=settings.anthropic_api_key,
                model=settings.llm_model,
                max_retries=1,
            ),
            debug_prompts=settings.debug_prompts,
        )

        self.locks = AccountLocks()
        self.pipeline = TriagePipeline(
            self.store,
            self.gateway,
            self.completion,
            body_limit=settings.body_limit,
            past_slug_limit=settings.past_slug_limit,
            serialize_labels=settings.serialize_label_creation,
        )
        self.engine = SyncEngine(
            self.store,
            self.gateway,
            self.refresher,
            self.pipeline,
            interval_seconds=settings.check_interval_minutes * 60,
            checkpoint_mode=settings.checkpoint_mode,
            locks=self.locks,
        )

        self.push: PushReceiver | None = None
        self.renewer: WatchRenewer | None = None
        if settings.push_enabled:
            self.push = PushReceiver(self.engine, settings.pubsub_verification_token)
            self.renewer = WatchRenewer(self.store, self.gateway, self.engine, settings.pubsub_topic)

        self.hierarchy = MemoryHierarchy(self.store, self.completion)
        self.evolution = PromptEvolution(self.store, self.completion)
        self.wrapups = WrapupService(self.store, self.completion)
        self.scheduler = Scheduler(
            self.store,
            self.hierarchy,
            self.evolution,
            self.wrapups,
            renewer=self.renewer,
            clock=clock,
        )
        self._stop = asyncio.Event()

    # -------------------------------------------------------------------------
    # Entry points for the presentation layer
    # -------------------------------------------------------------------------

    def receive_push(self, token: str | None, body: bytes | str) -> int:
        """Push endpoint handler; returns the HTTP status to answer with."""
        if self.push is None:
            logger.warning("Push notification received but push delivery is disabled")
            return 404
        return self.push.receive(token, body)

    async def register_account(self, email: str, provider_id: str, credential: Credential) -> Account:
        """Record a successful login and, in push mode, register the mailbox watch."""
        account = self.store.upsert_account(email, provider_id, credential)
        logger.info(f"[{email}] Account registered (id={account.id})")
        if self.renewer is not None:
            try:
                await self.renewer.renew(account)
            except MailTriageError as e:
                logger.error(f"[{email}] Failed to register mail watch: {e}")
        return account

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def stop(self) -> None:
        logger.info("Shutdown requested")
        self._stop.set()

    async def run(self) -> None:
        """Run until ``stop()``; then wait for in-flight work up to the grace period."""
        loops = [asyncio.create_task(self.scheduler.run(self._stop), name="scheduler")]
        if self.settings.push_enabled:
            logger.info("Push delivery enabled; poll loop not started")
        else:
            loops.append(asyncio.create_task(self.engine.run(self._stop), name="sync"))

        await self._stop.wait()
        await self._shutdown(loops)

    async def _shutdown(self, loops: list[asyncio.Task]) -> None:
        deadline = time.monotonic() + self.settings.shutdown_grace_seconds

        def remaining() -> float:
            return max(0.0, deadline - time.monotonic())

        _, pending = await asyncio.wait(loops, timeout=remaining())
        background = [asyncio.create_task(self.scheduler.drain())]
        if self.push is not None:
            background.append(asyncio.create_task(self.push.drain()))
        _, pending_bg = await asyncio.wait(background, timeout=remaining())

        stragglers = list(pending) + list(pending_bg)
        if stragglers or self.scheduler.pending or (self.push and self.push.pending):
            logger.warning("Grace period expired; cancelling in-flight work")
            self.scheduler.cancel()
            if self.push is not None:
                self.push.cancel()
            for task in stragglers:
                task.cancel()
            await asyncio.gather(*stragglers, return_exceptions=True)

        for task in loops:
            if task.done() and not task.cancelled() and task.exception():
                logger.error(f"{task.get_name()} loop failed: {task.exception()}")
        logger.info("Shutdown complete")


async def _serve(settings: Settings) -> None:
    service = TriageService(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, service.stop)
    await service.run()


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    asyncio.run(_serve(settings))


if __name__ == "__main__":
    main()
