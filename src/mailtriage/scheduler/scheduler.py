"""Tick loop that drives wrap-ups, rollups and watch renewal."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

from mailtriage.exceptions import MailTriageError
from mailtriage.memory.hierarchy import MemoryHierarchy
from mailtriage.memory.supplements import PromptEvolution
from mailtriage.models import Account, MemoryTier, WrapupKind
from mailtriage.scheduler import anchors
from mailtriage.scheduler.anchors import Anchor
from mailtriage.scheduler.clock import Clock
from mailtriage.store.base import Store
from mailtriage.sync.push import WatchRenewer
from mailtriage.wrapup.service import WrapupService

logger = logging.getLogger(__name__)

TICK_SECONDS = 30.0
SATURDAY = 5

AccountStep = Callable[[Account, datetime], Awaitable[object]]


class Scheduler:
    """Fires each anchor at most once per period and fans out per account.

    | anchor         | when             | steps                                  |
    |----------------|------------------|----------------------------------------|
    | morning_wrapup | daily 08:00      | morning wrap-up                        |
    | watch_renewal  | daily 09:00      | renew push watch (only with a renewer) |
    | evening        | daily 17:00      | evening wrap-up, daily memory          |
    | weekly         | Saturday 18:00   | weekly memory, supplement evolution    |
    | monthly        | 1st, 19:00       | monthly memory                         |
    | yearly         | Jan 1st, 20:00   | yearly memory                          |
    """

    def __init__(
        self,
        store: Store,
        hierarchy: MemoryHierarchy,
        evolution: PromptEvolution,
        wrapups: WrapupService,
        renewer: WatchRenewer | None = None,
        clock: Clock | None = None,
        tick_seconds: float = TICK_SECONDS,
    ):
        self.store = store
        self.hierarchy = hierarchy
        self.evolution = evolution
        self.wrapups = wrapups
        self.renewer = renewer
        self.clock = clock or Clock()
        self.tick_seconds = tick_seconds
        self._tasks: set[asyncio.Task] = set()
        self.jobs: list[tuple[Anchor, list[tuple[str, AccountStep]]]] = self._build_jobs()

    def _build_jobs(self) -> list[tuple[Anchor, list[tuple[str, AccountStep]]]]:
        jobs = [
            (anchors.daily("morning_wrapup", 8), [
                ("morning wrap-up", self._morning_wrapup),
            ]),
            (anchors.daily("evening", 17), [
                ("evening wrap-up", self._evening_wrapup),
                ("daily memory", self._tier(MemoryTier.DAILY)),
            ]),
            (anchors.weekly("weekly", SATURDAY, 18), [
                ("weekly memory", self._tier(MemoryTier.WEEKLY)),
                ("prompt evolution", self._evolve),
            ]),
            (anchors.monthly("monthly", 1, 19), [
                ("monthly memory", self._tier(MemoryTier.MONTHLY)),
            ]),
            (anchors.yearly("yearly", 1, 1, 20), [
                ("yearly memory", self._tier(MemoryTier.YEARLY)),
            ]),
        ]
        if self.renewer is not None:
            jobs.insert(1, (anchors.daily("watch_renewal", 9), [
                ("watch renewal", self._renew_watch),
            ]))
        return jobs

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("Scheduler starting")
        while not stop.is_set():
            self.tick(self.clock.now())
            if await self.clock.wait(stop, self.tick_seconds):
                break
        logger.info("Scheduler stopped")

    def tick(self, now: datetime) -> list[str]:
        """Start every due anchor's job. Returns the names of anchors fired."""
        fired = []
        for anchor, steps in self.jobs:
            if not anchor.due(now):
                continue
            anchor.mark_fired(now)
            logger.info(f"Anchor {anchor.name} fired at {now:%Y-%m-%d %H:%M}")
            task = asyncio.create_task(self.fire(anchor.name, steps, now))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            fired.append(anchor.name)
        return fired

    async def fire(self, name: str, steps: list[tuple[str, AccountStep]], now: datetime) -> None:
        try:
            accounts = self.store.list_active_accounts()
        except MailTriageError as e:
            logger.error(f"Error getting active accounts for {name}: {e}")
            return
        await asyncio.gather(*(self._run_steps(account, steps, now) for account in accounts))

    async def _run_steps(self, account: Account, steps: list[tuple[str, AccountStep]], now: datetime) -> None:
        for label, step in steps:
            try:
                await step(account, now)
            except MailTriageError as e:
                logger.error(f"[{account.email}] Failed {label}: {e}")
            except Exception:
                logger.exception(f"[{account.email}] Unexpected error in {label}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight firing to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()

    # -------------------------------------------------------------------------
    # Steps
    # -------------------------------------------------------------------------

    async def _morning_wrapup(self, account: Account, now: datetime):
        return await self.wrapups.generate(account, WrapupKind.MORNING, now)

    async def _evening_wrapup(self, account: Account, now: datetime):
        return await self.wrapups.generate(account, WrapupKind.EVENING, now)

    def _tier(self, tier: MemoryTier) -> AccountStep:
        async def step(account: Account, now: datetime):
            return await self.hierarchy.run_tier(account, tier, now)
        return step

    async def _evolve(self, account: Account, now: datetime):
        return await self.evolution.evolve(account)

    async def _renew_watch(self, account: Account, now: datetime):
        return await self.renewer.renew(account)
