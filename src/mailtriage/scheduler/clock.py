"""Wall-clock access for the scheduler, swappable in tests."""

from __future__ import annotations

import asyncio
from datetime import datetime

from dateutil.tz import tzlocal


class Clock:
    """Local wall-clock time and interruptible sleep."""

    def now(self) -> datetime:
        return datetime.now(tzlocal())

    async def wait(self, stop: asyncio.Event, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if ``stop`` was set meanwhile."""
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True
