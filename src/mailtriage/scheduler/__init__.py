"""Calendar-anchored background jobs."""

from mailtriage.scheduler.anchors import Anchor, period_key
from mailtriage.scheduler.clock import Clock
from mailtriage.scheduler.scheduler import Scheduler

__all__ = ["Anchor", "Clock", "Scheduler", "period_key"]
