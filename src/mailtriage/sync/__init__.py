"""Mail discovery: poll and push sync paths."""

from mailtriage.sync.engine import AccountLocks, SyncEngine
from mailtriage.sync.push import PushReceiver, WatchRenewer, decode_push_envelope

__all__ = [
    "AccountLocks",
    "SyncEngine",
    "PushReceiver",
    "WatchRenewer",
    "decode_push_envelope",
]
