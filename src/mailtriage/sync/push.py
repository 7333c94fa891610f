"""Push notification intake and watch renewal.

The envelope format is the Pub/Sub push body::

    {"message": {"data": "<base64 JSON>", "messageId": "..."}, "subscription": "..."}

where the decoded data is ``{"emailAddress": "...", "historyId": 123}``.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import json
import logging

from mailtriage.exceptions import MailTriageError, PushAuthError, PushError
from mailtriage.gmail.gateway import MailGateway
from mailtriage.models import Account, PushNotification
from mailtriage.store.base import Store
from mailtriage.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1 << 20


def decode_push_envelope(body: bytes | str) -> PushNotification:
    """Decode a push envelope into its notification. Raises ``PushError``."""
    if isinstance(body, bytes):
        if len(body) > MAX_BODY_BYTES:
            raise PushError("Push body exceeds 1MB")
        body = body.decode("utf-8", errors="replace")

    try:
        envelope = json.loads(body)
    except json.JSONDecodeError as e:
        raise PushError(f"Failed to parse push body: {e}") from e

    message = envelope.get("message") if isinstance(envelope, dict) else None
    data = message.get("data") if isinstance(message, dict) else None
    if not isinstance(data, str):
        raise PushError("Push envelope has no message.data")

    try:
        decoded = base64.b64decode(data, validate=True)
        inner = json.loads(decoded)
    except (binascii.Error, ValueError) as e:
        raise PushError(f"Failed to decode push data: {e}") from e

    if not isinstance(inner, dict):
        raise PushError("Push data is not an object")
    email = inner.get("emailAddress")
    history_id = inner.get("historyId")
    if not isinstance(email, str) or not email:
        raise PushError("Push data has no emailAddress")
    # historyId arrives as a number, occasionally as a numeric string
    if isinstance(history_id, bool) or not isinstance(history_id, (int, str)):
        raise PushError("Push data has no historyId")
    try:
        history_id = int(history_id)
    except ValueError as e:
        raise PushError(f"Invalid historyId: {history_id!r}") from e
    if history_id < 0:
        raise PushError(f"Invalid historyId: {history_id}")

    return PushNotification(email_address=email, history_id=history_id)


class PushReceiver:
    """Framework-agnostic push endpoint.

    ``receive`` validates and acknowledges synchronously; the sync work runs
    as a background task so the caller can return 200 at once.
    """

    def __init__(self, engine: SyncEngine, verification_token: str):
        if not verification_token:
            raise PushAuthError("A verification token is required for push delivery")
        self.engine = engine
        self.verification_token = verification_token
        self._tasks: set[asyncio.Task] = set()

    def verify(self, token: str | None) -> None:
        if not token or not hmac.compare_digest(token.encode(), self.verification_token.encode()):
            raise PushAuthError("Unauthorized push token")

    def receive(self, token: str | None, body: bytes | str) -> int:
        """Handle one push request. Returns the HTTP status to answer with.

        Must be called from within a running event loop.
        """
        try:
            self.verify(token)
        except PushAuthError:
            logger.warning("Push: unauthorized token")
            return 401

        try:
            notification = decode_push_envelope(body)
        except PushError as e:
            logger.warning(f"Push: bad request: {e}")
            return 400

        logger.info(
            f"Push: notification for {notification.email_address}, historyId={notification.history_id}"
        )
        task = asyncio.create_task(self._process(notification))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return 200

    async def _process(self, notification: PushNotification) -> None:
        try:
            await self.engine.handle_notification(notification)
        except MailTriageError as e:
            logger.error(f"Push: error processing notification for {notification.email_address}: {e}")
        except Exception:
            logger.exception(f"Push: unexpected error for {notification.email_address}")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every in-flight notification to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()


class WatchRenewer:
    """Registers (or renews) an account's push subscription."""

    def __init__(self, store: Store, gateway: MailGateway, engine: SyncEngine, topic: str):
        self.store = store
        self.gateway = gateway
        self.engine = engine
        self.topic = topic

    async def renew(self, account: Account) -> int:
        """Call watch and store the returned cursor. Returns the cursor."""
        async with self.engine.locks(account.id):
            account = await self.engine.ensure_credential(account)
            cursor = await self.gateway.watch(account, self.topic)
            self.store.update_history_cursor(account.id, cursor)
        logger.info(f"[{account.email}] Registered mail watch (historyId={cursor})")
        return cursor
