"""Per-account mailbox access.

``MailGateway`` is the capability contract the triage core depends on;
``GmailGateway`` implements it over the Gmail REST API. The discovery client
is blocking, so every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Callable

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError

from mailtriage.exceptions import GatewayError, HistoryExpiredError
from mailtriage.gmail.auth import CredentialRefresher
from mailtriage.gmail.parser import parse_message
from mailtriage.models import Account, MailMessage

logger = logging.getLogger(__name__)

INBOX = "INBOX"

# Raised below HttpError by the transport; TimeoutError and ssl.SSLError are OSErrors
TRANSPORT_ERRORS = (OSError, httplib2.HttpLib2Error, TransportError, RefreshError)


class MailGateway(ABC):
    """Mailbox operations for one account at a time."""

    @abstractmethod
    async def fetch_since(self, account: Account, watermark_ms: int) -> list[MailMessage]:
        """Messages whose arrival time is >= ``watermark_ms``."""
        ...

    @abstractmethod
    async def fetch_changes(self, account: Account, cursor: int) -> tuple[list[MailMessage], int]:
        """Messages added after ``cursor`` and the mailbox's new cursor."""
        ...

    @abstractmethod
    async def add_labels(self, account: Account, message_id: str, label_ids: list[str]) -> None:
        ...

    @abstractmethod
    async def archive(self, account: Account, message_id: str) -> None:
        """Remove the inbox marker from a message."""
        ...

    @abstractmethod
    async def resolve_label(self, account: Account, name: str) -> str:
        """Provider id for a label name, creating the label if it does not exist."""
        ...

    @abstractmethod
    async def watch(self, account: Account, topic: str) -> int:
        """Register a push subscription; returns the initial cursor."""
        ...


class GmailGateway(MailGateway):
    """``MailGateway`` on top of google-api-python-client.

    Args:
        refresher: Builds google-auth credentials from stored tokens.
        max_results: Upper bound on messages fetched per poll.
        service_factory: Override for building the API ``Resource``; tests
            inject a ``MagicMock`` here.
    """

    def __init__(
        self,
        refresher: CredentialRefresher,
        max_results: int = 50,
        service_factory: Callable[[Account], Resource] | None = None,
    ):
        self.refresher = refresher
        self.max_results = max_results
        self._service_factory = service_factory or self._build_service

    def _build_service(self, account: Account) -> Resource:
        creds = self.refresher.to_google(account.credential)
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    async def _call(self, account: Account, what: str, fn: Callable[[Resource], dict]) -> dict:
        def run() -> dict:
            return fn(self._service_factory(account))

        try:
            return await asyncio.to_thread(run)
        except (HttpError, *TRANSPORT_ERRORS) as e:
            raise GatewayError(f"[{account.email}] Failed to {what}: {e}") from e

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    async def fetch_since(self, account: Account, watermark_ms: int) -> list[MailMessage]:
        # after: has second granularity; the exact bound is applied below
        query = f"after:{watermark_ms // 1000}"
        logger.debug(f"[{account.email}] Listing messages with query: {query}")

        response = await self._call(
            account,
            "list messages",
            lambda service: service.users().messages().list(
                userId="me", q=query, maxResults=self.max_results,
            ).execute(),
        )
        refs = response.get("messages", [])

        messages = []
        for ref in refs:
            message = await self._get_message(account, ref["id"])
            if message.internal_date >= watermark_ms:
                messages.append(message)
        return messages

    async def fetch_changes(self, account: Account, cursor: int) -> tuple[list[MailMessage], int]:
        message_ids: list[str] = []
        seen: set[str] = set()
        new_cursor = cursor
        page_token = None

        while True:
            params = {
                "userId": "me",
                "startHistoryId": str(cursor),
                "historyTypes": ["messageAdded"],
                "labelId": INBOX,
            }
            if page_token:
                params["pageToken"] = page_token

            try:
                response = await asyncio.to_thread(
                    lambda: self._service_factory(account).users().history().list(**params).execute()
                )
            except HttpError as e:
                if e.resp.status == 404:
                    raise HistoryExpiredError(
                        f"[{account.email}] History ID {cursor} is too old to replay"
                    ) from e
                raise GatewayError(f"[{account.email}] History API error: {e}") from e
            except TRANSPORT_ERRORS as e:
                raise GatewayError(f"[{account.email}] History API unreachable: {e}") from e

            if "historyId" in response:
                new_cursor = int(response["historyId"])

            for record in response.get("history", []):
                for added in record.get("messagesAdded", []):
                    msg_id = added["message"]["id"]
                    if msg_id not in seen:
                        seen.add(msg_id)
                        message_ids.append(msg_id)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        messages = [await self._get_message(account, msg_id) for msg_id in message_ids]
        logger.info(
            f"[{account.email}] History sync: {len(messages)} added, cursor {cursor} -> {new_cursor}"
        )
        return messages, new_cursor

    async def _get_message(self, account: Account, message_id: str) -> MailMessage:
        raw = await self._call(
            account,
            f"get message {message_id}",
            lambda service: service.users().messages().get(
                userId="me", id=message_id, format="full",
            ).execute(),
        )
        return parse_message(raw)

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def add_labels(self, account: Account, message_id: str, label_ids: list[str]) -> None:
        if not label_ids:
            return
        await self._call(
            account,
            f"add labels to {message_id}",
            lambda service: service.users().messages().modify(
                userId="me", id=message_id, body={"addLabelIds": label_ids},
            ).execute(),
        )

    async def archive(self, account: Account, message_id: str) -> None:
        await self._call(
            account,
            f"archive {message_id}",
            lambda service: service.users().messages().modify(
                userId="me", id=message_id, body={"removeLabelIds": [INBOX]},
            ).execute(),
        )

    async def resolve_label(self, account: Account, name: str) -> str:
        response = await self._call(
            account,
            "list labels",
            lambda service: service.users().labels().list(userId="me").execute(),
        )
        for label in response.get("labels", []):
            if label["name"] == name:
                return label["id"]

        body = {
            "name": name,
            "messageListVisibility": "show",
            "labelListVisibility": "labelShow",
            "type": "user",
        }
        created = await self._call(
            account,
            f"create label '{name}'",
            lambda service: service.users().labels().create(userId="me", body=body).execute(),
        )
        logger.info(f"[{account.email}] Created label '{name}' ({created['id']})")
        return created["id"]

    async def watch(self, account: Account, topic: str) -> int:
        response = await self._call(
            account,
            "register watch",
            lambda service: service.users().watch(
                userId="me",
                body={"topicName": topic, "labelIds": [INBOX], "labelFilterAction": "include"},
            ).execute(),
        )
        return int(response["historyId"])
