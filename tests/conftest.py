"""Shared fakes and fixtures."""

from datetime import datetime, timedelta, timezone

import pytest

from mailtriage.exceptions import CompletionError, GatewayError
from mailtriage.gmail.auth import CredentialRefresher
from mailtriage.gmail.gateway import MailGateway
from mailtriage.models import Analysis, Credential, Decision, MailMessage
from mailtriage.store.sqlite import SQLiteStore


def make_message(message_id="m1", sender="Alice <alice@example.com>", subject="Hello",
                 body="Hi there", internal_date=0):
    return MailMessage(
        message_id=message_id,
        thread_id=f"t-{message_id}",
        sender=sender,
        subject=subject,
        body=body,
        label_ids=["INBOX"],
        internal_date=internal_date,
    )


class FakeGateway(MailGateway):
    """In-memory mailbox. Set ``fail`` to a set of operation names to make them raise."""

    def __init__(self):
        self.messages: list[MailMessage] = []
        self.changes: tuple[list[MailMessage], int] = ([], 0)
        self.provider_labels: dict[str, str] = {}
        self.fail: set[str] = set()
        self.calls: list[tuple] = []
        self.watch_cursor = 1000

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if name in self.fail:
            raise GatewayError(f"{name} failed")

    async def fetch_since(self, account, watermark_ms):
        self._record("fetch_since", account.id, watermark_ms)
        return list(self.messages)

    async def fetch_changes(self, account, cursor):
        self._record("fetch_changes", account.id, cursor)
        return self.changes

    async def add_labels(self, account, message_id, label_ids):
        self._record("add_labels", message_id, list(label_ids))

    async def archive(self, account, message_id):
        self._record("archive", message_id)

    async def resolve_label(self, account, name):
        self._record("resolve_label", name)
        if name not in self.provider_labels:
            self.provider_labels[name] = f"Label_{len(self.provider_labels) + 1}"
        return self.provider_labels[name]

    async def watch(self, account, topic):
        self._record("watch", account.id, topic)
        return self.watch_cursor


class FakeCompletion:
    """Stands in for ``CompletionService`` with canned results."""

    def __init__(self):
        self.analysis = Analysis(slug="newsletter", keywords=["news", "weekly"], summary="Weekly news")
        self.decision = Decision(labels=[], archive=False, reasoning="Looks routine")
        self.text = "- learned something"
        self.fail: set[str] = set()
        self.fail_subjects: set[str] = set()
        self.calls: list[tuple] = []

    async def analyze(self, sender, subject, body, past_slugs, instruction):
        self.calls.append(("analyze", sender, subject, body, list(past_slugs), instruction))
        if "analyze" in self.fail or subject in self.fail_subjects:
            raise CompletionError("analyze failed")
        return self.analysis

    async def decide(self, sender, subject, analysis, label_names, formatted_labels, instruction):
        self.calls.append(("decide", sender, subject, list(label_names), formatted_labels, instruction))
        if "decide" in self.fail:
            raise CompletionError("decide failed")
        return self.decision

    async def generate_text(self, system_prompt, user_content):
        self.calls.append(("generate_text", system_prompt, user_content))
        if "generate_text" in self.fail:
            raise CompletionError("generate failed")
        return self.text

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]


class FakeRefresher(CredentialRefresher):
    def __init__(self, fail=False):
        super().__init__("client-id", "client-secret")
        self.fail = fail
        self.refreshed = 0

    async def refresh(self, credential):
        from mailtriage.exceptions import CredentialError

        self.refreshed += 1
        if self.fail:
            raise CredentialError("refresh failed")
        return Credential(
            access_token="fresh-token",
            refresh_token=credential.refresh_token,
            expiry=datetime.now(timezone.utc) + timedelta(hours=1),
        )


@pytest.fixture
def store(tmp_path):
    s = SQLiteStore(tmp_path / "mailtriage.db")
    yield s
    s.close()


@pytest.fixture
def account(store):
    return store.upsert_account(
        "alice@example.com", "google-1", Credential("access", "refresh"),
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def completion():
    return FakeCompletion()
