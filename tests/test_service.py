"""Tests for the composition root."""

import asyncio
import base64
import json

from conftest import make_message

from mailtriage.config import Settings
from mailtriage.models import Credential
from mailtriage.service import TriageService


def _settings(tmp_path, **overrides):
    values = dict(
        google_client_id="cid",
        google_client_secret="secret",
        db_path=str(tmp_path / "service.db"),
        shutdown_grace_seconds=1.0,
    )
    values.update(overrides)
    return Settings(**values)


def _push_body(email, history_id):
    data = base64.b64encode(json.dumps({"emailAddress": email, "historyId": history_id}).encode())
    return json.dumps({"message": {"data": data.decode()}})


def test_push_endpoint_disabled_in_poll_mode(tmp_path, store, gateway, completion):
    service = TriageService(_settings(tmp_path), store=store, gateway=gateway, completion=completion)
    assert service.push is None
    assert service.renewer is None
    assert service.receive_push("tok", "{}") == 404


def test_register_account_registers_watch_in_push_mode(tmp_path, store, gateway, completion):
    settings = _settings(tmp_path, push_enabled=True, pubsub_verification_token="tok",
                         pubsub_topic="projects/p/topics/mail")
    service = TriageService(settings, store=store, gateway=gateway, completion=completion)
    gateway.watch_cursor = 777

    account = asyncio.run(service.register_account(
        "carol@example.com", "google-3", Credential("access", "refresh"),
    ))

    assert store.get_account(account.id).history_cursor == 777
    assert "watch_renewal" in [anchor.name for anchor, _ in service.scheduler.jobs]


def test_register_account_survives_watch_failure(tmp_path, store, gateway, completion):
    settings = _settings(tmp_path, push_enabled=True, pubsub_verification_token="tok",
                         pubsub_topic="projects/p/topics/mail")
    service = TriageService(settings, store=store, gateway=gateway, completion=completion)
    gateway.fail.add("watch")

    account = asyncio.run(service.register_account(
        "carol@example.com", "google-3", Credential("access", "refresh"),
    ))
    assert store.get_account(account.id).history_cursor is None


def test_push_mode_processes_notifications(tmp_path, store, gateway, completion, account):
    settings = _settings(tmp_path, push_enabled=True, pubsub_verification_token="tok",
                         pubsub_topic="projects/p/topics/mail")
    service = TriageService(settings, store=store, gateway=gateway, completion=completion)
    gateway.changes = ([make_message("p1")], 42)

    async def scenario():
        status = service.receive_push("tok", _push_body(account.email, 40))
        await service.push.drain()
        return status

    assert asyncio.run(scenario()) == 200
    assert store.message_exists(account.id, "p1")
    assert store.get_account(account.id).history_cursor == 42


def test_run_polls_then_shuts_down_on_stop(tmp_path, store, gateway, completion, account):
    service = TriageService(_settings(tmp_path), store=store, gateway=gateway, completion=completion)

    async def scenario():
        runner = asyncio.create_task(service.run())
        await asyncio.sleep(0.05)
        service.stop()
        await asyncio.wait_for(runner, timeout=2)

    asyncio.run(scenario())
    assert ("fetch_since", account.id, account.poll_start_ms) in gateway.calls


def test_push_mode_does_not_poll(tmp_path, store, gateway, completion, account):
    settings = _settings(tmp_path, push_enabled=True, pubsub_verification_token="tok",
                         pubsub_topic="projects/p/topics/mail")
    service = TriageService(settings, store=store, gateway=gateway, completion=completion)

    async def scenario():
        runner = asyncio.create_task(service.run())
        await asyncio.sleep(0.05)
        service.stop()
        await asyncio.wait_for(runner, timeout=2)

    asyncio.run(scenario())
    assert not [c for c in gateway.calls if c[0] == "fetch_since"]
