"""Tests for the triage pipeline."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_message

from mailtriage.exceptions import CompletionError
from mailtriage.models import Decision, Memory, MemoryTier
from mailtriage.prompts import TaskKind
from mailtriage.triage.pipeline import TriagePipeline


@pytest.fixture
def pipeline(store, gateway, completion):
    return TriagePipeline(store, gateway, completion, body_limit=20)


def test_records_and_applies_decision(pipeline, store, gateway, completion, account):
    store.create_label(account.id, "Newsletters", "Bulk mail", ["weekly digest"])
    completion.decision = Decision(labels=["Newsletters"], archive=True, reasoning="bulk")

    assert asyncio.run(pipeline.handle(account, make_message("m1"))) is True

    record = store.get_message(account.id, "m1")
    assert record.slug == "newsletter"
    assert record.labels_applied == ["Newsletters"]
    assert record.archived is True
    assert record.sender == "Alice <alice@example.com>"
    assert ("add_labels", "m1", ["Label_1"]) in gateway.calls
    assert ("archive", "m1") in gateway.calls


def test_duplicate_message_is_noop(pipeline, store, gateway, completion, account):
    message = make_message("m1")
    assert asyncio.run(pipeline.handle(account, message)) is True
    calls_after_first = len(completion.calls)

    assert asyncio.run(pipeline.handle(account, message)) is False
    assert len(completion.calls) == calls_after_first
    assert len(store.recent_messages(account.id)) == 1


def test_labels_outside_vocabulary_are_dropped(pipeline, store, gateway, completion, account):
    store.create_label(account.id, "Work")
    completion.decision = Decision(labels=["Work", "Invented", "Work"], archive=False, reasoning="r")

    asyncio.run(pipeline.handle(account, make_message("m1")))

    assert store.get_message(account.id, "m1").labels_applied == ["Work"]
    assert [c for c in gateway.calls if c[0] == "resolve_label"] == [("resolve_label", "Work")]


def test_stage_failure_writes_nothing(pipeline, store, gateway, completion, account):
    completion.fail.add("decide")
    with pytest.raises(CompletionError):
        asyncio.run(pipeline.handle(account, make_message("m1")))
    assert not store.message_exists(account.id, "m1")
    assert gateway.calls == []


def test_analyze_failure_writes_nothing(pipeline, store, completion, account):
    completion.fail.add("analyze")
    with pytest.raises(CompletionError):
        asyncio.run(pipeline.handle(account, make_message("m1")))
    assert not store.message_exists(account.id, "m1")
    assert completion.calls_named("decide") == []


def test_mutation_failure_keeps_record(pipeline, store, gateway, completion, account):
    store.create_label(account.id, "Work")
    completion.decision = Decision(labels=["Work"], archive=True, reasoning="r")
    gateway.fail.update({"add_labels", "archive"})

    assert asyncio.run(pipeline.handle(account, make_message("m1"))) is True
    assert store.message_exists(account.id, "m1")


def test_label_resolution_failure_skips_only_that_label(pipeline, store, gateway, completion, account):
    store.create_label(account.id, "Work")
    completion.decision = Decision(labels=["Work"], archive=True, reasoning="r")
    gateway.fail.add("resolve_label")

    asyncio.run(pipeline.handle(account, make_message("m1")))

    assert not [c for c in gateway.calls if c[0] == "add_labels"]
    assert ("archive", "m1") in gateway.calls


def test_body_is_truncated_and_past_slugs_passed(pipeline, store, completion, account):
    asyncio.run(pipeline.handle(account, make_message("m1", body="word " * 50)))
    asyncio.run(pipeline.handle(account, make_message("m2")))

    first, second = completion.calls_named("analyze")
    assert first[3] == "word word word word..."
    assert first[4] == []
    assert second[4] == ["newsletter"]


def test_instruction_uses_custom_base_supplement_and_memories(pipeline, store, completion, account):
    store.set_base_instruction(account.id, TaskKind.ANALYZE, "MY ANALYZE RULES")
    store.create_supplement(account.id, TaskKind.ANALYZE, "- prefer short slugs")
    now = datetime.now(timezone.utc)
    store.create_memory(Memory(account_id=account.id, tier=MemoryTier.WEEKLY, content="weekly insight",
                               period_start=now - timedelta(days=7), period_end=now))
    store.create_memory(Memory(account_id=account.id, tier=MemoryTier.DAILY, content="daily insight",
                               period_start=now - timedelta(days=1), period_end=now))

    asyncio.run(pipeline.handle(account, make_message("m1")))

    analyze_instruction = completion.calls_named("analyze")[0][5]
    assert analyze_instruction.startswith("MY ANALYZE RULES")
    assert "- prefer short slugs" in analyze_instruction
    assert analyze_instruction.index("weekly insight") < analyze_instruction.index("daily insight")

    decide_instruction = completion.calls_named("decide")[0][5]
    assert decide_instruction.startswith(TaskKind.DECIDE.default_instruction.splitlines()[0])
    assert "- prefer short slugs" not in decide_instruction
    assert decide_instruction.count("weekly insight") == 1


def test_vocabulary_is_rendered_for_decide(pipeline, store, completion, account):
    store.create_label(account.id, "Work", "Job related", ["from manager"])
    asyncio.run(pipeline.handle(account, make_message("m1")))
    _, _, _, label_names, formatted, _ = completion.calls_named("decide")[0]
    assert label_names == ["Work"]
    assert formatted == '- "Work": Job related (e.g. from manager)'


@pytest.mark.parametrize("serialize,expected", [
    (True, ["Fresh"]),
    (False, ["Fresh", "Fresh"]),
])
def test_label_lock_serializes_concurrent_creation(store, gateway, completion, account,
                                                   serialize, expected):
    store.create_label(account.id, "Fresh")
    completion.decision = Decision(labels=["Fresh"], archive=False, reasoning="r")
    created = []

    async def slow_resolve(acct, name):
        gateway.calls.append(("resolve_label", name))
        if name not in gateway.provider_labels:
            await asyncio.sleep(0.01)
            created.append(name)
            gateway.provider_labels[name] = f"Label_{len(created)}"
        return gateway.provider_labels[name]

    gateway.resolve_label = slow_resolve
    pipeline = TriagePipeline(store, gateway, completion, serialize_labels=serialize)

    async def run_both():
        await asyncio.gather(
            pipeline.handle(account, make_message("m1")),
            pipeline.handle(account, make_message("m2")),
        )

    asyncio.run(run_both())
    assert created == expected
