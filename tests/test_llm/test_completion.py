"""Tests for the completion service."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from mailtriage.exceptions import CompletionError, CompletionFormatError
from mailtriage.llm.completion import CompletionService, actions_tool, analysis_tool
from mailtriage.models import Analysis


def _service(result):
    llm = MagicMock()
    llm.generate_with_tools = AsyncMock(return_value=result)
    llm.generate = AsyncMock(return_value=result)
    return CompletionService(llm), llm


def _tool_result(name, payload):
    return {"text": "", "tool_calls": [{"name": name, "input": payload, "id": "t"}],
            "stop_reason": "tool_use"}


def test_analyze_parses_tool_input():
    service, llm = _service(_tool_result(
        "email_analysis", {"slug": "invoice_due", "keywords": ["bill"], "summary": "Pay it"},
    ))
    analysis = asyncio.run(service.analyze("bob@x.com", "Invoice", "body", ["invoice_due"], "INSTR"))

    assert analysis == Analysis(slug="invoice_due", keywords=["bill"], summary="Pay it")
    args, kwargs = llm.generate_with_tools.call_args
    assert args[0] == "INSTR"
    assert '["invoice_due"]' in args[1][0]["content"]
    assert kwargs["tool_choice"] == {"type": "tool", "name": "email_analysis"}
    assert kwargs["temperature"] == 0.0


def test_analyze_missing_tool_call_is_format_error():
    service, _ = _service({"text": "sorry", "tool_calls": [], "stop_reason": "end_turn"})
    with pytest.raises(CompletionFormatError):
        asyncio.run(service.analyze("a", "b", "c", [], "i"))


def test_analyze_bad_shape_is_format_error():
    service, _ = _service(_tool_result("email_analysis", {"slug": "", "keywords": [], "summary": ""}))
    with pytest.raises(CompletionFormatError):
        asyncio.run(service.analyze("a", "b", "c", [], "i"))


def test_decide_puts_labels_in_system_prompt():
    service, llm = _service(_tool_result(
        "email_actions", {"labels": ["Work"], "bypass_inbox": True, "reasoning": "work mail"},
    ))
    analysis = Analysis(slug="s", keywords=["k"], summary="sum")
    decision = asyncio.run(service.decide(
        "bob", "subj", analysis, ["Work"], '- "Work": job', "DECIDE\n\nRecent memory: prefers brevity",
    ))

    assert decision.labels == ["Work"]
    assert decision.archive is True
    args, kwargs = llm.generate_with_tools.call_args
    assert args[0].startswith("DECIDE")
    assert '- "Work": job' in args[0]
    assert "Recent memory" in args[0]
    assert "Recent memory" not in args[1][0]["content"]
    schema = kwargs["tools"][0]["input_schema"]["properties"]["labels"]
    assert schema["items"]["enum"] == ["Work"]


def test_decide_non_boolean_archive_is_format_error():
    service, _ = _service(_tool_result(
        "email_actions", {"labels": [], "bypass_inbox": "yes", "reasoning": "r"},
    ))
    with pytest.raises(CompletionFormatError):
        asyncio.run(service.decide("a", "b", Analysis("s", [], "x"), [], "", "i"))


def test_actions_tool_without_vocabulary_allows_no_labels():
    schema = actions_tool([])["input_schema"]["properties"]["labels"]
    assert schema["maxItems"] == 0


def test_analysis_tool_requires_all_fields():
    assert analysis_tool()["input_schema"]["required"] == ["slug", "keywords", "summary"]


def test_generate_text_strips_and_rejects_empty():
    service, _ = _service({"text": "  notes \n", "stop_reason": "end_turn"})
    assert asyncio.run(service.generate_text("s", "u")) == "notes"

    empty, _ = _service({"text": "", "stop_reason": "max_tokens"})
    with pytest.raises(CompletionError):
        asyncio.run(empty.generate_text("s", "u"))
