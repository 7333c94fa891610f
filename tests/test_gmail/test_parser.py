"""Tests for Gmail parser."""

import base64

from mailtriage.gmail.parser import parse_message, prepare_body
from mailtriage.models import MailMessage


def _encode(text):
    return base64.urlsafe_b64encode(text.encode()).decode()


def _make_raw_message(body_text="Hello world", mime_type="text/plain"):
    return {
        "id": "msg123",
        "threadId": "thread456",
        "labelIds": ["INBOX", "UNREAD"],
        "internalDate": "1704110400000",
        "payload": {
            "mimeType": mime_type,
            "headers": [
                {"name": "From", "value": "Alice <alice@example.com>"},
                {"name": "To", "value": "bob@example.com"},
                {"name": "Subject", "value": "Test Subject"},
            ],
            "body": {"data": _encode(body_text)},
        },
    }


def test_parse_plain_message():
    result = parse_message(_make_raw_message("Hello world"))
    assert isinstance(result, MailMessage)
    assert result.message_id == "msg123"
    assert result.thread_id == "thread456"
    assert result.sender == "Alice <alice@example.com>"
    assert result.subject == "Test Subject"
    assert result.body == "Hello world"
    assert result.label_ids == ["INBOX", "UNREAD"]
    assert result.internal_date == 1704110400000


def test_parse_missing_headers():
    raw = {
        "id": "msg789",
        "payload": {"mimeType": "text/plain", "headers": [], "body": {"data": ""}},
    }
    result = parse_message(raw)
    assert result.subject == "(no subject)"
    assert result.sender == ""
    assert result.body == ""
    assert result.internal_date == 0


def test_parse_multipart_prefers_plain_text():
    raw = _make_raw_message()
    raw["payload"] = {
        "mimeType": "multipart/alternative",
        "headers": [{"name": "Subject", "value": "Multi"}],
        "parts": [
            {"mimeType": "text/html", "body": {"data": _encode("<p>HTML version</p>")}},
            {"mimeType": "text/plain", "body": {"data": _encode("Plain version")}},
        ],
    }
    assert parse_message(raw).body == "Plain version"


def test_parse_html_only_strips_tags():
    html = "<html><head><style>p {color: red}</style></head><body><p>Hi  <b>there</b></p></body></html>"
    result = parse_message(_make_raw_message(html, mime_type="text/html"))
    assert result.body == "Hi there"


def test_parse_nested_multipart():
    raw = _make_raw_message()
    raw["payload"] = {
        "mimeType": "multipart/mixed",
        "headers": [],
        "parts": [
            {
                "mimeType": "multipart/alternative",
                "parts": [{"mimeType": "text/plain", "body": {"data": _encode("Nested")}}],
            },
            {"mimeType": "application/pdf", "filename": "a.pdf", "body": {"attachmentId": "x"}},
        ],
    }
    assert parse_message(raw).body == "Nested"


def test_parse_unpadded_body():
    raw = _make_raw_message()
    raw["payload"]["body"]["data"] = _encode("Hi!!").rstrip("=")
    assert parse_message(raw).body == "Hi!!"


def test_prepare_body_collapses_whitespace():
    assert prepare_body("a\n\n  b\tc  ", 100) == "a b c"


def test_prepare_body_truncates_with_ellipsis():
    assert prepare_body("x" * 50, 10) == "x" * 10 + "..."
    assert prepare_body("short", 10) == "short"
