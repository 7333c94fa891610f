"""Parse Gmail API message payloads into ``MailMessage``."""

from __future__ import annotations

import base64
import binascii
import re

from bs4 import BeautifulSoup

from mailtriage.models import MailMessage


def parse_message(raw_message: dict) -> MailMessage:
    """Extract sender, subject and decoded body from a Gmail API message (format=full).

    Pure function, no network calls. The body is the first text/plain part,
    falling back to stripped HTML.
    """
    payload = raw_message.get("payload", {})
    headers = _extract_headers(payload)

    return MailMessage(
        message_id=raw_message["id"],
        thread_id=raw_message.get("threadId", ""),
        sender=headers.get("from", ""),
        subject=headers.get("subject", "(no subject)"),
        body=_extract_body(payload),
        label_ids=list(raw_message.get("labelIds", [])),
        internal_date=int(raw_message.get("internalDate") or 0),
    )


def prepare_body(body: str, limit: int) -> str:
    """Collapse whitespace and truncate to ``limit`` characters with a trailing ``...``."""
    text = re.sub(r"\s+", " ", body).strip()
    if len(text) > limit:
        text = text[:limit].rstrip() + "..."
    return text


def _extract_headers(payload: dict) -> dict[str, str]:
    return {
        h["name"].lower(): h["value"]
        for h in payload.get("headers", [])
    }


def _extract_body(payload: dict) -> str:
    mime_type = payload.get("mimeType", "")

    if mime_type == "text/plain":
        return _decode_body_data(payload)

    if mime_type.startswith("multipart/"):
        parts = payload.get("parts", [])
        for part in parts:
            if part.get("mimeType") == "text/plain":
                text = _decode_body_data(part)
                if text:
                    return text
        for part in parts:
            text = _extract_body(part)
            if text:
                return text

    if mime_type == "text/html":
        html = _decode_body_data(payload)
        return _strip_html(html) if html else ""

    return ""


def _decode_body_data(payload: dict) -> str:
    data = payload.get("body", {}).get("data", "")
    if not data:
        return ""
    try:
        return base64.urlsafe_b64decode(data + "=" * (-len(data) % 4)).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return ""


def _strip_html(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    text = soup.get_text(separator=" ")
    return re.sub(r"\s+", " ", text).strip()
