"""Completion service: structured analyze/decide calls and free-form text.

Structured output is requested by forcing a single tool call whose input
schema is the expected JSON shape; the tool input is then validated into
``Analysis`` / ``Decision``.
"""

from __future__ import annotations

import json
import logging

from mailtriage.exceptions import CompletionError, CompletionFormatError
from mailtriage.llm.client import AsyncLLMClient
from mailtriage.models import Analysis, Decision

logger = logging.getLogger(__name__)

ANALYSIS_TOOL = "email_analysis"
ACTIONS_TOOL = "email_actions"


def analysis_tool() -> dict:
    return {
        "name": ANALYSIS_TOOL,
        "description": "Record the email content analysis: slug, keywords and summary.",
        "input_schema": {
            "type": "object",
            "properties": {
                "slug": {
                    "type": "string",
                    "description": "A snake_case slug categorizing the email type",
                },
                "keywords": {
                    "type": "array",
                    "items": {"type": "string"},
                    "description": "3-5 keywords describing the email content",
                },
                "summary": {
                    "type": "string",
                    "description": "Single line summary (max 100 chars)",
                },
            },
            "required": ["slug", "keywords", "summary"],
            "additionalProperties": False,
        },
    }


def actions_tool(label_names: list[str]) -> dict:
    """Decision schema; label items are restricted to the known vocabulary."""
    if label_names:
        label_items: dict = {"type": "string", "enum": list(label_names)}
        labels_schema: dict = {"type": "array", "items": label_items}
    else:
        labels_schema = {"type": "array", "items": {"type": "string"}, "maxItems": 0}
    labels_schema["description"] = "Names of existing labels to apply"
    return {
        "name": ACTIONS_TOOL,
        "description": "Record the actions to take for the email.",
        "input_schema": {
            "type": "object",
            "properties": {
                "labels": labels_schema,
                "bypass_inbox": {
                    "type": "boolean",
                    "description": "Whether to archive the email immediately",
                },
                "reasoning": {
                    "type": "string",
                    "description": "Brief explanation of the decision",
                },
            },
            "required": ["labels", "bypass_inbox", "reasoning"],
            "additionalProperties": False,
        },
    }


class CompletionService:
    """Analyze, decide and free-form generation on top of ``AsyncLLMClient``."""

    def __init__(
        self,
        llm: AsyncLLMClient,
        structured_max_tokens: int = 1024,
        text_max_tokens: int = 4096,
        debug_prompts: bool = False,
    ):
        self.llm = llm
        self.structured_max_tokens = structured_max_tokens
        self.text_max_tokens = text_max_tokens
        self.debug_prompts = debug_prompts

    def _log_prompts(self, label: str, system_prompt: str, user_prompt: str) -> None:
        if self.debug_prompts:
            logger.debug(
                f"=== {label} ===\nSYSTEM:\n{system_prompt}\n\nUSER:\n{user_prompt}\n=== END {label} ==="
            )

    async def analyze(
        self,
        sender: str,
        subject: str,
        body: str,
        past_slugs: list[str],
        instruction: str,
    ) -> Analysis:
        """Stage 1: slug, keywords and one-line summary."""
        user_prompt = (
            f"From: {sender}\n"
            f"Subject: {subject}\n\n"
            f"Body:\n{body}\n\n"
            f"Past slugs used from this sender: {json.dumps(past_slugs)}\n\n"
            "Analyze this email and provide the slug, keywords, and summary."
        )
        self._log_prompts("analyze", instruction, user_prompt)
        payload = await self._structured(instruction, user_prompt, analysis_tool())
        return Analysis.from_payload(payload)

    async def decide(
        self,
        sender: str,
        subject: str,
        analysis: Analysis,
        label_names: list[str],
        formatted_labels: str,
        instruction: str,
    ) -> Decision:
        """Stage 2: labels (from ``label_names`` only), archive flag and reasoning."""
        system_prompt = instruction.rstrip() + "\n\nAvailable labels:\n" + (formatted_labels or "(none)")
        user_prompt = (
            f"From: {sender}\n"
            f"Subject: {subject}\n"
            f"Slug: {analysis.slug}\n"
            f"Keywords: {json.dumps(analysis.keywords)}\n"
            f"Summary: {analysis.summary}\n\n"
            "What actions should be taken for this email?"
        )
        self._log_prompts("decide", system_prompt, user_prompt)
        payload = await self._structured(system_prompt, user_prompt, actions_tool(label_names))
        return Decision.from_payload(payload)

    async def generate_text(self, system_prompt: str, user_content: str) -> str:
        """Free-form generation used for memories, supplements and wrap-ups."""
        self._log_prompts("generate_text", system_prompt, user_content)
        result = await self.llm.generate(
            system_prompt, user_content, max_tokens=self.text_max_tokens,
        )
        text = result["text"].strip()
        if not text:
            raise CompletionError(
                f"Empty completion (stop_reason: {result.get('stop_reason')})"
            )
        return text

    async def _structured(self, system_prompt: str, user_prompt: str, tool: dict) -> dict:
        result = await self.llm.generate_with_tools(
            system_prompt,
            [{"role": "user", "content": user_prompt}],
            tools=[tool],
            tool_choice={"type": "tool", "name": tool["name"]},
            max_tokens=self.structured_max_tokens,
            temperature=0.0,
        )
        for call in result["tool_calls"]:
            if call["name"] == tool["name"]:
                payload = call["input"]
                if not isinstance(payload, dict):
                    raise CompletionFormatError(
                        f"{tool['name']} input is not an object: {payload!r}"
                    )
                return payload
        raise CompletionFormatError(
            f"No {tool['name']} result in completion (stop_reason: {result.get('stop_reason')})"
        )
