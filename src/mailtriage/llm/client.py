"""Async Claude API client wrapper with retry logic."""

from __future__ import annotations

import asyncio
import logging
import os

from mailtriage.exceptions import CompletionError

logger = logging.getLogger(__name__)


DEFAULT_MODEL = os.environ.get("MAILTRIAGE_LLM_MODEL", "claude-haiku-4-5-20251001")


class AsyncLLMClient:
    """Asynchronous wrapper around the Anthropic SDK.

    Rate limits and timeouts are retried up to ``max_retries`` attempts in
    total with exponential backoff; any other API error fails immediately.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        max_retries: int = 3,
    ):
        if not api_key and not os.environ.get("ANTHROPIC_API_KEY"):
            raise CompletionError(
                "Anthropic API key is required. "
                "Pass it directly or set ANTHROPIC_API_KEY in your environment."
            )
        from anthropic import AsyncAnthropic

        self._client = AsyncAnthropic(api_key=api_key or None)
        self.model = model
        self.max_retries = max_retries

    async def _create(self, **request):
        from anthropic import APIError, APITimeoutError, RateLimitError

        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._client.messages.create(**request)
            except RateLimitError:
                reason, wait = "Rate limited", 2 ** attempt
            except APITimeoutError:
                reason, wait = "API timeout", 2 ** (attempt - 1)
            except APIError as e:
                raise CompletionError(f"Claude API error: {e}") from e

            if attempt == self.max_retries:
                logger.warning(f"{reason} on final attempt {attempt}")
                break
            logger.warning(f"{reason}, retrying in {wait}s (attempt {attempt})")
            await asyncio.sleep(wait)

        raise CompletionError(f"Failed after {self.max_retries} retries")

    def _usage(self, response, model: str) -> dict:
        return {
            "stop_reason": response.stop_reason,
            "input_tokens": response.usage.input_tokens,
            "output_tokens": response.usage.output_tokens,
            "model": model,
        }

    async def generate(
        self,
        system_prompt: str,
        user_content: str,
        max_tokens: int = 4096,
        temperature: float = 0.3,
        model: str | None = None,
    ) -> dict:
        """Single-turn text completion.

        Returns:
            dict with keys: text, stop_reason, input_tokens, output_tokens, model
        """
        use_model = model or self.model
        response = await self._create(
            model=use_model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_content}],
        )
        text = "".join(block.text for block in response.content if block.type == "text")
        return {"text": text, **self._usage(response, use_model)}

    async def generate_with_tools(
        self,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
        tool_choice: dict | None = None,
        max_tokens: int = 4096,
        temperature: float = 0.3,
        model: str | None = None,
    ) -> dict:
        """Message call with tool definitions.

        Pass ``tool_choice={"type": "tool", "name": ...}`` to force a single
        tool call, which is how structured output is requested.

        Returns:
            dict with keys: text, tool_calls, stop_reason, input_tokens, output_tokens, model
            tool_calls is a list of dicts with keys: name, input, id
        """
        use_model = model or self.model
        request = dict(
            model=use_model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=messages,
            tools=tools,
        )
        if tool_choice is not None:
            request["tool_choice"] = tool_choice
        response = await self._create(**request)

        text_parts = []
        tool_calls = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append({"name": block.name, "input": block.input, "id": block.id})
        return {
            "text": "\n".join(text_parts),
            "tool_calls": tool_calls,
            **self._usage(response, use_model),
        }
