"""Completion service on top of the Anthropic Claude API."""

from mailtriage.llm.client import DEFAULT_MODEL, AsyncLLMClient
from mailtriage.llm.completion import CompletionService

__all__ = ["DEFAULT_MODEL", "AsyncLLMClient", "CompletionService"]
