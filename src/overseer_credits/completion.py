"""Completion engine used by the batch orchestrator.

One call per item, no retry or backoff. Provider SDK retries are disabled so
a failed call surfaces immediately to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from anthropic import AsyncAnthropic
from openai import AsyncOpenAI

from overseer_credits.cost_model import TokenUsage
from overseer_credits.exceptions import CompletionProviderError, EmptyCompletionError

logger = structlog.get_logger()

DEFAULT_MAX_TOKENS = 4096

ChatMessage = dict[str, str]


@dataclass(frozen=True)
class CompletionResult:
    """Completion text plus the tokens it consumed."""

    content: str
    usage: TokenUsage


class CompletionEngine(Protocol):
    """Turns role-tagged messages into a completion."""

    async def complete(self, messages: list[ChatMessage], model: str) -> CompletionResult: ...


class LLMCompletionEngine:
    """Completion engine backed by the Anthropic and OpenAI async clients.

    ``claude*`` models go to Anthropic, everything else to OpenAI chat
    completions.
    """

    def __init__(
        self,
        openai_api_key: str | None = None,
        anthropic_api_key: str | None = None,
        timeout: float = 120.0,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        openai_client: AsyncOpenAI | None = None,
        anthropic_client: AsyncAnthropic | None = None,
    ) -> None:
        self._openai_api_key = openai_api_key
        self._anthropic_api_key = anthropic_api_key
        self._timeout = timeout
        self._max_tokens = max_tokens
        self._openai_client = openai_client
        self._anthropic_client = anthropic_client

    @property
    def anthropic_client(self) -> AsyncAnthropic:
        """Get or create Anthropic client."""
        if self._anthropic_client is None:
            self._anthropic_client = AsyncAnthropic(
                api_key=self._anthropic_api_key,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._anthropic_client

    @property
    def openai_client(self) -> AsyncOpenAI:
        """Get or create OpenAI client."""
        if self._openai_client is None:
            self._openai_client = AsyncOpenAI(
                api_key=self._openai_api_key,
                timeout=self._timeout,
                max_retries=0,
            )
        return self._openai_client

    @staticmethod
    def provider_for_model(model: str) -> str:
        return "anthropic" if model.lower().startswith("claude") else "openai"

    async def complete(self, messages: list[ChatMessage], model: str) -> CompletionResult:
        """Run one completion.

        Raises:
            CompletionProviderError: If the provider call fails
            EmptyCompletionError: If the provider returns nothing
        """
        provider = self.provider_for_model(model)
        try:
            if provider == "anthropic":
                return await self._complete_anthropic(messages, model)
            return await self._complete_openai(messages, model)
        except EmptyCompletionError:
            raise
        except Exception as exc:
            logger.warning("Completion request failed", provider=provider, model=model)
            raise CompletionProviderError(provider, str(exc)) from exc

    async def _complete_anthropic(self, messages: list[ChatMessage], model: str) -> CompletionResult:
        # Anthropic takes system prompts as a separate parameter
        system_parts: list[str] = []
        conversation: list[ChatMessage] = []
        for msg in messages:
            if msg["role"] == "system":
                system_parts.append(msg["content"])
            else:
                conversation.append({"role": msg["role"], "content": msg["content"]})

        request_params: dict[str, Any] = {
            "model": model,
            "max_tokens": self._max_tokens,
            "messages": conversation,
        }
        if system_parts:
            request_params["system"] = "\n\n".join(system_parts)

        response = await self.anthropic_client.messages.create(**request_params)

        text_blocks = [block.text for block in response.content if block.type == "text"]
        if not text_blocks:
            raise EmptyCompletionError("anthropic", model)

        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        return CompletionResult(
            content="".join(text_blocks),
            usage=TokenUsage(
                prompt_tokens=input_tokens,
                completion_tokens=output_tokens,
                total_tokens=input_tokens + output_tokens,
            ),
        )

    async def _complete_openai(self, messages: list[ChatMessage], model: str) -> CompletionResult:
        response = await self.openai_client.chat.completions.create(
            model=model,
            messages=messages,  # type: ignore[arg-type]
            max_tokens=self._max_tokens,
        )
        if not response.choices:
            raise EmptyCompletionError("openai", model)

        content = response.choices[0].message.content or ""
        usage = response.usage
        return CompletionResult(
            content=content,
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens if usage else 0,
                completion_tokens=usage.completion_tokens if usage else 0,
                total_tokens=usage.total_tokens if usage else 0,
            ),
        )
