"""Abstract base class for LLM adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from specflow.schemas import LLMMessage, LLMResponse, StreamEvent


class LLMAdapter(ABC):
    """Abstract base class for model inference providers.

    Providers expose two operations over the same request shape: a
    one-shot completion and a streaming completion that yields text deltas,
    complete tool calls and a final finish event.
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name (e.g., 'gateway')."""
        ...

    @abstractmethod
    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        """Send a chat completion request.

        Args:
            messages: List of conversation messages
            model: Model identifier
            temperature: Sampling temperature (0-2)
            max_tokens: Maximum tokens in response
            tools: Optional list of tool definitions for function calling
            response_format: Optional response format (e.g., {"type": "json_object"})

        Returns:
            LLMResponse with content and/or tool calls

        Raises:
            ExternalServiceError: on transport failures or non-2xx responses
        """
        ...

    @abstractmethod
    def stream_completion(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a chat completion.

        Yields ``text-delta`` events as text arrives, one ``tool-call`` event
        per fully assembled tool call, then a single ``finish`` event.
        """
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the provider API is accessible."""
        ...

    async def close(self) -> None:
        """Release provider resources."""

    def _build_request(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float,
        max_tokens: int,
        tools: list[dict[str, Any]] | None,
        response_format: dict[str, str] | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """Build the API request payload."""
        payload: dict[str, Any] = {
            "model": model,
            "messages": [m.model_dump(exclude_none=True) for m in messages],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        if tools:
            payload["tools"] = tools

        if response_format:
            payload["response_format"] = response_format

        if stream:
            payload["stream"] = True

        return payload
