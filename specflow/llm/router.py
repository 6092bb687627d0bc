"""Model routing and fallback.

Strategy:
- Planner conversation and spec drafting: fast model (``planner_model``)
- Worker code changes: stronger model (``codegen_model``)
- On provider failure: retry once with ``fallback_model`` if configured
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator

from specflow.config import Settings
from specflow.errors import ExternalServiceError
from specflow.llm.base import LLMAdapter
from specflow.llm.gateway import GatewayAdapter
from specflow.schemas import LLMMessage, LLMResponse, StreamEvent


logger = logging.getLogger(__name__)


class ModelRouter:
    """Routes completions to the right model with fallback logic."""

    def __init__(self, settings: Settings, adapter: LLMAdapter | None = None):
        self.adapter = adapter or GatewayAdapter(settings)
        self.fallback_model = settings.fallback_model

    def _fallback_for(self, model: str) -> str | None:
        if self.fallback_model and self.fallback_model != model:
            return self.fallback_model
        return None

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, str] | None = None,
        allow_fallback: bool = True,
    ) -> LLMResponse:
        """Route a completion, falling back to ``fallback_model`` on failure."""
        logger.info(f"Routing completion to {self.adapter.provider_name}/{model}")
        try:
            return await self.adapter.chat_completion(
                messages=messages,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                tools=tools,
                response_format=response_format,
            )
        except ExternalServiceError as e:
            fallback = self._fallback_for(model) if allow_fallback else None
            if fallback is None:
                raise
            logger.warning(f"{model} failed ({e}), falling back to {fallback}")
            return await self.adapter.chat_completion(
                messages=messages,
                model=fallback,
                temperature=temperature,
                max_tokens=max_tokens,
                tools=tools,
                response_format=response_format,
            )

    async def stream_completion(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        allow_fallback: bool = True,
    ) -> AsyncIterator[StreamEvent]:
        """Stream a completion.

        Falls back only if the primary model failed before producing any
        event; a stream that already emitted text cannot be restarted.
        """
        logger.info(f"Routing stream to {self.adapter.provider_name}/{model}")
        emitted = False
        try:
            async for event in self.adapter.stream_completion(
                messages=messages,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                tools=tools,
            ):
                emitted = True
                yield event
            return
        except ExternalServiceError as e:
            fallback = self._fallback_for(model) if allow_fallback else None
            if emitted or fallback is None:
                raise
            logger.warning(f"{model} stream failed ({e}), falling back to {fallback}")

        async for event in self.adapter.stream_completion(
            messages=messages,
            model=fallback,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools,
        ):
            yield event

    async def health_check(self) -> bool:
        return await self.adapter.health_check()

    async def close(self) -> None:
        await self.adapter.close()
