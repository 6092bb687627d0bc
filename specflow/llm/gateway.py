"""OpenAI-compatible AI gateway adapter.

The gateway exposes ``/chat/completions`` for many providers behind one
key; models are addressed as ``<provider>/<model>`` (e.g.
``anthropic/claude-sonnet-4.5``).
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, AsyncIterator

import httpx

from specflow.config import Settings
from specflow.errors import ExternalServiceError
from specflow.llm.base import LLMAdapter
from specflow.schemas import LLMMessage, LLMResponse, StreamEvent, ToolCall


logger = logging.getLogger(__name__)


class GatewayAdapter(LLMAdapter):
    """Chat completions over an OpenAI-compatible HTTP endpoint."""

    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = settings.llm_api_key
        self.base_url = settings.llm_base_url
        self.timeout = settings.llm_timeout_seconds

        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            timeout=self.timeout,
        )

    @property
    def provider_name(self) -> str:
        return "gateway"

    async def chat_completion(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
        response_format: dict[str, str] | None = None,
    ) -> LLMResponse:
        payload = self._build_request(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools,
            response_format=response_format,
        )

        start_time = time.perf_counter()
        try:
            response = await self._client.post("/chat/completions", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError(
                "llm", f"{model} returned {e.response.status_code}", e.response.status_code
            ) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError("llm", f"{model} request failed: {e}") from e

        latency_ms = int((time.perf_counter() - start_time) * 1000)
        logger.info(f"Completion from {model} in {latency_ms}ms")

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message", {})

        return LLMResponse(
            content=message.get("content"),
            tool_calls=[
                ToolCall(
                    id=call.get("id", ""),
                    name=call.get("function", {}).get("name", ""),
                    arguments=call.get("function", {}).get("arguments") or "{}",
                )
                for call in message.get("tool_calls") or []
            ],
            model=data.get("model", model),
            usage=data.get("usage") or {},
            finish_reason=choice.get("finish_reason"),
        )

    async def stream_completion(
        self,
        messages: list[LLMMessage],
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        tools: list[dict[str, Any]] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        payload = self._build_request(
            messages=messages,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            tools=tools,
            stream=True,
        )

        # Tool call fragments arrive keyed by index and are emitted once complete
        pending: dict[int, dict[str, str]] = {}
        finish_reason: str | None = None

        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ExternalServiceError(
                        "llm", f"{model} returned {response.status_code}", response.status_code
                    )
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == "[DONE]":
                        break
                    try:
                        event = json.loads(data)
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping malformed stream line from {model}")
                        continue

                    for choice in event.get("choices") or []:
                        delta = choice.get("delta") or {}
                        if delta.get("content"):
                            yield StreamEvent(type="text-delta", delta=delta["content"])
                        for fragment in delta.get("tool_calls") or []:
                            slot = pending.setdefault(
                                fragment.get("index", 0), {"id": "", "name": "", "arguments": ""}
                            )
                            if fragment.get("id"):
                                slot["id"] = fragment["id"]
                            function = fragment.get("function") or {}
                            if function.get("name"):
                                slot["name"] += function["name"]
                            if function.get("arguments"):
                                slot["arguments"] += function["arguments"]
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]
        except httpx.HTTPError as e:
            raise ExternalServiceError("llm", f"{model} stream failed: {e}") from e

        for index in sorted(pending):
            slot = pending[index]
            yield StreamEvent(
                type="tool-call",
                tool_call=ToolCall(
                    id=slot["id"] or f"call_{index}",
                    name=slot["name"],
                    arguments=slot["arguments"] or "{}",
                ),
            )
        yield StreamEvent(type="finish", finish_reason=finish_reason or "stop")

    async def health_check(self) -> bool:
        """Check if the gateway is reachable with the configured key."""
        try:
            response = await self._client.get("/models")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
