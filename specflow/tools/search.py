"""Web search for the planner (Exa search API)."""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from specflow.config import Settings
from specflow.errors import ExternalServiceError


logger = logging.getLogger(__name__)


class SearchClient:
    """Exa ``/search`` client returning trimmed result snippets."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None):
        self._client = client or httpx.AsyncClient(
            base_url=settings.exa_api_url,
            headers={"x-api-key": settings.exa_api_key, "Content-Type": "application/json"},
            timeout=30.0,
        )

    async def search(self, query: str, num_results: int = 5, max_characters: int = 2000) -> dict[str, Any]:
        start = time.perf_counter()
        try:
            response = await self._client.post(
                "/search",
                json={
                    "query": query,
                    "numResults": num_results,
                    "contents": {"text": {"maxCharacters": max_characters}},
                },
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise ExternalServiceError("search", f"returned {e.response.status_code}", e.response.status_code) from e
        except httpx.HTTPError as e:
            raise ExternalServiceError("search", f"request failed: {e}") from e

        latency_ms = int((time.perf_counter() - start) * 1000)
        results = [
            {
                "title": item.get("title"),
                "url": item.get("url"),
                "published_date": item.get("publishedDate"),
                "text": item.get("text"),
            }
            for item in data.get("results") or []
        ]
        logger.info(f"[search] {len(results)} result(s) for {query!r} in {latency_ms}ms")
        return {"query": query, "results": results}

    async def close(self) -> None:
        await self._client.aclose()
