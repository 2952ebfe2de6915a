"""Web search backends."""

from __future__ import annotations

from typing import Any, Protocol

import httpx


class SearchBackend(Protocol):
    async def search(self, query: str, *, max_results: int) -> list[dict[str, Any]]:
        ...


class TavilySearchBackend:
    """Tavily search API client."""

    endpoint = "https://api.tavily.com/search"

    def __init__(
        self,
        api_key: str,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_key = api_key
        self._timeout = timeout_seconds
        self._transport = transport

    async def search(self, query: str, *, max_results: int) -> list[dict[str, Any]]:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            response = await client.post(
                self.endpoint,
                json={
                    "api_key": self._api_key,
                    "query": query,
                    "max_results": max_results,
                    "search_depth": "basic",
                },
            )
            response.raise_for_status()
            payload = response.json()
        return [
            {
                "title": str(item.get("title", "")),
                "url": str(item.get("url", "")),
                "snippet": str(item.get("content", ""))[:300],
            }
            for item in payload.get("results", [])
        ]


class StaticSearchBackend:
    """Offline backend serving canned results (empty by default)."""

    def __init__(self, results: list[dict[str, Any]] | None = None) -> None:
        self._results = list(results or [])

    async def search(self, query: str, *, max_results: int) -> list[dict[str, Any]]:
        terms = [term for term in query.lower().split() if len(term) > 2]
        hits = [
            result
            for result in self._results
            if not terms
            or any(term in f"{result.get('title', '')} {result.get('snippet', '')}".lower() for term in terms)
        ]
        return hits[:max_results]
