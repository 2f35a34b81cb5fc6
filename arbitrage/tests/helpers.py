"""Test doubles shared across the test modules."""
from __future__ import annotations

from arbitrage.config import Settings
from arbitrage.search import Citation, SearchResponse, Usage


class FakeSearchClient:
    """Stands in for SearchClient: answers by matching substrings of the query.

    ``rules`` is a list of ``(needle, response_or_exception)``; the first rule
    whose needle appears in the query (or system prompt) wins. Unmatched
    queries get an empty answer.
    """

    def __init__(self, settings: Settings, rules=None):
        self.settings = settings
        self.rules = list(rules or [])
        self.calls: list[str] = []

    def add(self, needle: str, response) -> None:
        self.rules.append((needle, response))

    async def search(self, query: str, system_prompt: str = "", **kwargs) -> SearchResponse:
        self.calls.append(query)
        for needle, response in self.rules:
            if needle in query or needle in system_prompt:
                if isinstance(response, Exception):
                    raise response
                return response
        return SearchResponse(content="")


def answer(content: str, urls: list[str] | None = None, *, tokens: int = 10, from_cache: bool = False) -> SearchResponse:
    return SearchResponse(
        content=content,
        citations=[Citation(url=u, title=f"Source {i}") for i, u in enumerate(urls or [], start=1)],
        model="sonar-pro",
        usage=Usage(prompt_tokens=tokens // 2, completion_tokens=tokens - tokens // 2, total_tokens=tokens),
        from_cache=from_cache,
    )
