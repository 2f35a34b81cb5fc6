"""Search/LLM client for the Perplexity chat-completions API.

Every outbound request goes through three layers, outermost first:

- **Cache**: responses are keyed on a SHA-256 of ``query|system_prompt`` and
  kept for a day. A hit returns immediately without touching the network or
  the rate limiter.
- **Retry**: up to ``max_retries`` attempts with exponential backoff.
  Authentication failures (401/403) are raised at once, 429s wait out a
  fixed cooldown, everything else is retried.
- **Rate limiting**: a shared :class:`RateLimiter` spaces calls at least
  200ms apart, retries included.

The prompt helpers at the bottom build the queries used by the pipeline
phases.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import re
import time
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from arbitrage.cache import ResponseCache
from arbitrage.config import Settings, get_settings
from arbitrage.schemas import PolicyInterpretation

log = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful research assistant. Be concise and factual."
CACHE_PREFIX = "perplexity:"


class SearchError(Exception):
    """Search call failed. ``status_code`` is set for HTTP-level failures."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool | None = None):
        super().__init__(message)
        self.status_code = status_code
        if retryable is None:
            retryable = status_code not in (401, 403)
        self.retryable = retryable

    @property
    def rate_limited(self) -> bool:
        return self.status_code == 429


class InterpretationError(Exception):
    """The model did not return a usable policy interpretation."""


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


class Citation(BaseModel):
    url: str
    title: str = ""
    snippet: str | None = None


class Usage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class SearchResponse(BaseModel):
    content: str
    citations: list[Citation] = []
    model: str = ""
    usage: Usage | None = None
    from_cache: bool = False


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------


class RateLimiter:
    """Enforces a minimum delay between outbound calls across all tasks."""

    def __init__(self, min_delay: float = 0.2):
        self._lock = asyncio.Lock()
        self._min_delay = min_delay
        self._last_call: float = 0.0

    async def acquire(self) -> None:
        """Wait until the minimum delay has elapsed since the last call."""
        async with self._lock:
            now = time.monotonic()
            wait = self._min_delay - (now - self._last_call)
            if wait > 0:
                log.debug("Search rate limiter: waiting %.2fs", wait)
                await asyncio.sleep(wait)
            self._last_call = time.monotonic()


_default_limiter: RateLimiter | None = None


def default_rate_limiter() -> RateLimiter:
    global _default_limiter
    if _default_limiter is None:
        _default_limiter = RateLimiter(get_settings().rate_limit_delay_seconds)
    return _default_limiter


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


def cache_key(query: str, system_prompt: str) -> str:
    digest = hashlib.sha256(f"{query}|{system_prompt}".encode("utf-8")).hexdigest()
    return f"{CACHE_PREFIX}{digest}"


def _parse_citations(data: dict[str, Any]) -> list[Citation]:
    results = {
        r.get("url"): r for r in data.get("search_results") or []
        if isinstance(r, dict) and r.get("url")
    }
    citations: list[Citation] = []
    for raw in data.get("citations") or []:
        if isinstance(raw, str):
            url, title = raw, ""
        elif isinstance(raw, dict) and raw.get("url"):
            url, title = raw["url"], raw.get("title") or ""
        else:
            continue
        extra = results.get(url, {})
        citations.append(Citation(
            url=url,
            title=title or extra.get("title") or url,
            snippet=extra.get("snippet"),
        ))
    if not citations:
        citations = [
            Citation(url=url, title=r.get("title") or url, snippet=r.get("snippet"))
            for url, r in results.items()
        ]
    return citations


class SearchClient:
    """Async Perplexity client with caching, retry and rate limiting."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        cache: ResponseCache | None = None,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.settings = settings or get_settings()
        self.cache = cache if cache is not None else ResponseCache(self.settings.redis_url)
        self.rate_limiter = rate_limiter or default_rate_limiter()
        self._http = http_client

    async def search(
        self,
        query: str,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        *,
        model: str | None = None,
        temperature: float = 0.1,
        max_tokens: int = 1024,
        return_citations: bool = True,
    ) -> SearchResponse:
        """Run one query with retry. Raises the last :class:`SearchError` on exhaustion."""
        last_error: Exception | None = None
        for attempt in range(self.settings.max_retries):
            if attempt > 0:
                await asyncio.sleep(self.settings.retry_base_delay_seconds * (2 ** attempt))
            try:
                return await self._search_once(
                    query, system_prompt, model=model, temperature=temperature,
                    max_tokens=max_tokens, return_citations=return_citations,
                )
            except Exception as exc:
                last_error = exc
                if isinstance(exc, SearchError) and not exc.retryable:
                    raise
                log.warning("Search attempt %d/%d failed: %s", attempt + 1, self.settings.max_retries, exc)
                if isinstance(exc, SearchError) and exc.rate_limited:
                    await asyncio.sleep(self.settings.rate_limit_cooldown_seconds)
        assert last_error is not None
        raise last_error

    async def _search_once(
        self,
        query: str,
        system_prompt: str,
        *,
        model: str | None,
        temperature: float,
        max_tokens: int,
        return_citations: bool,
    ) -> SearchResponse:
        key = cache_key(query, system_prompt)
        cached = await self._cache_get(key)
        if cached is not None:
            try:
                hit = SearchResponse.model_validate_json(cached)
            except ValueError as exc:
                log.warning("Discarding unreadable cache entry: %s", exc)
            else:
                log.debug("Search cache hit: %s", query[:60])
                return hit.model_copy(update={"from_cache": True})

        if not self.settings.perplexity_api_key:
            raise SearchError("PERPLEXITY_API_KEY environment variable is required", retryable=False)

        await self.rate_limiter.acquire()

        payload = {
            "model": model or self.settings.perplexity_model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": query},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
            "return_citations": return_citations,
        }
        headers = {
            "Authorization": f"Bearer {self.settings.perplexity_api_key}",
            "Content-Type": "application/json",
        }
        try:
            if self._http is not None:
                resp = await self._http.post(self.settings.perplexity_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.settings.request_timeout_seconds) as client:
                    resp = await client.post(self.settings.perplexity_url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise SearchError(f"Search request failed: {exc}") from exc

        if resp.status_code != 200:
            raise SearchError(
                f"Perplexity API error: {resp.status_code} - {resp.text[:200]}",
                status_code=resp.status_code,
            )

        try:
            data = resp.json()
            content = data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise SearchError(f"Malformed search response: {exc}") from exc

        result = SearchResponse(
            content=content,
            citations=_parse_citations(data),
            model=data.get("model") or payload["model"],
            usage=Usage(**data["usage"]) if isinstance(data.get("usage"), dict) else None,
        )
        await self._cache_set(key, result.model_dump_json())
        return result

    async def _cache_get(self, key: str) -> str | None:
        try:
            return await self.cache.get(key)
        except Exception as exc:
            log.warning("Cache read failed, treating as miss: %s", exc)
            return None

    async def _cache_set(self, key: str, value: str) -> None:
        try:
            await self.cache.setex(key, self.settings.cache_ttl_seconds, value)
        except Exception as exc:
            log.warning("Cache write failed, skipping: %s", exc)


# ---------------------------------------------------------------------------
# Prompt helpers
# ---------------------------------------------------------------------------

EVIDENCE_SYSTEM_PROMPT = (
    "You are a policy research analyst. Answer with short bullet points. "
    "Each bullet states one specific, factual claim, cites its sources inline "
    "as [n], and ends with an evidence rating in the form 'Strength: N/10'."
)


async def search_policies(client: SearchClient, country: str, topic: str) -> SearchResponse:
    query = (
        f"What are the main {topic} policies implemented by {country}'s government? "
        "List specific named programs with their key features."
    )
    return await client.search(query)


async def search_success_evidence(client: SearchClient, policy_name: str, country: str) -> SearchResponse:
    query = (
        f'"{policy_name}" {country} success results metrics impact statistics '
        "adoption rate evaluation"
    )
    return await client.search(query, EVIDENCE_SYSTEM_PROMPT)


async def search_criticisms(client: SearchClient, policy_name: str, country: str) -> SearchResponse:
    query = (
        f'"{policy_name}" {country} criticism failure problems limitations '
        '"unintended consequences" evaluation negative'
    )
    return await client.search(query, EVIDENCE_SYSTEM_PROMPT)


async def search_domestic_sources(
    client: SearchClient, policy_name: str, category: str, settings: Settings | None = None,
) -> SearchResponse:
    settings = settings or client.settings
    country = settings.domestic_country
    sites = " OR ".join(f"site:{d}" for d in settings.domestic_domains)
    query = (
        f"Does {country} have a policy equivalent to \"{policy_name}\" ({category})? "
        f"Has it been adopted, debated or rejected? {sites}"
    )
    system_prompt = (
        f"You are an expert on {country}'s public policy. Only rely on {country}-based "
        "government, parliamentary and news sources. Start your answer with exactly one line "
        "'Classification: EXISTS', 'Classification: DISCUSSED_BUT_REJECTED' or "
        "'Classification: ABSENT', followed by a line 'Reasoning: <one sentence>'."
    )
    return await client.search(query, system_prompt)


# ---------------------------------------------------------------------------
# Policy idea interpretation
# ---------------------------------------------------------------------------

INTERPRET_SYSTEM_PROMPT = """\
You translate informal policy ideas into a structured research brief.
Respond with ONLY a valid JSON object:
{
  "policy_name": "<canonical name of the policy concept>",
  "also_known_as": ["<alternative names used in other countries>"],
  "category": "<R&D Incentives | Talent Visa | Startup Support | Innovation Fund | Tax Incentive | Digital Policy | other>",
  "summary": "<one or two sentences>",
  "levers": {
    "target_group": "<who the policy targets>",
    "mechanism": "<how it works: grant, tax credit, visa, ...>",
    "sector": "<sector focus or null>",
    "intended_outcome": "<what it is meant to achieve>"
  }
}
"""

_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")


async def interpret_policy_idea(client: SearchClient, idea_text: str) -> PolicyInterpretation:
    """Turn a free-text idea into a :class:`PolicyInterpretation`.

    Raises :class:`InterpretationError` when the answer carries no usable JSON object.
    """
    response = await client.search(
        f"Policy idea: {idea_text}",
        INTERPRET_SYSTEM_PROMPT,
        temperature=0,
        max_tokens=600,
        return_citations=False,
    )
    match = _JSON_OBJECT_RE.search(response.content)
    if not match:
        raise InterpretationError("Failed to parse policy interpretation from response")
    try:
        data = json.loads(match.group(0))
        data["original_input"] = idea_text
        return PolicyInterpretation.model_validate(data)
    except (json.JSONDecodeError, TypeError, ValidationError) as exc:
        raise InterpretationError(f"Invalid policy interpretation: {exc}") from exc
