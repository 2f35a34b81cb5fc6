"""Signal hunting: find named policy programs in peer countries.

Each country gets a handful of search queries. The answer to every query is
passed through a second, extraction-only call that must return a JSON array
of ``{name, category, description}`` objects. Anything else counts as "no
policies from this query". Signals are deduplicated on lowercased name plus
country, first occurrence wins.
"""
from __future__ import annotations

import json
import logging
import re
from datetime import date

from pydantic import ValidationError

from arbitrage.activity import ActivityCollector, tracked_search
from arbitrage.schemas import PolicyInterpretation, PolicySignal
from arbitrage.search import Citation, SearchClient

log = logging.getLogger(__name__)

PHASE = "signal_hunter"

POLICY_DOMAINS = [
    "R&D tax incentives and credits",
    "Startup grants and funding programs",
    "Tech talent and startup visa programs",
    "Regulatory sandbox initiatives",
    "Green technology and cleantech incentives",
    "Digital transformation and e-government",
]

COUNTRY_CONTEXT: dict[str, dict[str, list[str]]] = {
    "Singapore": {
        "agencies": ["Enterprise Singapore", "EDB", "IMDA", "A*STAR"],
        "specializations": ["fintech hub", "smart nation", "biotech", "maritime innovation"],
    },
    "Denmark": {
        "agencies": ["Innovation Fund Denmark", "Danish Business Authority", "Vaekstfonden"],
        "specializations": ["green transition", "life sciences", "wind energy", "circular economy"],
    },
    "Israel": {
        "agencies": ["Israel Innovation Authority", "Chief Scientist Office", "BIRD Foundation"],
        "specializations": ["cybersecurity", "agritech", "defense tech", "startup nation"],
    },
    "Estonia": {
        "agencies": ["Enterprise Estonia", "e-Estonia", "Startup Estonia"],
        "specializations": ["e-residency", "digital government", "cybersecurity", "fintech"],
    },
    "Finland": {
        "agencies": ["Business Finland", "Finnvera", "Sitra"],
        "specializations": ["cleantech", "gaming industry", "health tech", "circular economy"],
    },
    "Netherlands": {
        "agencies": ["RVO", "Invest-NL", "StartupDelta", "Holland High Tech"],
        "specializations": ["agrifood", "water management", "logistics", "high-tech systems"],
    },
    "New Zealand": {
        "agencies": ["Callaghan Innovation", "NZTE", "MBIE"],
        "specializations": ["agritech", "screen industry", "space tech", "Maori innovation"],
    },
    "South Korea": {
        "agencies": ["KISED", "KOTRA", "TIPS Program", "K-Startup Grand Challenge"],
        "specializations": ["K-content", "semiconductors", "battery tech", "smart manufacturing"],
    },
    "United Kingdom": {
        "agencies": ["Innovate UK", "British Business Bank", "UKRI"],
        "specializations": ["fintech", "life sciences", "artificial intelligence", "creative industries"],
    },
}

DISCOVERY_QUERIES = [
    "OECD innovation policy recommendations best practices",
    "Nordic countries innovation policy new initiatives",
    "Asia Pacific startup policy government programs",
    "European Union innovation policy new programs member states",
    "emerging economies innovation policy successful programs",
]

EXTRACTION_SYSTEM_PROMPT = (
    "You are a policy extraction specialist. Return ONLY a valid JSON array, no other text. "
    'Example: [{"name": "R&D Tax Credit", "category": "Tax Incentive", '
    '"description": "Tax credit for research activities"}]'
)

_JSON_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_DISCOVERY_COUNTRY_RE = re.compile(
    r"(?:in|from|by)\s+(\w+(?:\s+\w+)?)\s+(?:government|ministry|authority)", re.IGNORECASE,
)


def recent_years() -> str:
    year = date.today().year
    return f"{year} {year - 1} {year - 2}"


def _country_system_prompt(country: str) -> str:
    return (
        "You are a policy research analyst. Search for specific innovation policy mechanisms, "
        f"legislative tools, or government programs from {country}. Focus on quantifiable programs "
        'with clear names (e.g., "R&D Tax Super-deduction", "Startup Visa Program", '
        '"Innovation Fund Grant"). Include program names, key features, and any available '
        "metrics. Be factual and cite sources."
    )


# ---------------------------------------------------------------------------
# Query builders
# ---------------------------------------------------------------------------


def broad_queries(country: str) -> list[str]:
    context = COUNTRY_CONTEXT.get(country)
    if not context:
        return []
    years = recent_years()
    primary_agency = context["agencies"][0]
    agency_mention = " OR ".join(context["agencies"][:2])
    queries = [
        f'{country} government policy "{domain}" program initiative ({agency_mention}) {years}'
        for domain in POLICY_DOMAINS
    ]
    queries.extend(
        f"{country} {spec} government incentive policy program {primary_agency} {years}"
        for spec in context["specializations"][:2]
    )
    return queries


def topic_queries(country: str, topic: str) -> list[str]:
    context = COUNTRY_CONTEXT.get(country, {})
    agencies = " OR ".join(context.get("agencies", [])[:2])
    scope = f" ({agencies})" if agencies else ""
    return [
        f"{country} government {topic} policy program initiative{scope} {recent_years()}",
        f"{country} {topic} incentive scheme results evaluation",
    ]


def reverse_queries(country: str, concept: str) -> list[str]:
    return [
        f'Has {country} implemented a policy like "{concept}"? '
        "Name equivalent government programs, schemes or initiatives.",
    ]


def interpretation_queries(country: str, interpretation: PolicyInterpretation) -> list[str]:
    context = COUNTRY_CONTEXT.get(country, {})
    agencies = " OR ".join(context.get("agencies", [])[:2])
    scope = f" ({agencies})" if agencies else ""
    levers = interpretation.levers

    names = [interpretation.policy_name, *interpretation.also_known_as[:2]]
    queries = [f'{country} "{name}" government program{scope}' for name in names if name]

    mechanism = " ".join(p for p in (interpretation.category, levers.mechanism) if p)
    if mechanism:
        target = f" for {levers.target_group}" if levers.target_group else ""
        sector = f" in {levers.sector}" if levers.sector else ""
        queries.append(f"{country} {mechanism} policy{target}{sector} {recent_years()}")
    if levers.intended_outcome:
        queries.append(
            f"{country} government initiative to {levers.intended_outcome}"
            + (f" through {levers.mechanism}" if levers.mechanism else "")
        )
    return queries


def build_queries(
    country: str,
    *,
    interpretation: PolicyInterpretation | None = None,
    search_mode: str | None = None,
    search_query: str | None = None,
) -> list[str]:
    if interpretation is not None:
        return interpretation_queries(country, interpretation)
    if search_mode == "topic" and search_query:
        return topic_queries(country, search_query)
    if search_mode == "reverse" and search_query:
        return reverse_queries(country, search_query)
    return broad_queries(country)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------


def parse_extracted_policies(content: str) -> list[dict]:
    """Return the policy objects from an extraction answer, or ``[]`` if it is not a JSON array."""
    match = _JSON_ARRAY_RE.search(content or "")
    if not match:
        log.warning("No JSON array found in extraction response")
        return []
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError as exc:
        log.warning("Failed to parse extracted policies: %s", exc)
        return []
    if not isinstance(items, list):
        return []
    return [i for i in items if isinstance(i, dict) and str(i.get("name") or "").strip()]


async def extract_policies(
    client: SearchClient,
    content: str,
    citations: list[Citation],
    country: str,
    activity: ActivityCollector,
) -> list[PolicySignal]:
    query = (
        "Extract specific named policy programs from this text. Return JSON array with objects "
        "containing: name (exact policy name), category (one of: R&D Incentives, Talent Visa, "
        "Startup Support, Innovation Fund, Tax Incentive, Digital Policy), description (one "
        "sentence). Only include specific named programs, not vague concepts.\n\n"
        f"Text to analyze:\n{content}"
    )
    result = await tracked_search(
        activity, PHASE,
        lambda: client.search(query, EXTRACTION_SYSTEM_PROMPT, temperature=0, max_tokens=1024),
        query_text="policy extraction", target_country=country,
        metadata={"query_type": "extraction"},
    )
    source = citations[0] if citations else None
    signals: list[PolicySignal] = []
    for item in parse_extracted_policies(result.content):
        try:
            signals.append(PolicySignal(
                name=str(item["name"]).strip(),
                category=item.get("category") or "Innovation Policy",
                source_country=country,
                source_url=source.url if source else "",
                source_title=source.title if source else "",
                description=item.get("description") or "",
            ))
        except ValidationError as exc:
            log.warning("Skipping malformed extracted policy %r: %s", item.get("name"), exc)
    return signals


def _dedup_key(signal: PolicySignal) -> str:
    return f"{signal.name.lower()}-{signal.source_country}"


def _collect(
    found: list[PolicySignal],
    seen: set[str],
    into: list[PolicySignal],
    activity: ActivityCollector,
    query: str,
) -> None:
    for signal in found:
        key = _dedup_key(signal)
        if key in seen:
            continue
        seen.add(key)
        into.append(signal)
        activity.emit(
            PHASE, "signal_found",
            query_text=query, target_country=signal.source_country, item_name=signal.name,
            metadata={"category": signal.category, "source_url": signal.source_url},
        )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


async def signal_hunter(
    client: SearchClient,
    countries: list[str],
    *,
    interpretation: PolicyInterpretation | None = None,
    search_mode: str | None = None,
    search_query: str | None = None,
    activity: ActivityCollector | None = None,
) -> list[PolicySignal]:
    """Search each country for candidate policies. Failed queries are skipped."""
    activity = activity or ActivityCollector("")
    signals: list[PolicySignal] = []
    seen: set[str] = set()
    log.info("Signal hunt starting for %s", ", ".join(countries))

    for country in countries:
        queries = build_queries(
            country, interpretation=interpretation, search_mode=search_mode, search_query=search_query,
        )
        if not queries:
            log.warning("No queries defined for country: %s", country)
            continue

        for query in queries:
            try:
                result = await tracked_search(
                    activity, PHASE,
                    lambda: client.search(query, _country_system_prompt(country)),
                    query_text=query, target_country=country,
                )
                found = await extract_policies(client, result.content, result.citations, country, activity)
            except Exception as exc:
                log.warning("Signal search failed for %s: %s", country, exc)
                activity.emit(
                    PHASE, "api_error",
                    query_text=query, target_country=country, metadata={"error": str(exc)},
                )
                continue
            _collect(found, seen, signals, activity, query)
            log.info("Found %d policies from query for %s", len(found), country)

    log.info("Signal hunt complete: %d policies", len(signals))
    return signals


async def discover_global_policies(
    client: SearchClient,
    *,
    activity: ActivityCollector | None = None,
) -> list[PolicySignal]:
    """Country-agnostic discovery scan.

    The source country is guessed from phrases like "by the Danish government"
    in the answer, so attribution is approximate.
    """
    activity = activity or ActivityCollector("")
    signals: list[PolicySignal] = []
    seen: set[str] = set()
    system_prompt = (
        "You are a global policy research analyst. Identify specific, named innovation policies "
        "from countries around the world. Focus on:\n"
        "1. Specific program names (not vague concepts)\n"
        "2. Programs with measurable success\n"
        "3. Policies from peer economies or innovative nations\n"
        "Include the country of origin for each policy."
    )

    for base_query in DISCOVERY_QUERIES:
        query = f"{base_query} {recent_years()}"
        try:
            result = await tracked_search(
                activity, PHASE, lambda: client.search(query, system_prompt), query_text=query,
            )
            countries = list(dict.fromkeys(m.group(1) for m in _DISCOVERY_COUNTRY_RE.finditer(result.content)))
            if not countries:
                continue
            extracted = await extract_policies(client, result.content, result.citations, countries[0], activity)
        except Exception as exc:
            log.warning("Discovery query failed: %s", exc)
            activity.emit(PHASE, "api_error", query_text=query, metadata={"error": str(exc)})
            continue
        for country in countries:
            found = [s.model_copy(update={"source_country": country}) for s in extracted]
            _collect(found, seen, signals, activity, query)

    log.info("Discovery complete: %d policies", len(signals))
    return signals
