"""Gap analysis: does the domestic country already have each vetted policy?

Classification of the domestic-sources answer is an ordered rule chain:

1. an explicit ``Classification:`` / ``Status:`` label,
2. a line that starts with ``exists`` / ``absent`` / ``discussed (but rejected)``,
3. the citations themselves: no domestic citations means absent, any
   domestic citation without a label means discussed but not adopted.

The opportunity value is then a pure function of the status and the two
vetting scores.
"""
from __future__ import annotations

import asyncio
import logging
import re
from datetime import UTC, datetime
from typing import Callable

from arbitrage.activity import ActivityCollector, tracked_search
from arbitrage.config import Settings, get_settings
from arbitrage.evidence import MAX_CLAIM_LENGTH, derive_publisher, extract_citation_claims, normalize_snippet
from arbitrage.schemas import AnalyzedPolicy, EvidenceItem, VettedPolicy
from arbitrage.search import Citation, SearchClient, search_domestic_sources

log = logging.getLogger(__name__)

PHASE = "gap_analysis"

PENDING_NOTES = "Gap analysis failed - manual review required"

_REASONING_RE = re.compile(r"Reasoning\s*:\s*([\s\S]*)", re.IGNORECASE)
_LABEL_RE = re.compile(r"(?:classification|status)\s*[:\-]\s*([A-Z_ \t-]+)", re.IGNORECASE)
_LEADING_RE = re.compile(r"^(exists|absent|discussed(?:\s+but\s+rejected)?)", re.IGNORECASE | re.MULTILINE)
_NORMALIZE_RE = re.compile(r"[\s_-]+")


def _normalize(label: str) -> str:
    return _NORMALIZE_RE.sub(" ", label.lower()).strip()


def domestic_domain(url: str, domains: list[str]) -> str | None:
    """The allow-listed domain ``url`` belongs to, if any."""
    host = (derive_publisher(url) or "").lower()
    if not host:
        return None
    return next((d for d in domains if d in host), None)


def _labelled_status(content: str) -> str | None:
    match = _LABEL_RE.search(content)
    if not match:
        return None
    label = _normalize(match.group(1))
    if "discussed" in label or "rejected" in label:
        return "discussed_rejected"
    if "exists" in label:
        return "exists"
    if "absent" in label:
        return "absent"
    return None


def _leading_status(content: str) -> str | None:
    match = _LEADING_RE.search(content)
    if not match:
        return None
    label = _normalize(match.group(1))
    if label.startswith("discussed"):
        return "discussed_rejected"
    return label


def _reasoning(content: str) -> str | None:
    match = _REASONING_RE.search(content)
    if not match:
        return None
    first = next((line.strip() for line in match.group(1).split("\n") if line.strip()), None)
    return first[:300] if first else None


def _citation_status(citations: list[Citation], settings: Settings) -> tuple[str, str]:
    country = settings.domestic_country
    if not any(domestic_domain(c.url, settings.domestic_domains) for c in citations):
        return "absent", f"No {country} sources found for this policy concept."
    return "discussed_rejected", f"{country} sources mention the topic but no explicit adoption was classified."


_RULES: list[Callable[[str], str | None]] = [_labelled_status, _leading_status]


def determine_domestic_status(
    content: str,
    citations: list[Citation],
    settings: Settings | None = None,
) -> tuple[str, str]:
    """Classify the domestic-sources answer. Returns ``(status, notes)``."""
    settings = settings or get_settings()
    country = settings.domestic_country
    default_notes = {
        "exists": f"This policy appears to exist in {country} based on {country} sources.",
        "discussed_rejected": f"This policy appears to have been discussed in {country} but not adopted.",
        "absent": f"No evidence of this policy concept in {country} policy discourse.",
    }
    for rule in _RULES:
        status = rule(content or "")
        if status:
            return status, _reasoning(content) or default_notes[status]
    return _citation_status(citations, settings)


def calculate_opportunity_value(status: str, success_score: float, criticism_score: float) -> str | None:
    if status == "pending":
        return None
    if status == "exists":
        return "low"
    if status == "discussed_rejected":
        return "medium"
    if status == "absent":
        if success_score >= 0.5 and criticism_score < 0.5:
            return "high"
        if success_score >= 0.3:
            return "medium"
    return "low"


def build_domestic_evidence(
    content: str,
    citations: list[Citation],
    policy_name: str,
    settings: Settings,
) -> list[EvidenceItem]:
    claims = extract_citation_claims(content, policy_name)
    retrieved_at = datetime.now(UTC)
    items: list[EvidenceItem] = []
    for position, citation in enumerate(citations, start=1):
        domain = domestic_domain(citation.url, settings.domestic_domains)
        claim = claims.claim_by_citation.get(position) or claims.fallback_claim
        is_gov = domain is not None and ("gov" in domain or "oireachtas" in domain)
        items.append(EvidenceItem(
            url=citation.url,
            title=citation.title or citation.url,
            publisher=derive_publisher(citation.url),
            retrieved_at=retrieved_at,
            source_type="gov_doc" if is_gov else "news",
            evidence_type="adoption_rate",
            claim=claim[:MAX_CLAIM_LENGTH],
            excerpt=normalize_snippet(citation.snippet),
            sentiment="neutral",
            confidence=0.7,
            is_domestic_source=domain is not None,
            domestic_domain=domain,
        ))
    return items


async def analyze_policy(
    client: SearchClient,
    policy: VettedPolicy,
    activity: ActivityCollector,
    settings: Settings,
) -> AnalyzedPolicy:
    country = settings.domestic_country
    result = await tracked_search(
        activity, PHASE,
        lambda: search_domestic_sources(client, policy.name, policy.category, settings),
        query_text=f"{policy.name} {country} sources",
        target_country=country, item_name=policy.name,
        metadata={"query_type": "domestic_sources"},
    )
    evidence = build_domestic_evidence(result.content, result.citations, policy.name, settings)
    for item in evidence:
        if item.is_domestic_source:
            activity.emit(
                PHASE, "evidence_found",
                target_country=country, item_name=policy.name,
                metadata={"source_type": item.source_type, "domestic_domain": item.domestic_domain, "url": item.url},
            )

    status, notes = determine_domestic_status(result.content, result.citations, settings)
    opportunity = calculate_opportunity_value(status, policy.success_score, policy.criticism_score)
    log.info("%s: status=%s, opportunity=%s", policy.name, status, opportunity)
    return AnalyzedPolicy(
        **policy.model_dump(),
        domestic_status=status,
        domestic_notes=notes,
        domestic_evidence=evidence,
        opportunity_value=opportunity,
    )


async def _analyze_or_pending(
    client: SearchClient,
    policy: VettedPolicy,
    activity: ActivityCollector,
    settings: Settings,
) -> AnalyzedPolicy:
    try:
        return await analyze_policy(client, policy, activity, settings)
    except Exception as exc:
        log.warning("Gap analysis failed for %s: %s", policy.name, exc)
        activity.emit(PHASE, "api_error", item_name=policy.name, metadata={"error": str(exc)})
        return AnalyzedPolicy(
            **policy.model_dump(),
            domestic_status="pending",
            domestic_notes=PENDING_NOTES,
            opportunity_value=None,
        )


async def gap_analysis(
    client: SearchClient,
    policies: list[VettedPolicy],
    *,
    activity: ActivityCollector | None = None,
    settings: Settings | None = None,
) -> list[AnalyzedPolicy]:
    """Classify every vetted policy against domestic sources. All policies are returned."""
    activity = activity or ActivityCollector("")
    settings = settings or get_settings()
    size = settings.batch_size
    analyzed: list[AnalyzedPolicy] = []

    for start in range(0, len(policies), size):
        batch = policies[start:start + size]
        analyzed.extend(await asyncio.gather(
            *(_analyze_or_pending(client, p, activity, settings) for p in batch)
        ))
        if start + size < len(policies):
            await asyncio.sleep(settings.batch_delay_seconds)

    for policy in analyzed:
        if policy.opportunity_value in ("high", "medium"):
            continue
        reason = (
            f"Policy already exists in {settings.domestic_country}"
            if policy.domestic_status == "exists"
            else "Low opportunity value based on evidence scores"
        )
        activity.emit(
            PHASE, "item_filtered",
            target_country=policy.source_country, item_name=policy.name, rejection_reason=reason,
            metadata={"domestic_status": policy.domestic_status, "opportunity_value": policy.opportunity_value},
        )
    return analyzed
