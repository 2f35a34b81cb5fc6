"""Global vetting: collect success and criticism evidence for each signal and score it."""
from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from arbitrage.activity import ActivityCollector, tracked_search
from arbitrage.config import Settings, get_settings
from arbitrage.evidence import (
    MAX_CLAIM_LENGTH,
    confidence_from_strength,
    derive_publisher,
    extract_citation_claims,
    infer_source_type,
    normalize_snippet,
)
from arbitrage.schemas import HIGH_QUALITY_SOURCES, EvidenceItem, PolicySignal, VettedPolicy
from arbitrage.search import SearchClient, SearchResponse, search_criticisms, search_success_evidence

log = logging.getLogger(__name__)

PHASE = "global_vetting"


def calculate_score(evidence: list[EvidenceItem]) -> float:
    """Blend evidence volume, source quality and confidence into a score in [0, 1].

    ``round((count_ratio*0.5 + quality_ratio*0.5) * (0.3 + 0.7*avg_confidence), 2)``
    where five items saturate volume and three high-quality sources saturate quality.
    """
    if not evidence:
        return 0.0
    count_ratio = min(len(evidence) / 5, 1.0)
    high_quality = sum(1 for e in evidence if e.source_type in HIGH_QUALITY_SOURCES)
    quality_ratio = min(high_quality / 3, 1.0)
    avg_confidence = sum(e.confidence for e in evidence) / len(evidence)
    return round((count_ratio * 0.5 + quality_ratio * 0.5) * (0.3 + 0.7 * avg_confidence), 2)


def build_evidence(
    response: SearchResponse,
    policy_name: str,
    *,
    evidence_type: str,
    sentiment: str,
) -> list[EvidenceItem]:
    """One evidence item per citation, with its specific claim and strength-based confidence."""
    claims = extract_citation_claims(response.content, policy_name)
    retrieved_at = datetime.now(UTC)
    items: list[EvidenceItem] = []
    for position, citation in enumerate(response.citations, start=1):
        claim = claims.claim_by_citation.get(position) or claims.fallback_claim
        items.append(EvidenceItem(
            url=citation.url,
            title=citation.title or citation.url,
            publisher=derive_publisher(citation.url),
            retrieved_at=retrieved_at,
            source_type=infer_source_type(citation.url),
            evidence_type=evidence_type,
            claim=claim[:MAX_CLAIM_LENGTH],
            excerpt=normalize_snippet(citation.snippet),
            sentiment=sentiment,
            confidence=confidence_from_strength(claims.strength_by_citation.get(position)),
        ))
    return items


async def vet_policy(
    client: SearchClient,
    signal: PolicySignal,
    activity: ActivityCollector,
) -> VettedPolicy:
    """Gather evidence for one signal. Search failures propagate to the caller."""
    success, criticism = await asyncio.gather(
        tracked_search(
            activity, PHASE,
            lambda: search_success_evidence(client, signal.name, signal.source_country),
            query_text=f"{signal.name} success evidence",
            target_country=signal.source_country, item_name=signal.name,
            metadata={"query_type": "success_evidence"},
        ),
        tracked_search(
            activity, PHASE,
            lambda: search_criticisms(client, signal.name, signal.source_country),
            query_text=f"{signal.name} criticisms",
            target_country=signal.source_country, item_name=signal.name,
            metadata={"query_type": "criticism"},
        ),
    )
    success_evidence = build_evidence(success, signal.name, evidence_type="success_metric", sentiment="positive")
    criticism_evidence = build_evidence(criticism, signal.name, evidence_type="criticism", sentiment="negative")

    for item in (*success_evidence, *criticism_evidence):
        activity.emit(
            PHASE, "evidence_found",
            target_country=signal.source_country, item_name=signal.name,
            metadata={"source_type": item.source_type, "evidence_type": item.evidence_type, "url": item.url},
        )

    return VettedPolicy(
        **signal.model_dump(),
        success_evidence=success_evidence,
        criticism_evidence=criticism_evidence,
        success_score=calculate_score(success_evidence),
        criticism_score=calculate_score(criticism_evidence),
    )


async def _vet_or_empty(
    client: SearchClient,
    signal: PolicySignal,
    activity: ActivityCollector,
) -> VettedPolicy:
    try:
        return await vet_policy(client, signal, activity)
    except Exception as exc:
        log.warning("Vetting failed for %s: %s", signal.name, exc)
        activity.emit(
            PHASE, "api_error",
            target_country=signal.source_country, item_name=signal.name,
            metadata={"error": str(exc)},
        )
        return VettedPolicy(**signal.model_dump())


async def global_vetting(
    client: SearchClient,
    signals: list[PolicySignal],
    *,
    activity: ActivityCollector | None = None,
    settings: Settings | None = None,
) -> list[VettedPolicy]:
    """Vet signals in small concurrent batches and keep those with any success evidence."""
    activity = activity or ActivityCollector("")
    settings = settings or get_settings()
    size = settings.batch_size
    vetted: list[VettedPolicy] = []

    for start in range(0, len(signals), size):
        batch = signals[start:start + size]
        vetted.extend(await asyncio.gather(*(_vet_or_empty(client, s, activity) for s in batch)))
        if start + size < len(signals):
            await asyncio.sleep(settings.batch_delay_seconds)

    kept: list[VettedPolicy] = []
    for policy in vetted:
        if policy.success_score > 0:
            kept.append(policy)
            continue
        activity.emit(
            PHASE, "signal_rejected",
            target_country=policy.source_country, item_name=policy.name,
            rejection_reason="No success evidence found",
        )
    log.info("Vetting complete: %d of %d signals kept", len(kept), len(signals))
    return kept
