"""Report generation: narrative sections, risks and atomic persistence per policy."""
from __future__ import annotations

import asyncio
import logging
import re
import time

from arbitrage.activity import ActivityCollector
from arbitrage.config import Settings, get_settings
from arbitrage.models import Policy
from arbitrage.repository import Repository
from arbitrage.schemas import (
    AnalyzedPolicy,
    ClaimDraft,
    Mitigation,
    PolicyDraft,
    Risk,
    RiskAssessment,
)
from arbitrage.search import SearchClient

log = logging.getLogger(__name__)

PHASE = "report_generation"

_QUOTES_RE = re.compile(r"^[\"']|[\"']$")


# ---------------------------------------------------------------------------
# Narrative sections (LLM with deterministic fallbacks)
# ---------------------------------------------------------------------------


async def generate_concept_hook(client: SearchClient, policy: AnalyzedPolicy, settings: Settings) -> str:
    try:
        result = await client.search(
            f'Create a compelling one-sentence hook (max 25 words) for "{policy.name}" from '
            f"{policy.source_country} that would grab a {settings.domestic_country} policymaker's "
            "attention. Focus on the key benefit or innovation.",
            "Return ONLY the hook sentence. No quotes, no explanation. Make it punchy and memorable.",
            temperature=0.3,
            max_tokens=100,
        )
        return _QUOTES_RE.sub("", result.content.strip())
    except Exception as exc:
        log.warning("Concept hook failed for %s: %s", policy.name, exc)
        return f"{policy.name}: A proven {policy.category.lower()} mechanism from {policy.source_country}."


async def generate_case_study(client: SearchClient, policy: AnalyzedPolicy) -> str:
    success_claims = " ".join(e.claim for e in policy.success_evidence[:3])
    try:
        result = await client.search(
            f'Summarize the success of "{policy.name}" in {policy.source_country} in 2-3 sentences. '
            f"Include specific metrics if available. Context: {success_claims}",
            "Be concise and data-driven. Include specific numbers where possible. No fluff.",
            temperature=0.2,
            max_tokens=200,
        )
        return result.content.strip()
    except Exception as exc:
        log.warning("Case study failed for %s: %s", policy.name, exc)
        return (
            f"{policy.name} has shown positive results in {policy.source_country}. "
            "Further research recommended for specific metrics."
        )


async def generate_pilot_proposal(client: SearchClient, policy: AnalyzedPolicy, settings: Settings) -> str:
    country = settings.domestic_country
    institutions = ", ".join(settings.domestic_institutions)
    lead = settings.domestic_institutions[0] if settings.domestic_institutions else "the national enterprise agency"
    try:
        result = await client.search(
            f'Propose a realistic pilot program to test the "{policy.name}" concept in {country}. '
            f"Consider: {country} institutions ({institutions}, etc.), existing frameworks, "
            "realistic scope. 3-4 sentences max.",
            f"Be specific and actionable. Reference real {country} institutions. "
            "Focus on low-risk, achievable first steps.",
            temperature=0.3,
            max_tokens=250,
        )
        return result.content.strip()
    except Exception as exc:
        log.warning("Pilot proposal failed for %s: %s", policy.name, exc)
        return (
            f"A pilot could be launched in partnership with {lead}, targeting a specific "
            "sector for 12-18 months to evaluate effectiveness."
        )


# ---------------------------------------------------------------------------
# Deterministic sections
# ---------------------------------------------------------------------------


def generate_risk_assessment(policy: AnalyzedPolicy) -> RiskAssessment:
    if policy.criticism_score > 0.5:
        political = "high"
    elif policy.criticism_score > 0.3:
        political = "medium"
    else:
        political = "low"

    risks = [
        Risk(risk="Implementation complexity", severity="medium", likelihood="medium"),
        Risk(risk="Political resistance", severity=political, likelihood="medium"),
        Risk(risk="Budget constraints", severity="high", likelihood="high"),
    ]
    mitigations = [
        Mitigation(
            risk="Implementation complexity",
            mitigation="Start with limited pilot scope, leverage existing agency infrastructure",
        ),
        Mitigation(
            risk="Political resistance",
            mitigation="Build cross-party support, emphasize evidence base from peer economies",
        ),
        Mitigation(
            risk="Budget constraints",
            mitigation="Explore EU funding mechanisms, consider revenue-neutral design",
        ),
    ]
    if policy.criticism_score > 0.4 and policy.criticism_evidence:
        risks.append(Risk(risk="Known issues from source country", severity="medium", likelihood="medium"))
        mitigations.append(Mitigation(
            risk="Known issues from source country",
            mitigation=f"Learn from {policy.source_country}'s experience and design to avoid identified pitfalls",
        ))
    return RiskAssessment(risks=risks, mitigations=mitigations)


def generate_gap_statement(policy: AnalyzedPolicy, settings: Settings) -> str:
    country = settings.domestic_country
    if policy.domestic_status == "absent":
        return (
            f"{country} currently has no equivalent to {policy.name}. This represents an untapped "
            f"opportunity for {policy.category.lower()} policy innovation that peer economies have "
            "successfully implemented."
        )
    if policy.domestic_status == "discussed_rejected":
        notes = policy.domestic_notes or (
            f"The evidence from {policy.source_country} suggests revisiting this policy."
        )
        return (
            f"While {policy.name} or similar concepts have been discussed in {country}, "
            f"no equivalent has been adopted. {notes}"
        )
    if policy.domestic_status == "exists":
        return (
            f"{country} has existing mechanisms in this space. However, the {policy.source_country} "
            "model may offer improvements or extensions worth considering."
        )
    return (
        f"Analysis of {country} policy landscape pending. Initial research suggests this may be "
        "an opportunity."
    )


def build_claims(policy: AnalyzedPolicy, case_study: str, gap_statement: str) -> list[ClaimDraft]:
    """Claims point into the flattened ``success + criticism + domestic`` evidence list."""
    success = list(range(len(policy.success_evidence)))
    domestic_offset = len(policy.success_evidence) + len(policy.criticism_evidence)
    domestic = [domestic_offset + i for i in range(len(policy.domestic_evidence))]
    claims = [
        ClaimDraft(claim_type="case_study_summary", claim_text=case_study, evidence_indices=success),
        ClaimDraft(claim_type="gap_statement", claim_text=gap_statement, evidence_indices=domestic or success),
    ]
    return [c for c in claims if c.claim_text.strip() and c.evidence_indices]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def report_policy(
    client: SearchClient,
    repository: Repository,
    policy: AnalyzedPolicy,
    *,
    run_id: str | None,
    activity: ActivityCollector,
    settings: Settings,
) -> Policy:
    for query_type in ("concept_hook", "case_study", "pilot_proposal"):
        activity.emit(PHASE, "query_sent", item_name=policy.name, metadata={"query_type": query_type})

    start = time.monotonic()
    hook, case_study, pilot = await asyncio.gather(
        generate_concept_hook(client, policy, settings),
        generate_case_study(client, policy),
        generate_pilot_proposal(client, policy, settings),
    )
    activity.emit(
        PHASE, "cache_miss",
        item_name=policy.name,
        api_call_duration_ms=int((time.monotonic() - start) * 1000),
        metadata={"generated_components": ["concept_hook", "case_study", "pilot_proposal"]},
    )

    gap_statement = generate_gap_statement(policy, settings)
    evidence = [*policy.success_evidence, *policy.criticism_evidence, *policy.domestic_evidence]
    draft = PolicyDraft(
        run_id=run_id,
        name=policy.name,
        category=policy.category,
        source_country=policy.source_country,
        source_url=policy.source_url,
        source_title=policy.source_title,
        description=policy.description,
        concept_hook=hook,
        case_study_summary=case_study,
        gap_statement=gap_statement,
        pilot_proposal=pilot,
        risk_assessment=generate_risk_assessment(policy),
        success_score=policy.success_score,
        criticism_score=policy.criticism_score,
        domestic_status=policy.domestic_status,
        domestic_notes=policy.domestic_notes,
        opportunity_value=policy.opportunity_value,
        status="active" if policy.opportunity_value == "high" else "draft",
    )
    saved = repository.create_policy_with_evidence(
        draft, evidence, build_claims(policy, case_study, gap_statement),
    )
    activity.emit(
        PHASE, "signal_found",
        item_name=saved.name, target_country=policy.source_country,
        metadata={"slug": saved.slug, "opportunity_value": saved.opportunity_value, "evidence_count": len(evidence)},
    )
    log.info("Saved report: %s (%s)", saved.name, saved.slug)
    return saved


async def generate_reports(
    client: SearchClient,
    repository: Repository,
    policies: list[AnalyzedPolicy],
    *,
    run_id: str | None = None,
    activity: ActivityCollector | None = None,
    settings: Settings | None = None,
) -> list[Policy]:
    """Write one report per policy, sequentially. A failing policy is logged and skipped."""
    activity = activity or ActivityCollector(run_id or "")
    settings = settings or get_settings()
    saved: list[Policy] = []
    for policy in policies:
        try:
            saved.append(await report_policy(
                client, repository, policy, run_id=run_id, activity=activity, settings=settings,
            ))
        except Exception as exc:
            log.exception("Report generation failed for %s", policy.name)
            activity.emit(PHASE, "api_error", item_name=policy.name, metadata={"error": str(exc)})
    log.info("Report generation complete: %d reports", len(saved))
    return saved
