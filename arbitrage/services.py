"""Shared business logic for the API: serialization and request validation helpers."""
from __future__ import annotations

from typing import Any

from arbitrage.config import Settings
from arbitrage.models import Evidence, Policy, PolicyClaim, Run, RunActivity
from arbitrage.pipeline import PipelineResult
from arbitrage.schemas import PolicyInterpretation
from arbitrage.utils import json_parse


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def run_summary(run: Run) -> dict:
    return {
        "id": run.id, "run_type": run.run_type, "status": run.status,
        "current_phase": run.current_phase,
        "countries": json_parse(run.countries_json, []),
        "search_mode": run.search_mode, "search_query": run.search_query,
        "interpretation": json_parse(run.interpretation_json, None),
        "policies_found": run.policies_found, "high_value_count": run.high_value_count,
        "error_message": run.error_message,
        "activity_summary": json_parse(run.activity_summary_json, None),
        "started_at": _iso(run.started_at), "completed_at": _iso(run.completed_at),
    }


def policy_summary(policy: Policy) -> dict:
    return {
        "id": policy.id, "slug": policy.slug, "run_id": policy.run_id,
        "name": policy.name, "category": policy.category,
        "source_country": policy.source_country, "source_url": policy.source_url,
        "description": policy.description, "concept_hook": policy.concept_hook,
        "success_score": policy.success_score, "criticism_score": policy.criticism_score,
        "domestic_status": policy.domestic_status, "opportunity_value": policy.opportunity_value,
        "status": policy.status, "created_at": _iso(policy.created_at),
    }


def evidence_summary(e: Evidence) -> dict:
    return {
        "id": e.id, "url": e.url, "title": e.title, "publisher": e.publisher,
        "source_type": e.source_type, "evidence_type": e.evidence_type,
        "claim": e.claim, "excerpt": e.excerpt, "sentiment": e.sentiment,
        "confidence": e.confidence, "is_domestic_source": e.is_domestic_source,
        "domestic_domain": e.domestic_domain,
    }


def group_evidence(evidence: list[Evidence]) -> dict[str, list[dict]]:
    groups: dict[str, list[dict]] = {
        "success_metrics": [], "criticisms": [], "domestic_sources": [], "other": [],
    }
    for e in evidence:
        if e.is_domestic_source:
            key = "domestic_sources"
        elif e.evidence_type == "success_metric":
            key = "success_metrics"
        elif e.evidence_type in ("criticism", "unintended_consequence"):
            key = "criticisms"
        else:
            key = "other"
        groups[key].append(evidence_summary(e))
    return groups


def claim_summary(claim: PolicyClaim) -> dict:
    return {
        "id": claim.id, "claim_type": claim.claim_type, "claim_text": claim.claim_text,
        "evidence_ids": json_parse(claim.evidence_ids_json, []),
    }


def policy_detail(policy: Policy) -> dict:
    base = policy_summary(policy)
    base.update({
        "source_title": policy.source_title,
        "case_study_summary": policy.case_study_summary,
        "gap_statement": policy.gap_statement,
        "pilot_proposal": policy.pilot_proposal,
        "domestic_notes": policy.domestic_notes,
        "risk_assessment": json_parse(policy.risk_assessment_json),
        "evidence": group_evidence(policy.evidence),
        "claims": [claim_summary(c) for c in policy.claims],
    })
    return base


def activity_event(a: RunActivity) -> dict:
    return {
        "phase": a.phase, "event_type": a.event_type, "timestamp": _iso(a.timestamp),
        "query_text": a.query_text, "target_country": a.target_country,
        "item_name": a.item_name, "item_count": a.item_count,
        "rejection_reason": a.rejection_reason,
        "api_call_duration_ms": a.api_call_duration_ms, "tokens_used": a.tokens_used,
        "cache_hit": a.cache_hit, "metadata": json_parse(a.metadata_json),
    }


def pipeline_result(result: PipelineResult) -> dict:
    return {
        "success": result.success,
        "run": run_summary(result.run),
        "policies": [policy_summary(p) for p in result.policies],
        "error": result.error,
    }


def invalid_countries(countries: list[str], settings: Settings) -> list[str]:
    allowed = set(settings.peer_countries)
    return [c for c in countries if c not in allowed]


def stored_interpretation(run: Run) -> PolicyInterpretation | None:
    data: Any = json_parse(run.interpretation_json, None)
    if not data:
        return None
    return PolicyInterpretation.model_validate(data)
