"""Pydantic types for the research pipeline and request/response schemas for the API."""
from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

SourceType = Literal["oecd_report", "news", "gov_doc", "academic", "blog", "think_tank"]
EvidenceType = Literal["success_metric", "criticism", "unintended_consequence", "adoption_rate"]
Sentiment = Literal["positive", "negative", "neutral"]
DomesticStatus = Literal["exists", "discussed_rejected", "absent", "pending"]
OpportunityValue = Literal["high", "medium", "low"]
PolicyStatus = Literal["draft", "active", "archived"]
Phase = Literal["signal_hunter", "global_vetting", "gap_analysis", "report_generation"]
EventType = Literal[
    "phase_started",
    "phase_completed",
    "query_sent",
    "signal_found",
    "signal_rejected",
    "evidence_found",
    "cache_hit",
    "cache_miss",
    "api_error",
    "item_filtered",
]
Outcome = Literal["policies_found", "no_implementations", "no_evidence", "error"]
SearchMode = Literal["broad", "topic", "reverse"]
Level = Literal["low", "medium", "high"]

HIGH_QUALITY_SOURCES = frozenset({"oecd_report", "academic", "gov_doc"})


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Policy interpretation
# ---------------------------------------------------------------------------


class PolicyLevers(BaseModel):
    target_group: str = ""
    mechanism: str = ""
    sector: str | None = None
    intended_outcome: str = ""


class PolicyInterpretation(BaseModel):
    policy_name: str
    also_known_as: list[str] = []
    category: str = ""
    summary: str = ""
    original_input: str = ""
    levers: PolicyLevers = Field(default_factory=PolicyLevers)


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------


class EvidenceItem(BaseModel):
    """One sourced claim. Never mutated after construction."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    policy_id: str = ""
    url: str
    title: str = ""
    publisher: str | None = None
    retrieved_at: datetime = Field(default_factory=_now)
    source_type: SourceType = "news"
    publication_date: str | None = None
    evidence_type: EvidenceType
    claim: str
    excerpt: str | None = None
    sentiment: Sentiment
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    is_domestic_source: bool = False
    domestic_domain: str | None = None


class PolicySignal(BaseModel):
    name: str
    category: str = "Innovation Policy"
    source_country: str
    source_url: str = ""
    source_title: str = ""
    description: str = ""


class VettedPolicy(PolicySignal):
    success_evidence: list[EvidenceItem] = []
    criticism_evidence: list[EvidenceItem] = []
    success_score: float = Field(default=0.0, ge=0.0, le=1.0)
    criticism_score: float = Field(default=0.0, ge=0.0, le=1.0)


class AnalyzedPolicy(VettedPolicy):
    domestic_status: DomesticStatus = "pending"
    domestic_notes: str = ""
    domestic_evidence: list[EvidenceItem] = []
    opportunity_value: OpportunityValue | None = None


class Risk(BaseModel):
    risk: str
    severity: Level
    likelihood: Level


class Mitigation(BaseModel):
    risk: str
    mitigation: str


class RiskAssessment(BaseModel):
    risks: list[Risk] = []
    mitigations: list[Mitigation] = []


class ClaimDraft(BaseModel):
    """A report claim backed by evidence, referenced by position in the flattened evidence list."""

    claim_type: Literal["case_study_summary", "gap_statement"]
    claim_text: str
    evidence_indices: list[int]


class PolicyDraft(BaseModel):
    """Everything needed to persist one reported policy."""

    run_id: str | None = None
    name: str
    category: str
    source_country: str
    source_url: str = ""
    source_title: str = ""
    description: str = ""
    concept_hook: str = ""
    case_study_summary: str = ""
    gap_statement: str = ""
    pilot_proposal: str = ""
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    success_score: float = 0.0
    criticism_score: float = 0.0
    domestic_status: DomesticStatus = "pending"
    domestic_notes: str = ""
    opportunity_value: OpportunityValue | None = None
    vetting_status: str = "vetted"
    status: PolicyStatus = "draft"


# ---------------------------------------------------------------------------
# Activity tracking
# ---------------------------------------------------------------------------


class ActivityEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    run_id: str
    phase: Phase
    event_type: EventType
    timestamp: datetime = Field(default_factory=_now)
    query_text: str | None = None
    target_country: str | None = None
    item_name: str | None = None
    item_count: int | None = None
    rejection_reason: str | None = None
    api_call_duration_ms: int | None = None
    tokens_used: int | None = None
    cache_hit: bool | None = None
    metadata: dict[str, Any] = {}


class PhaseTiming(BaseModel):
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration_ms: int | None = None


class ActivityTiming(BaseModel):
    total_duration_ms: int = 0
    phase_timings: dict[str, PhaseTiming] = {}


class ActivityFunnel(BaseModel):
    signals_found: int = 0
    signals_vetted: int = 0
    signals_analyzed: int = 0
    policies_reported: int = 0


class ApiMetrics(BaseModel):
    total_calls: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_tokens_used: int = 0


class SourcesDiscovered(BaseModel):
    total: int = 0
    by_type: dict[str, int] = {}
    by_country: dict[str, int] = {}


class Rejections(BaseModel):
    at_vetting: int = 0
    at_gap_analysis: int = 0
    low_opportunity: int = 0


class ActivitySummary(BaseModel):
    timing: ActivityTiming = Field(default_factory=ActivityTiming)
    funnel: ActivityFunnel = Field(default_factory=ActivityFunnel)
    api_metrics: ApiMetrics = Field(default_factory=ApiMetrics)
    sources_discovered: SourcesDiscovered = Field(default_factory=SourcesDiscovered)
    rejections: Rejections = Field(default_factory=Rejections)
    outcome: Outcome
    outcome_reason: str


# ---------------------------------------------------------------------------
# API requests
# ---------------------------------------------------------------------------


class ResearchRequest(BaseModel):
    countries: list[str]
    interpretation: PolicyInterpretation | None = None
    search_mode: SearchMode | None = None
    search_query: str | None = None

    @field_validator("countries")
    @classmethod
    def countries_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one country is required")
        return v


class InterpretRequest(BaseModel):
    idea_text: str

    @field_validator("idea_text")
    @classmethod
    def idea_long_enough(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 10:
            raise ValueError("please describe the policy idea in at least 10 characters")
        return v


class CloneRequest(BaseModel):
    countries: list[str]

    @field_validator("countries")
    @classmethod
    def countries_not_empty(cls, v: list[str]) -> list[str]:
        if not v:
            raise ValueError("at least one country is required")
        return v


class PolicyStatusUpdate(BaseModel):
    status: PolicyStatus


# ---------------------------------------------------------------------------
# API responses
# ---------------------------------------------------------------------------


class RunOut(BaseModel):
    id: str
    run_type: str
    status: str
    current_phase: str | None = None
    countries: list[str] = []
    search_mode: str | None = None
    search_query: str | None = None
    interpretation: dict[str, Any] | None = None
    policies_found: int = 0
    high_value_count: int = 0
    error_message: str | None = None
    activity_summary: dict[str, Any] | None = None
    started_at: str | None = None
    completed_at: str | None = None


class EvidenceOut(BaseModel):
    id: str
    url: str
    title: str
    publisher: str | None = None
    source_type: str
    evidence_type: str
    claim: str
    excerpt: str | None = None
    sentiment: str
    confidence: float
    is_domestic_source: bool = False
    domestic_domain: str | None = None


class PolicyOut(BaseModel):
    id: str
    slug: str
    run_id: str | None = None
    name: str
    category: str
    source_country: str
    source_url: str
    description: str
    concept_hook: str
    success_score: float
    criticism_score: float
    domestic_status: str
    opportunity_value: str | None = None
    status: str
    created_at: str | None = None


class PolicyDetail(PolicyOut):
    source_title: str = ""
    case_study_summary: str = ""
    gap_statement: str = ""
    pilot_proposal: str = ""
    domestic_notes: str = ""
    risk_assessment: dict[str, Any] = {}
    evidence: dict[str, list[EvidenceOut]] = {}
    claims: list[dict[str, Any]] = []


class PipelineResultOut(BaseModel):
    success: bool
    run: RunOut
    policies: list[PolicyOut] = []
    error: str | None = None
