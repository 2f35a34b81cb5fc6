from __future__ import annotations

import uuid
from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _uuid() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class Run(Base):
    __tablename__ = "runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    run_type: Mapped[str] = mapped_column(String(20), default="manual")  # manual | discovery
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending | running | completed | failed | cancelled
    current_phase: Mapped[str | None] = mapped_column(String(30), nullable=True)
    countries_json: Mapped[str] = mapped_column(Text, default="[]")
    search_mode: Mapped[str | None] = mapped_column(String(20), nullable=True)
    search_query: Mapped[str | None] = mapped_column(Text, nullable=True)
    interpretation_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    policies_found: Mapped[int] = mapped_column(Integer, default=0)
    high_value_count: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    activity_summary_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    policies: Mapped[list[Policy]] = relationship("Policy", back_populates="run")
    activities: Mapped[list[RunActivity]] = relationship(
        "RunActivity", back_populates="run", cascade="all, delete-orphan"
    )


class Policy(Base):
    __tablename__ = "policies"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    run_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("runs.id"), nullable=True)
    slug: Mapped[str] = mapped_column(String(300), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(100), default="")
    source_country: Mapped[str] = mapped_column(String(100), default="")
    source_url: Mapped[str] = mapped_column(String(1000), default="")
    source_title: Mapped[str] = mapped_column(String(500), default="")
    description: Mapped[str] = mapped_column(Text, default="")

    concept_hook: Mapped[str] = mapped_column(Text, default="")
    case_study_summary: Mapped[str] = mapped_column(Text, default="")
    gap_statement: Mapped[str] = mapped_column(Text, default="")
    pilot_proposal: Mapped[str] = mapped_column(Text, default="")
    risk_assessment_json: Mapped[str] = mapped_column(Text, default="{}")

    success_score: Mapped[float] = mapped_column(Float, default=0.0)
    criticism_score: Mapped[float] = mapped_column(Float, default=0.0)
    domestic_status: Mapped[str] = mapped_column(String(30), default="pending")  # exists | discussed_rejected | absent | pending
    domestic_notes: Mapped[str] = mapped_column(Text, default="")
    opportunity_value: Mapped[str | None] = mapped_column(String(10), nullable=True)  # high | medium | low

    vetting_status: Mapped[str] = mapped_column(String(20), default="vetted")
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft | active | archived
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    run: Mapped[Run | None] = relationship("Run", back_populates="policies")
    evidence: Mapped[list[Evidence]] = relationship(
        "Evidence", back_populates="policy", cascade="all, delete-orphan"
    )
    claims: Mapped[list[PolicyClaim]] = relationship(
        "PolicyClaim", back_populates="policy", cascade="all, delete-orphan"
    )


class Evidence(Base):
    __tablename__ = "evidence"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    policy_id: Mapped[str] = mapped_column(String(36), ForeignKey("policies.id"), nullable=False)
    url: Mapped[str] = mapped_column(String(1000), nullable=False)
    title: Mapped[str] = mapped_column(String(500), default="")
    publisher: Mapped[str | None] = mapped_column(String(300), nullable=True)
    retrieved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    source_type: Mapped[str] = mapped_column(String(30), nullable=False)  # oecd_report | news | gov_doc | academic | blog | think_tank
    publication_date: Mapped[str | None] = mapped_column(String(30), nullable=True)
    evidence_type: Mapped[str] = mapped_column(String(40), nullable=False)  # success_metric | criticism | unintended_consequence | adoption_rate
    claim: Mapped[str] = mapped_column(Text, nullable=False)
    excerpt: Mapped[str | None] = mapped_column(Text, nullable=True)
    sentiment: Mapped[str] = mapped_column(String(10), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, default=0.7)
    is_domestic_source: Mapped[bool] = mapped_column(Boolean, default=False)
    domestic_domain: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    policy: Mapped[Policy] = relationship("Policy", back_populates="evidence")


class PolicyClaim(Base):
    __tablename__ = "policy_claims"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    policy_id: Mapped[str] = mapped_column(String(36), ForeignKey("policies.id"), nullable=False)
    claim_type: Mapped[str] = mapped_column(String(40), nullable=False)  # case_study_summary | gap_statement
    claim_text: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_ids_json: Mapped[str] = mapped_column(Text, default="[]")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    policy: Mapped[Policy] = relationship("Policy", back_populates="claims")


class RunActivity(Base):
    __tablename__ = "run_activities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(String(36), ForeignKey("runs.id"), nullable=False)
    phase: Mapped[str] = mapped_column(String(30), nullable=False)
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    query_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    target_country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    item_name: Mapped[str | None] = mapped_column(String(300), nullable=True)
    item_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    api_call_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cache_hit: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")

    run: Mapped[Run] = relationship("Run", back_populates="activities")
