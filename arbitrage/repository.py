"""Record store operations for runs, policies, evidence and run activity."""
from __future__ import annotations

import json
import logging
from datetime import UTC, datetime

from sqlalchemy import select
from sqlalchemy.orm import selectinload

from arbitrage.db import session_scope
from arbitrage.models import Evidence, Policy, PolicyClaim, Run, RunActivity
from arbitrage.schemas import (
    ActivityEvent,
    ActivitySummary,
    ClaimDraft,
    EvidenceItem,
    PolicyDraft,
    PolicyInterpretation,
)
from arbitrage.utils import slugify

log = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


class Repository:
    """Thin persistence layer; every method runs in its own transaction.

    ``session_factory`` defaults to the process-wide session maker set up by
    :func:`arbitrage.db.init_db`.
    """

    def __init__(self, session_factory=None):
        self._factory = session_factory

    def _scope(self):
        return session_scope(self._factory)

    # -----------------------------------------------------------------------
    # Runs
    # -----------------------------------------------------------------------

    def create_run(
        self,
        countries: list[str],
        *,
        run_type: str = "manual",
        search_mode: str | None = None,
        search_query: str | None = None,
        interpretation: PolicyInterpretation | None = None,
    ) -> Run:
        with self._scope() as session:
            run = Run(
                run_type=run_type,
                status="running",
                countries_json=json.dumps(countries),
                search_mode=search_mode,
                search_query=search_query,
                interpretation_json=interpretation.model_dump_json() if interpretation else None,
                started_at=datetime.now(UTC),
            )
            session.add(run)
        return run

    def get_run(self, run_id: str) -> Run | None:
        with self._scope() as session:
            return session.get(Run, run_id)

    def get_recent_runs(self, limit: int = 10) -> list[Run]:
        with self._scope() as session:
            stmt = select(Run).order_by(Run.created_at.desc()).limit(limit)
            return list(session.execute(stmt).scalars().all())

    def get_active_run(self) -> Run | None:
        with self._scope() as session:
            stmt = select(Run).where(Run.status == "running").order_by(Run.created_at.desc())
            return session.execute(stmt).scalars().first()

    def update_run_phase(self, run_id: str, phase: str) -> None:
        with self._scope() as session:
            run = session.get(Run, run_id)
            if run is not None:
                run.current_phase = phase

    def update_run_status(self, run_id: str, status: str, error_message: str | None = None) -> None:
        with self._scope() as session:
            run = session.get(Run, run_id)
            if run is None:
                return
            run.status = status
            if error_message is not None:
                run.error_message = error_message
            if status in TERMINAL_STATUSES:
                run.completed_at = datetime.now(UTC)

    def update_run_counts(self, run_id: str, policies_found: int, high_value_count: int) -> None:
        with self._scope() as session:
            run = session.get(Run, run_id)
            if run is not None:
                run.policies_found = policies_found
                run.high_value_count = high_value_count

    def cancel_run(self, run_id: str) -> bool:
        """Request cancellation. Only a running run can be cancelled."""
        with self._scope() as session:
            run = session.get(Run, run_id)
            if run is None or run.status != "running":
                return False
            run.status = "cancelled"
            run.completed_at = datetime.now(UTC)
        log.info("Cancellation requested for run %s", run_id)
        return True

    def is_cancelled(self, run_id: str) -> bool:
        with self._scope() as session:
            status = session.execute(select(Run.status).where(Run.id == run_id)).scalar()
        return status == "cancelled"

    # -----------------------------------------------------------------------
    # Policies & evidence
    # -----------------------------------------------------------------------

    def create_policy_with_evidence(
        self,
        draft: PolicyDraft,
        evidence: list[EvidenceItem],
        claims: list[ClaimDraft] | None = None,
    ) -> Policy:
        """Insert a policy, its evidence and its claims in one transaction.

        Either everything is written or nothing is: any failure rolls back
        the policy row together with the evidence inserted so far.
        """
        with self._scope() as session:
            rows = [Evidence(**item.model_dump(exclude={"id", "policy_id"})) for item in evidence]
            policy = Policy(
                **draft.model_dump(exclude={"risk_assessment"}),
                slug=self._unique_slug(session, draft.name),
                risk_assessment_json=draft.risk_assessment.model_dump_json(),
                evidence=rows,
                claims=[],
            )
            session.add(policy)
            session.flush()

            for claim in claims or []:
                evidence_ids = [rows[i].id for i in claim.evidence_indices if 0 <= i < len(rows)]
                if not claim.claim_text.strip() or not evidence_ids:
                    continue
                policy.claims.append(PolicyClaim(
                    claim_type=claim.claim_type,
                    claim_text=claim.claim_text,
                    evidence_ids_json=json.dumps(evidence_ids),
                ))
            session.flush()
        return policy

    @staticmethod
    def _unique_slug(session, name: str) -> str:
        base = slugify(name) or "policy"
        taken = set(session.execute(
            select(Policy.slug).where(Policy.slug.like(f"{base}%"))
        ).scalars().all())
        slug, n = base, 2
        while slug in taken:
            slug = f"{base}-{n}"
            n += 1
        return slug

    def get_policies(
        self,
        *,
        run_id: str | None = None,
        status: str | None = None,
        domestic_status: str | None = None,
        opportunity_value: str | None = None,
        source_country: str | None = None,
        limit: int | None = None,
    ) -> list[Policy]:
        stmt = select(Policy).order_by(Policy.created_at.desc())
        if run_id:
            stmt = stmt.where(Policy.run_id == run_id)
        if status:
            stmt = stmt.where(Policy.status == status)
        if domestic_status:
            stmt = stmt.where(Policy.domestic_status == domestic_status)
        if opportunity_value:
            stmt = stmt.where(Policy.opportunity_value == opportunity_value)
        if source_country:
            stmt = stmt.where(Policy.source_country == source_country)
        if limit:
            stmt = stmt.limit(limit)
        with self._scope() as session:
            return list(session.execute(stmt).scalars().all())

    def get_high_value_policies(self, limit: int = 3) -> list[Policy]:
        return self.get_policies(status="active", opportunity_value="high", limit=limit)

    def get_policy_by_slug(self, slug: str) -> Policy | None:
        stmt = (
            select(Policy)
            .where(Policy.slug == slug)
            .options(selectinload(Policy.evidence), selectinload(Policy.claims))
        )
        with self._scope() as session:
            return session.execute(stmt).scalars().first()

    def update_policy_status(self, slug: str, status: str) -> Policy | None:
        with self._scope() as session:
            policy = session.execute(select(Policy).where(Policy.slug == slug)).scalars().first()
            if policy is None:
                return None
            policy.status = status
        return policy

    def get_evidence_for_policy(self, policy_id: str) -> list[Evidence]:
        with self._scope() as session:
            stmt = select(Evidence).where(Evidence.policy_id == policy_id).order_by(Evidence.created_at)
            return list(session.execute(stmt).scalars().all())

    def get_policy_claims(self, policy_id: str) -> list[PolicyClaim]:
        with self._scope() as session:
            stmt = select(PolicyClaim).where(PolicyClaim.policy_id == policy_id)
            return list(session.execute(stmt).scalars().all())

    # -----------------------------------------------------------------------
    # Activity
    # -----------------------------------------------------------------------

    def insert_activities(self, events: list[ActivityEvent]) -> None:
        with self._scope() as session:
            session.add_all([
                RunActivity(
                    **event.model_dump(exclude={"metadata"}),
                    metadata_json=json.dumps(event.metadata, default=str),
                )
                for event in events
            ])

    def update_activity_summary(self, run_id: str, summary: ActivitySummary) -> None:
        with self._scope() as session:
            run = session.get(Run, run_id)
            if run is not None:
                run.activity_summary_json = summary.model_dump_json()

    def get_run_activities(self, run_id: str) -> list[RunActivity]:
        with self._scope() as session:
            stmt = (
                select(RunActivity)
                .where(RunActivity.run_id == run_id)
                .order_by(RunActivity.timestamp, RunActivity.id)
            )
            return list(session.execute(stmt).scalars().all())
