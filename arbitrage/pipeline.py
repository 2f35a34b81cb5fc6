"""Research pipeline orchestration.

A run moves through four phases::

    signal_hunter -> global_vetting -> gap_analysis -> report_generation

Cancellation is polled before each phase (and before the run is marked
complete). Whatever happens, the run's activity is finalized exactly once
and a :class:`PipelineResult` is returned; no exception escapes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from arbitrage.activity import ActivityCollector
from arbitrage.config import Settings, get_settings
from arbitrage.gap_analysis import gap_analysis
from arbitrage.models import Policy, Run
from arbitrage.repository import Repository
from arbitrage.report_generator import generate_reports
from arbitrage.schemas import PolicyInterpretation, PolicySignal
from arbitrage.search import SearchClient
from arbitrage.signal_hunter import discover_global_policies, signal_hunter
from arbitrage.vetting import global_vetting

log = logging.getLogger(__name__)


@dataclass
class PipelineResult:
    run: Run
    policies: list[Policy] = field(default_factory=list)
    success: bool = True
    error: str | None = None


class RunCancelled(Exception):
    """Raised internally when a cancellation request is observed between phases."""


class _Orchestrator:
    def __init__(self, run: Run, repository: Repository, client: SearchClient, settings: Settings):
        self.run = run
        self.repository = repository
        self.client = client
        self.settings = settings
        self.phase: str | None = None
        self.activity = ActivityCollector(
            run.id, repository.insert_activities, repository.update_activity_summary,
        )

    def _check_cancelled(self) -> None:
        if self.repository.is_cancelled(self.run.id):
            raise RunCancelled(self.run.id)

    def begin(self, phase: str) -> None:
        self._check_cancelled()
        self.phase = phase
        self.repository.update_run_phase(self.run.id, phase)
        self.activity.emit(phase, "phase_started")
        log.info("Run %s: phase %s", self.run.id, phase)

    def end(self, count: int) -> None:
        self.activity.emit(self.phase, "phase_completed", item_count=count)

    def complete(self, policies_found: int, high_value_count: int) -> None:
        self._check_cancelled()
        self.repository.update_run_counts(self.run.id, policies_found, high_value_count)
        self.repository.update_run_status(self.run.id, "completed")

    def mark_failed(self, error: str) -> None:
        try:
            if not self.repository.is_cancelled(self.run.id):
                self.repository.update_run_status(self.run.id, "failed", error)
        except Exception:
            log.exception("Failed to record failure for run %s", self.run.id)

    def result(self, policies: list[Policy], success: bool = True, error: str | None = None) -> PipelineResult:
        try:
            run = self.repository.get_run(self.run.id) or self.run
        except Exception:
            log.exception("Failed to reload run %s", self.run.id)
            run = self.run
        return PipelineResult(run=run, policies=policies, success=success, error=error)

    def finalize(self) -> None:
        try:
            self.activity.finalize()
        except Exception:
            log.exception("Failed to persist activity for run %s", self.run.id)

    async def _phases(
        self,
        hunt: Callable[[ActivityCollector], Awaitable[list[PolicySignal]]],
        report_levels: tuple[str, ...],
        count_high_value: Callable[[list[Policy]], int],
    ) -> list[Policy]:
        self.begin("signal_hunter")
        signals = await hunt(self.activity)
        self.end(len(signals))
        if not signals:
            self.complete(0, 0)
            return []

        self.begin("global_vetting")
        vetted = await global_vetting(self.client, signals, activity=self.activity, settings=self.settings)
        self.end(len(vetted))
        if not vetted:
            self.complete(0, 0)
            return []

        self.begin("gap_analysis")
        analyzed = await gap_analysis(self.client, vetted, activity=self.activity, settings=self.settings)
        self.end(len(analyzed))
        reportable = [p for p in analyzed if p.opportunity_value in report_levels]

        self.begin("report_generation")
        policies = await generate_reports(
            self.client, self.repository, reportable,
            run_id=self.run.id, activity=self.activity, settings=self.settings,
        )
        self.end(len(policies))

        high_value = count_high_value(policies)
        self.complete(len(policies), high_value)
        log.info("Run %s complete: %d reports (%d high-value)", self.run.id, len(policies), high_value)
        return policies

    async def execute(
        self,
        hunt: Callable[[ActivityCollector], Awaitable[list[PolicySignal]]],
        report_levels: tuple[str, ...],
        count_high_value: Callable[[list[Policy]], int],
    ) -> PipelineResult:
        policies: list[Policy] = []
        success, error = True, None
        try:
            policies = await self._phases(hunt, report_levels, count_high_value)
        except RunCancelled:
            log.info("Run %s cancelled before %s", self.run.id, self.phase or "start")
            success, error = False, "Run cancelled"
        except Exception as exc:
            error = str(exc) or exc.__class__.__name__
            success = False
            log.exception("Run %s failed during %s", self.run.id, self.phase)
            self.activity.emit(self.phase or "signal_hunter", "api_error", metadata={"error": error})
            self.mark_failed(error)
        finally:
            self.finalize()
        return self.result(policies, success, error)


async def run_research_pipeline(
    countries: list[str],
    *,
    repository: Repository,
    client: SearchClient,
    interpretation: PolicyInterpretation | None = None,
    search_mode: str | None = None,
    search_query: str | None = None,
    settings: Settings | None = None,
) -> PipelineResult:
    """Research a policy concept across ``countries`` and persist the reportable findings."""
    if interpretation is None and search_mode is None:
        search_mode = "broad"
    run = repository.create_run(
        countries, search_mode=search_mode, search_query=search_query, interpretation=interpretation,
    )
    log.info("Run %s: research for %s (mode=%s)", run.id, ", ".join(countries),
             "interpretation" if interpretation else search_mode)

    async def hunt(activity: ActivityCollector) -> list[PolicySignal]:
        return await signal_hunter(
            client, countries,
            interpretation=interpretation, search_mode=search_mode, search_query=search_query,
            activity=activity,
        )

    orchestrator = _Orchestrator(run, repository, client, settings or get_settings())
    return await orchestrator.execute(
        hunt,
        report_levels=("high", "medium"),
        count_high_value=lambda policies: sum(1 for p in policies if p.opportunity_value == "high"),
    )


async def run_discovery_pipeline(
    *,
    repository: Repository,
    client: SearchClient,
    settings: Settings | None = None,
) -> PipelineResult:
    """Country-agnostic scan that only reports high-value opportunities."""
    run = repository.create_run([], run_type="discovery")
    log.info("Run %s: discovery scan", run.id)

    async def hunt(activity: ActivityCollector) -> list[PolicySignal]:
        return await discover_global_policies(client, activity=activity)

    orchestrator = _Orchestrator(run, repository, client, settings or get_settings())
    return await orchestrator.execute(hunt, report_levels=("high",), count_high_value=len)
