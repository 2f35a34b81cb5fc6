"""End-to-end tests of the research and discovery pipelines against a fake search backend."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock, patch

import pytest

from arbitrage.pipeline import run_discovery_pipeline, run_research_pipeline
from arbitrage.tests.helpers import FakeSearchClient, answer
from arbitrage.vetting import global_vetting

EXTRACT = "Extract specific named policy programs"
SUCCESS = "success results metrics"
CRITICISM = "criticism failure"
DOMESTIC = "Classification"


def _extraction(*names: str) -> str:
    return json.dumps([{"name": n, "category": "Talent Visa", "description": f"{n} program."} for n in names])


def _strong_success():
    return answer(
        "Founders arrived in large numbers [1, 2, 3].",
        ["https://www.gov.ee/visa", "https://www.oecd.org/estonia", "https://web.mit.edu/study"],
    )


@pytest.fixture()
def full_client(settings) -> FakeSearchClient:
    return FakeSearchClient(settings, [
        (EXTRACT, answer(_extraction("Startup Visa"))),
        (SUCCESS, _strong_success()),
        (CRITICISM, answer("")),
        (DOMESTIC, answer("Classification: ABSENT\nReasoning: No mentions found.")),
    ])


def _summary(repository, run_id) -> dict:
    return json.loads(repository.get_run(run_id).activity_summary_json)


class TestResearchPipeline:
    @pytest.mark.asyncio
    async def test_happy_path_reports_high_value_policy(self, settings, repository, full_client):
        result = await run_research_pipeline(
            ["Estonia"], repository=repository, client=full_client,
            search_mode="reverse", search_query="startup visa", settings=settings,
        )

        assert result.success is True
        assert result.error is None
        assert [p.slug for p in result.policies] == ["startup-visa"]
        run = result.run
        assert run.status == "completed"
        assert run.current_phase == "report_generation"
        assert (run.policies_found, run.high_value_count) == (1, 1)
        assert run.completed_at is not None

        policy = repository.get_policy_by_slug("startup-visa")
        assert policy.opportunity_value == "high"
        assert policy.domestic_status == "absent"
        assert policy.domestic_notes == "No mentions found."
        assert policy.status == "active"
        assert len(policy.evidence) == 3

        summary = _summary(repository, run.id)
        assert summary["outcome"] == "policies_found"
        assert summary["funnel"] == {
            "signals_found": 1, "signals_vetted": 1, "signals_analyzed": 1, "policies_reported": 1,
        }
        assert set(summary["timing"]["phase_timings"]) == {
            "signal_hunter", "global_vetting", "gap_analysis", "report_generation",
        }

    @pytest.mark.asyncio
    async def test_activity_written_once(self, settings, repository, full_client):
        result = await run_research_pipeline(
            ["Estonia"], repository=repository, client=full_client,
            search_mode="reverse", search_query="startup visa", settings=settings,
        )
        rows = repository.get_run_activities(result.run.id)
        started = [r.phase for r in rows if r.event_type == "phase_started"]
        assert started == ["signal_hunter", "global_vetting", "gap_analysis", "report_generation"]

    @pytest.mark.asyncio
    async def test_defaults_to_broad_mode(self, settings, repository, fake_client):
        result = await run_research_pipeline(["Estonia"], repository=repository, client=fake_client, settings=settings)
        assert result.run.search_mode == "broad"
        assert len([c for c in fake_client.calls if EXTRACT not in c]) == 8

    @pytest.mark.asyncio
    async def test_no_signals_completes_early(self, settings, repository, fake_client):
        result = await run_research_pipeline(
            ["Estonia"], repository=repository, client=fake_client,
            search_mode="reverse", search_query="nothing", settings=settings,
        )

        assert result.success is True
        assert result.policies == []
        assert result.run.status == "completed"
        assert result.run.current_phase == "signal_hunter"
        summary = _summary(repository, result.run.id)
        assert summary["outcome"] == "no_implementations"

    @pytest.mark.asyncio
    async def test_all_rejected_at_vetting(self, settings, repository):
        client = FakeSearchClient(settings, [(EXTRACT, answer(_extraction("Startup Visa")))])

        result = await run_research_pipeline(
            ["Estonia"], repository=repository, client=client,
            search_mode="reverse", search_query="startup visa", settings=settings,
        )

        assert result.run.status == "completed"
        assert result.run.current_phase == "global_vetting"
        summary = _summary(repository, result.run.id)
        assert summary["outcome"] == "no_evidence"
        assert summary["rejections"]["at_vetting"] == 1

    @pytest.mark.asyncio
    async def test_existing_policy_is_not_reported(self, settings, repository):
        client = FakeSearchClient(settings, [
            (EXTRACT, answer(_extraction("Startup Visa"))),
            (SUCCESS, _strong_success()),
            (DOMESTIC, answer("Classification: EXISTS")),
        ])

        result = await run_research_pipeline(
            ["Estonia"], repository=repository, client=client,
            search_mode="reverse", search_query="startup visa", settings=settings,
        )

        assert result.policies == []
        assert result.run.status == "completed"
        assert result.run.policies_found == 0
        assert repository.get_policies() == []

    @pytest.mark.asyncio
    async def test_phase_failure_marks_run_failed(self, settings, repository, full_client):
        with patch("arbitrage.pipeline.gap_analysis", new=AsyncMock(side_effect=RuntimeError("db locked"))):
            result = await run_research_pipeline(
                ["Estonia"], repository=repository, client=full_client,
                search_mode="reverse", search_query="startup visa", settings=settings,
            )

        assert result.success is False
        assert result.error == "db locked"
        assert result.run.status == "failed"
        assert result.run.error_message == "db locked"
        summary = _summary(repository, result.run.id)
        assert summary["outcome"] == "error"
        assert summary["outcome_reason"] == "Pipeline encountered an error: db locked"

    @pytest.mark.asyncio
    async def test_cancellation_between_phases(self, settings, repository, full_client):
        async def vet_then_cancel(client, signals, *, activity, settings):
            vetted = await global_vetting(client, signals, activity=activity, settings=settings)
            repository.cancel_run(activity.run_id)
            return vetted

        with patch("arbitrage.pipeline.global_vetting", new=vet_then_cancel), \
                patch.object(repository, "insert_activities", wraps=repository.insert_activities) as insert:
            result = await run_research_pipeline(
                ["Estonia"], repository=repository, client=full_client,
                search_mode="reverse", search_query="startup visa", settings=settings,
            )

        assert result.success is False
        assert result.error == "Run cancelled"
        assert result.run.status == "cancelled"
        assert result.run.current_phase == "global_vetting"
        assert repository.get_policies() == []
        assert not any("equivalent to" in call for call in full_client.calls)
        assert repository.get_run(result.run.id).activity_summary_json is not None
        assert insert.call_count == 1

    @pytest.mark.asyncio
    async def test_failure_bookkeeping_error_still_finalizes(self, settings, repository, full_client):
        with patch("arbitrage.pipeline.gap_analysis", new=AsyncMock(side_effect=RuntimeError("db locked"))), \
                patch.object(repository, "update_run_status", side_effect=RuntimeError("db down")), \
                patch.object(repository, "insert_activities", wraps=repository.insert_activities) as insert:
            result = await run_research_pipeline(
                ["Estonia"], repository=repository, client=full_client,
                search_mode="reverse", search_query="startup visa", settings=settings,
            )

        assert result.success is False
        assert result.error == "db locked"
        assert result.run.status == "running"
        assert insert.call_count == 1
        summary = _summary(repository, result.run.id)
        assert summary["outcome"] == "error"

    @pytest.mark.asyncio
    async def test_activity_flush_failure_does_not_raise(self, settings, repository, full_client):
        with patch.object(repository, "insert_activities", side_effect=RuntimeError("disk full")):
            result = await run_research_pipeline(
                ["Estonia"], repository=repository, client=full_client,
                search_mode="reverse", search_query="startup visa", settings=settings,
            )
        assert result.success is True
        assert result.run.status == "completed"


class TestDiscoveryPipeline:
    @pytest.mark.asyncio
    async def test_reports_only_high_value(self, settings, repository):
        client = FakeSearchClient(settings, [
            (EXTRACT, answer(_extraction("Startup Visa"))),
            ("global policy research analyst", answer("A visa launched by Estonia government.")),
            (SUCCESS, _strong_success()),
            (DOMESTIC, answer("Classification: ABSENT")),
        ])

        result = await run_discovery_pipeline(repository=repository, client=client, settings=settings)

        assert result.success is True
        assert result.run.run_type == "discovery"
        assert json.loads(result.run.countries_json) == []
        assert [p.source_country for p in result.policies] == ["Estonia"]
        assert result.run.high_value_count == 1

    @pytest.mark.asyncio
    async def test_medium_opportunities_are_skipped(self, settings, repository):
        client = FakeSearchClient(settings, [
            (EXTRACT, answer(_extraction("Startup Visa"))),
            ("global policy research analyst", answer("A visa launched by Estonia government.")),
            (SUCCESS, _strong_success()),
            (DOMESTIC, answer("Classification: DISCUSSED_BUT_REJECTED")),
        ])

        result = await run_discovery_pipeline(repository=repository, client=client, settings=settings)

        assert result.policies == []
        assert result.run.status == "completed"
        assert result.run.high_value_count == 0
