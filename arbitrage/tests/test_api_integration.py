"""Integration tests for the FastAPI endpoints.

Uses TestClient with the repository and search client dependencies overridden,
so requests run against an in-memory database and a scripted search backend.
"""
from __future__ import annotations

import json
from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from arbitrage.schemas import ClaimDraft, EvidenceItem, PolicyDraft
from arbitrage.search import SearchError
from arbitrage.tests.helpers import FakeSearchClient, answer

EXTRACT = "Extract specific named policy programs"


@pytest.fixture()
def search(settings) -> FakeSearchClient:
    return FakeSearchClient(settings, [
        (EXTRACT, answer(json.dumps([{"name": "Startup Visa", "category": "Talent Visa"}]))),
        ("success results metrics", answer(
            "Founders arrived [1, 2, 3].",
            ["https://www.gov.ee/visa", "https://www.oecd.org/estonia", "https://web.mit.edu/study"],
        )),
        ("Classification", answer("Classification: ABSENT\nReasoning: No mentions found.")),
    ])


@pytest.fixture()
def client(settings, repository, search):
    """FastAPI TestClient wired to the in-memory repository and the fake search client."""
    from arbitrage.app import app, get_repository, get_search_client

    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_search_client] = lambda: search
    with patch("arbitrage.app.init_db"), \
            patch("arbitrage.app.get_settings", return_value=settings), \
            patch("arbitrage.pipeline.get_settings", return_value=settings):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_policy(repository):
    policy = repository.create_policy_with_evidence(
        PolicyDraft(
            name="Startup Visa", category="Talent Visa", source_country="Estonia",
            opportunity_value="high", status="active", domestic_status="absent",
        ),
        [
            EvidenceItem(url="https://www.oecd.org/a", source_type="oecd_report",
                         evidence_type="success_metric", claim="Worked.", sentiment="positive"),
            EvidenceItem(url="https://news.err.ee/b", evidence_type="criticism",
                         claim="Slow.", sentiment="negative"),
            EvidenceItem(url="https://www.gov.ie/c", source_type="gov_doc", evidence_type="adoption_rate",
                         claim="Not adopted.", sentiment="neutral", is_domestic_source=True,
                         domestic_domain="gov.ie"),
        ],
        [ClaimDraft(claim_type="gap_statement", claim_text="Absent in Ireland.", evidence_indices=[2])],
    )
    return policy


class TestResearchEndpoints:
    def test_overview(self, client, settings):
        resp = client.get("/api/research")
        assert resp.status_code == 200
        data = resp.json()
        assert data["active_run"] is None
        assert data["recent_runs"] == []
        assert data["available_countries"] == settings.peer_countries

    def test_start_research(self, client, repository):
        resp = client.post("/api/research", json={
            "countries": ["Estonia"], "search_mode": "reverse", "search_query": "startup visa",
        })
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["run"]["status"] == "completed"
        assert data["run"]["activity_summary"]["outcome"] == "policies_found"
        assert [p["slug"] for p in data["policies"]] == ["startup-visa"]
        assert repository.get_active_run() is None

    def test_invalid_country(self, client):
        resp = client.post("/api/research", json={"countries": ["Estonia", "Atlantis"]})
        assert resp.status_code == 400
        assert "Atlantis" in resp.json()["detail"]

    def test_empty_countries_rejected(self, client):
        assert client.post("/api/research", json={"countries": []}).status_code == 422

    def test_conflict_when_run_active(self, client, repository):
        active = repository.create_run(["Finland"])
        resp = client.post("/api/research", json={"countries": ["Estonia"]})
        assert resp.status_code == 409
        assert active.id in resp.json()["detail"]

    def test_get_run(self, client, repository):
        run = repository.create_run(["Estonia"], search_mode="topic", search_query="ai")
        resp = client.get(f"/api/research/{run.id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["run"]["countries"] == ["Estonia"]
        assert data["run"]["search_query"] == "ai"
        assert data["policies"] == []

    def test_get_run_404(self, client):
        assert client.get("/api/research/missing").status_code == 404

    def test_cancel(self, client, repository):
        run = repository.create_run(["Estonia"])
        resp = client.delete(f"/api/research/{run.id}")
        assert resp.status_code == 200
        assert resp.json()["status"] == "cancelled"
        again = client.delete(f"/api/research/{run.id}")
        assert again.status_code == 400
        assert "cancelled" in again.json()["detail"]

    def test_activity_report(self, client):
        run_id = client.post("/api/research", json={
            "countries": ["Estonia"], "search_mode": "reverse", "search_query": "startup visa",
        }).json()["run"]["id"]

        brief = client.get(f"/api/research/{run_id}/activity").json()
        assert brief["summary"]["funnel"]["policies_reported"] == 1
        assert "events" not in brief

        detailed = client.get(f"/api/research/{run_id}/activity", params={"detailed": True}).json()
        assert detailed["events"][0]["event_type"] == "phase_started"
        assert any(e["event_type"] == "signal_found" for e in detailed["events"])


class TestInterpret:
    def test_interpret(self, client, search):
        search.rules.insert(0, ("Policy idea", answer(json.dumps({
            "policy_name": "Startup Visa", "also_known_as": ["Founder Visa"], "category": "Talent Visa",
            "summary": "Residency for founders.", "levers": {"mechanism": "visa"},
        }))))
        resp = client.post("/api/research/interpret", json={"idea_text": "let foreign founders move here"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["policy_name"] == "Startup Visa"
        assert data["original_input"] == "let foreign founders move here"

    def test_short_idea_rejected(self, client):
        assert client.post("/api/research/interpret", json={"idea_text": "   tiny   "}).status_code == 422

    def test_upstream_failure(self, client, search):
        search.rules.insert(0, ("Policy idea", SearchError("Perplexity API error: 500")))
        resp = client.post("/api/research/interpret", json={"idea_text": "let foreign founders move here"})
        assert resp.status_code == 500


class TestClone:
    def test_clone_search_brief(self, client, repository):
        source = repository.create_run(["Finland"], search_mode="reverse", search_query="startup visa")
        repository.update_run_status(source.id, "completed")

        resp = client.post(f"/api/research/{source.id}/clone", json={"countries": ["Estonia"]})

        assert resp.status_code == 200
        run = resp.json()["run"]
        assert run["id"] != source.id
        assert run["countries"] == ["Estonia"]
        assert (run["search_mode"], run["search_query"]) == ("reverse", "startup visa")

    def test_clone_without_brief(self, client, repository):
        source = repository.create_run(["Finland"])
        repository.update_run_status(source.id, "completed")
        resp = client.post(f"/api/research/{source.id}/clone", json={"countries": ["Estonia"]})
        assert resp.status_code == 400

    def test_clone_missing_run(self, client):
        assert client.post("/api/research/missing/clone", json={"countries": ["Estonia"]}).status_code == 404


class TestCron:
    def test_requires_secret(self, client, settings):
        settings.cron_secret = "s3cret"
        assert client.get("/api/cron/discover").status_code == 401
        assert client.get("/api/cron/discover", headers={"Authorization": "Bearer wrong"}).status_code == 401

    def test_runs_discovery(self, client, settings):
        settings.cron_secret = "s3cret"
        resp = client.get("/api/cron/discover", headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200
        assert resp.json()["run"]["run_type"] == "discovery"


class TestPolicyEndpoints:
    def test_list_and_filter(self, client, seeded_policy):
        assert [p["slug"] for p in client.get("/api/policies").json()] == ["startup-visa"]
        assert client.get("/api/policies", params={"source_country": "Finland"}).json() == []
        assert len(client.get("/api/policies", params={"top_only": True}).json()) == 1

    def test_detail_groups_evidence(self, client, seeded_policy):
        resp = client.get("/api/policies/startup-visa")
        assert resp.status_code == 200
        data = resp.json()
        assert [len(data["evidence"][k]) for k in ("success_metrics", "criticisms", "domestic_sources")] == [1, 1, 1]
        assert data["evidence"]["domestic_sources"][0]["domestic_domain"] == "gov.ie"
        assert data["claims"][0]["claim_text"] == "Absent in Ireland."
        assert len(data["claims"][0]["evidence_ids"]) == 1

    def test_detail_404(self, client):
        assert client.get("/api/policies/nope").status_code == 404

    def test_update_status(self, client, seeded_policy):
        resp = client.patch("/api/policies/startup-visa", json={"status": "archived"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "archived"
        assert client.patch("/api/policies/startup-visa", json={"status": "deleted"}).status_code == 422
        assert client.patch("/api/policies/nope", json={"status": "active"}).status_code == 404
