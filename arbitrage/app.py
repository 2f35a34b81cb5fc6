from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, HTTPException, Query

from arbitrage import services
from arbitrage.config import get_settings
from arbitrage.db import init_db
from arbitrage.pipeline import run_discovery_pipeline, run_research_pipeline
from arbitrage.repository import Repository
from arbitrage.schemas import (
    CloneRequest,
    InterpretRequest,
    PipelineResultOut,
    PolicyDetail,
    PolicyInterpretation,
    PolicyOut,
    PolicyStatusUpdate,
    ResearchRequest,
    RunOut,
)
from arbitrage.search import InterpretationError, SearchClient, SearchError, interpret_policy_idea

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Policy Arbitrage Engine",
    version="0.1.0",
    description=(
        "Research whether a policy concept has been implemented in peer countries, "
        "gather evidence of success and criticism, check for a domestic equivalent "
        "and publish opportunity reports. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Research", "description": "Start, inspect, cancel and clone research runs. Requires PERPLEXITY_API_KEY."},
        {"name": "Policies", "description": "Browse and curate reported policies."},
        {"name": "Discovery", "description": "Scheduled country-agnostic discovery scans."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_repository() -> Repository:
    return Repository()


def get_search_client() -> SearchClient:
    return SearchClient()


def _run_or_404(repository: Repository, run_id: str):
    run = repository.get_run(run_id)
    if run is None:
        raise HTTPException(404, "Run not found")
    return run


def _check_countries(countries: list[str]) -> None:
    invalid = services.invalid_countries(countries, get_settings())
    if invalid:
        raise HTTPException(400, f"Invalid countries: {', '.join(invalid)}")


def _ensure_no_active_run(repository: Repository) -> None:
    active = repository.get_active_run()
    if active is not None:
        raise HTTPException(409, f"Research run {active.id} is already in progress")


# ---------------------------------------------------------------------------
# Routes: Research
# ---------------------------------------------------------------------------


@app.get("/api/research", tags=["Research"], summary="Active run, recent runs and available countries")
async def research_overview(repository: Repository = Depends(get_repository)):
    active = repository.get_active_run()
    return {
        "active_run": services.run_summary(active) if active else None,
        "recent_runs": [services.run_summary(r) for r in repository.get_recent_runs()],
        "available_countries": get_settings().peer_countries,
    }


@app.post("/api/research", response_model=PipelineResultOut,
          tags=["Research"], summary="Run the research pipeline")
async def start_research(
    body: ResearchRequest,
    repository: Repository = Depends(get_repository),
    client: SearchClient = Depends(get_search_client),
):
    _check_countries(body.countries)
    _ensure_no_active_run(repository)
    result = await run_research_pipeline(
        body.countries,
        repository=repository,
        client=client,
        interpretation=body.interpretation,
        search_mode=body.search_mode,
        search_query=body.search_query,
    )
    return services.pipeline_result(result)


@app.post("/api/research/interpret", response_model=PolicyInterpretation,
          tags=["Research"], summary="Turn a free-text policy idea into a research brief")
async def interpret(body: InterpretRequest, client: SearchClient = Depends(get_search_client)):
    try:
        return await interpret_policy_idea(client, body.idea_text)
    except (InterpretationError, SearchError) as exc:
        log.warning("Interpretation failed: %s", exc)
        raise HTTPException(500, f"Failed to interpret policy idea: {exc}")


@app.get("/api/research/{run_id}", tags=["Research"], summary="Get a run and its reported policies")
async def get_research(run_id: str, repository: Repository = Depends(get_repository)):
    run = _run_or_404(repository, run_id)
    return {
        "run": services.run_summary(run),
        "policies": [services.policy_summary(p) for p in repository.get_policies(run_id=run_id)],
    }


@app.delete("/api/research/{run_id}", response_model=RunOut,
            tags=["Research"], summary="Cancel a running research run")
async def cancel_research(run_id: str, repository: Repository = Depends(get_repository)):
    run = _run_or_404(repository, run_id)
    if run.status != "running" or not repository.cancel_run(run_id):
        raise HTTPException(400, f"Run is not running (status: {run.status})")
    return services.run_summary(repository.get_run(run_id))


@app.post("/api/research/{run_id}/clone", response_model=PipelineResultOut,
          tags=["Research"], summary="Re-run a previous research brief against other countries")
async def clone_research(
    run_id: str,
    body: CloneRequest,
    repository: Repository = Depends(get_repository),
    client: SearchClient = Depends(get_search_client),
):
    source = _run_or_404(repository, run_id)
    interpretation = services.stored_interpretation(source)
    if interpretation is None and not source.search_mode:
        raise HTTPException(400, "Run has no stored research brief to clone")
    _check_countries(body.countries)
    _ensure_no_active_run(repository)
    result = await run_research_pipeline(
        body.countries,
        repository=repository,
        client=client,
        interpretation=interpretation,
        search_mode=None if interpretation else source.search_mode,
        search_query=None if interpretation else source.search_query,
    )
    return services.pipeline_result(result)


@app.get("/api/research/{run_id}/activity", tags=["Research"], summary="Activity report for a run")
async def research_activity(
    run_id: str,
    detailed: bool = Query(False),
    repository: Repository = Depends(get_repository),
):
    run = _run_or_404(repository, run_id)
    report = {
        "run_id": run.id,
        "status": run.status,
        "summary": services.run_summary(run)["activity_summary"],
    }
    if detailed:
        report["events"] = [services.activity_event(a) for a in repository.get_run_activities(run_id)]
    return report


# ---------------------------------------------------------------------------
# Routes: Discovery
# ---------------------------------------------------------------------------


@app.get("/api/cron/discover", response_model=PipelineResultOut,
         tags=["Discovery"], summary="Run a discovery scan (cron)")
async def cron_discover(
    authorization: str | None = Header(None),
    repository: Repository = Depends(get_repository),
    client: SearchClient = Depends(get_search_client),
):
    secret = get_settings().cron_secret
    if secret and authorization != f"Bearer {secret}":
        raise HTTPException(401, "Unauthorized")
    _ensure_no_active_run(repository)
    result = await run_discovery_pipeline(repository=repository, client=client)
    return services.pipeline_result(result)


# ---------------------------------------------------------------------------
# Routes: Policies
# ---------------------------------------------------------------------------


@app.get("/api/policies", response_model=list[PolicyOut],
         tags=["Policies"], summary="List reported policies")
async def list_policies(
    status: str | None = Query(None),
    domestic_status: str | None = Query(None),
    opportunity_value: str | None = Query(None),
    source_country: str | None = Query(None),
    limit: int | None = Query(None, ge=1, le=500),
    top_only: bool = Query(False),
    repository: Repository = Depends(get_repository),
):
    if top_only:
        policies = repository.get_high_value_policies()
    else:
        policies = repository.get_policies(
            status=status, domestic_status=domestic_status,
            opportunity_value=opportunity_value, source_country=source_country, limit=limit,
        )
    return [services.policy_summary(p) for p in policies]


@app.get("/api/policies/{slug}", response_model=PolicyDetail,
         tags=["Policies"], summary="Get a policy report with grouped evidence")
async def get_policy(slug: str, repository: Repository = Depends(get_repository)):
    policy = repository.get_policy_by_slug(slug)
    if policy is None:
        raise HTTPException(404, "Policy not found")
    return services.policy_detail(policy)


@app.patch("/api/policies/{slug}", response_model=PolicyOut,
           tags=["Policies"], summary="Change a policy's lifecycle status")
async def update_policy(slug: str, body: PolicyStatusUpdate, repository: Repository = Depends(get_repository)):
    policy = repository.update_policy_status(slug, body.status)
    if policy is None:
        raise HTTPException(404, "Policy not found")
    return services.policy_summary(policy)


def main():
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run("arbitrage.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
