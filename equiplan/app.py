from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException
from sqlalchemy.orm import Session

from equiplan import services
from equiplan.config import configure_logging, get_settings
from equiplan.db import init_db, session_generator
from equiplan.errors import (
    InvalidAggregate, PartialAggregateFailure, StoreFailure, Unauthenticated,
)
from equiplan.repository import ScenarioRepository
from equiplan.schemas import (
    DeleteResult,
    EsopIn,
    EsopOut,
    FounderIn,
    FounderOut,
    RoundIn,
    RoundOut,
    ScenarioCreate,
    ScenarioDetail,
    ScenarioListResponse,
    ScenarioOut,
    ScenarioRename,
    StatsOut,
)
from equiplan.store import POLICY_VIOLATION, Identity

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Equiplan",
    version="0.1.0",
    description=(
        "Startup equity scenario API. Each scenario holds founders, funding rounds "
        "and an optional ESOP pool. Callers are identified by the X-User-Id header "
        "set by the authentication proxy; every scenario is visible only to its owner."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Scenarios", "description": "Create, list, rename and delete scenarios."},
        {"name": "Dependents", "description": "Replace the founders, rounds or ESOP pool of a scenario."},
        {"name": "Stats", "description": "Per-user counts."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    yield from session_generator()


def current_identity(x_user_id: str | None = Header(None)) -> Identity | None:
    return services.identity_from(x_user_id)


def scenario_repository(
    session: Session = Depends(db_session),
    identity: Identity | None = Depends(current_identity),
) -> ScenarioRepository:
    return services.repository_for(session, identity)


@contextmanager
def _repository_errors():
    """Translate repository failures into HTTP errors."""
    try:
        yield
    except Unauthenticated as exc:
        raise HTTPException(401, str(exc)) from exc
    except InvalidAggregate as exc:
        raise HTTPException(422, str(exc)) from exc
    except PartialAggregateFailure as exc:
        raise HTTPException(500, exc.to_dict()) from exc
    except StoreFailure as exc:
        status = 403 if exc.code == POLICY_VIOLATION else 502
        raise HTTPException(status, {"error": exc.message, "code": exc.code, "step": exc.step}) from exc


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Stats"], summary="Liveness check")
async def health():
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Scenarios
# ---------------------------------------------------------------------------


@app.get("/api/scenarios", response_model=ScenarioListResponse,
         tags=["Scenarios"], summary="List the caller's scenarios, newest first")
async def list_scenarios(repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        items = [services.aggregate_detail(a) for a in repo.list_scenarios_for_current_user()]
    return {"items": items, "total": len(items)}


@app.post("/api/scenarios", response_model=ScenarioDetail, status_code=201,
          tags=["Scenarios"], summary="Create a scenario with founders, rounds and ESOP pool")
async def create_scenario(body: ScenarioCreate, repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        aggregate = repo.create_scenario_aggregate(body.name, body.founders, body.rounds, body.esop)
    return services.aggregate_detail(aggregate)


@app.get("/api/scenarios/{scenario_id}", response_model=ScenarioDetail,
         tags=["Scenarios"], summary="Get one scenario with its dependents")
async def get_scenario(scenario_id: str, repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        aggregate = repo.get_scenario_aggregate(scenario_id)
    if aggregate is None:
        raise HTTPException(404, "Scenario not found")
    return services.aggregate_detail(aggregate)


@app.put("/api/scenarios/{scenario_id}", response_model=ScenarioOut,
         tags=["Scenarios"], summary="Rename a scenario")
async def rename_scenario(scenario_id: str, body: ScenarioRename,
                          repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        scenario = repo.rename_scenario(scenario_id, body.name)
    if scenario is None:
        raise HTTPException(404, "Scenario not found")
    return services.scenario_summary(scenario)


@app.delete("/api/scenarios/{scenario_id}", response_model=DeleteResult,
            tags=["Scenarios"], summary="Delete a scenario and, by cascade, its dependents")
async def delete_scenario(scenario_id: str, repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        deleted = repo.delete_scenario_aggregate(scenario_id)
    return {"ok": True, "deleted": deleted}


# ---------------------------------------------------------------------------
# Routes: Dependents
# ---------------------------------------------------------------------------


@app.put("/api/scenarios/{scenario_id}/founders", response_model=list[FounderOut],
         tags=["Dependents"], summary="Replace all founders of a scenario")
async def replace_founders(scenario_id: str, body: list[FounderIn],
                           repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        rows = repo.replace_founders(scenario_id, body)
    return services.dependents_out("founders", rows)


@app.put("/api/scenarios/{scenario_id}/rounds", response_model=list[RoundOut],
         tags=["Dependents"], summary="Replace all funding rounds of a scenario")
async def replace_rounds(scenario_id: str, body: list[RoundIn],
                         repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        rows = repo.replace_rounds(scenario_id, body)
    return services.dependents_out("rounds", rows)


@app.put("/api/scenarios/{scenario_id}/esop", response_model=list[EsopOut],
         tags=["Dependents"], summary="Replace the ESOP pool of a scenario (zero or one item)")
async def replace_esop(scenario_id: str, body: list[EsopIn],
                       repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        rows = repo.replace_esop(scenario_id, body)
    return services.dependents_out("esop", rows)


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut,
         tags=["Stats"], summary="Counts of the caller's scenarios and dependents")
async def get_stats(repo: ScenarioRepository = Depends(scenario_repository)):
    with _repository_errors():
        return services.compute_stats(repo)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    configure_logging()
    settings = get_settings()
    uvicorn.run("equiplan.app:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
