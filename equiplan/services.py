"""Shared helpers for the Equiplan API and MCP server."""
from __future__ import annotations

from datetime import datetime
from typing import Iterable

from sqlalchemy.orm import Session

from equiplan.models import EsopPool, Founder, FundingRound, Scenario
from equiplan.repository import ScenarioAggregate, ScenarioRepository
from equiplan.store import Identity, RowStore

# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


def repository_for(session: Session, identity: Identity | None) -> ScenarioRepository:
    """Repository bound to one caller for the lifetime of ``session``."""
    return ScenarioRepository(RowStore(session, identity))


def identity_from(user_id: str | None) -> Identity | None:
    user_id = (user_id or "").strip()
    return Identity(user_id=user_id) if user_id else None


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def scenario_summary(scenario: Scenario) -> dict:
    return {
        "id": scenario.id, "owner_id": scenario.owner_id, "name": scenario.name,
        "created_at": _iso(scenario.created_at), "updated_at": _iso(scenario.updated_at),
    }


def founder_out(f: Founder) -> dict:
    return {"id": f.id, "scenario_id": f.scenario_id, "name": f.name,
            "equity_percentage": f.equity_percentage}


def round_out(r: FundingRound) -> dict:
    return {"id": r.id, "scenario_id": r.scenario_id, "round_name": r.round_name,
            "investment_amount": r.investment_amount, "valuation": r.valuation}


def esop_out(e: EsopPool) -> dict:
    return {"id": e.id, "scenario_id": e.scenario_id, "percentage": e.percentage}


def aggregate_detail(agg: ScenarioAggregate) -> dict:
    base = scenario_summary(agg.scenario)
    base["founders"] = [founder_out(f) for f in agg.founders]
    base["rounds"] = [round_out(r) for r in agg.rounds]
    base["esop"] = esop_out(agg.esop) if agg.esop else None
    base["founder_count"] = len(agg.founders)
    base["round_count"] = len(agg.rounds)
    return base


def dependents_out(table: str, rows: Iterable) -> list[dict]:
    serialize = {"founders": founder_out, "rounds": round_out, "esop": esop_out}[table]
    return [serialize(row) for row in rows]


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def compute_stats(repo: ScenarioRepository) -> dict:
    aggregates = repo.list_scenarios_for_current_user()
    return {
        "scenarios": len(aggregates),
        "founders": sum(len(a.founders) for a in aggregates),
        "rounds": sum(len(a.rounds) for a in aggregates),
        "esop_pools": sum(1 for a in aggregates if a.esop is not None),
    }
