from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP

from equiplan import services
from equiplan.config import configure_logging, get_settings
from equiplan.db import init_db, session_scope
from equiplan.errors import PartialAggregateFailure, RepositoryError, StoreFailure
from equiplan.schemas import EsopIn, FounderIn, RoundIn

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def equiplan_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Equiplan",
    instructions=(
        "Equiplan stores startup equity scenarios: founders with equity percentages, "
        "funding rounds with investment and post-money valuation, and an optional ESOP pool. "
        "Start with list_scenarios(), then get_scenario(id) for one scenario. "
        "All tools act as the user configured in EQUIPLAN_USER_ID."
    ),
    lifespan=equiplan_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _repository():
    identity = services.identity_from(get_settings().mcp_user_id)
    with session_scope() as session:
        yield services.repository_for(session, identity)


def _error(exc: RepositoryError) -> dict:
    if isinstance(exc, PartialAggregateFailure):
        return exc.to_dict()
    if isinstance(exc, StoreFailure):
        return {"error": exc.message, "code": exc.code, "step": exc.step}
    return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("equiplan://overview")
def equiplan_overview() -> str:
    """Overview of Equiplan: data model and write semantics."""
    return json.dumps({
        "system": "Equiplan: startup equity scenarios",
        "data_model": {
            "scenario": "Named, user-owned container. Only its owner can see or change it.",
            "founder": "name + equity_percentage (stored as given, conventionally 0-100).",
            "round": "round_name + investment_amount + valuation (post-money).",
            "esop": "Optional single option pool percentage per scenario.",
        },
        "write_semantics": [
            "create_scenario inserts the scenario, then founders, rounds and esop in order.",
            "A failure after the scenario insert leaves a partial scenario; the error lists committed steps.",
            "replace_* deletes the existing set, then inserts the new one; an empty list clears it.",
            "delete_scenario removes the scenario and all of its dependents.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Scenarios
# ---------------------------------------------------------------------------


@mcp.tool()
def list_scenarios() -> list[dict] | dict:
    """List the current user's scenarios with founders, rounds and ESOP, newest first."""
    with _repository() as repo:
        try:
            return [services.aggregate_detail(a) for a in repo.list_scenarios_for_current_user()]
        except RepositoryError as exc:
            return _error(exc)


@mcp.tool()
def get_scenario(scenario_id: str) -> dict:
    """Get one scenario with its founders, rounds and ESOP pool."""
    with _repository() as repo:
        try:
            aggregate = repo.get_scenario_aggregate(scenario_id)
        except RepositoryError as exc:
            return _error(exc)
        if aggregate is None:
            return {"error": f"Scenario {scenario_id} not found"}
        return services.aggregate_detail(aggregate)


@mcp.tool()
def create_scenario(
    name: str, founders: list[dict], rounds: list[dict] | None = None,
    esop_percentage: float | None = None,
) -> dict:
    """Create a scenario.

    Args:
        name: Scenario name.
        founders: List of {"name": str, "equity_percentage": float}.
        rounds: List of {"round_name": str, "investment_amount": float, "valuation": float}.
        esop_percentage: Option pool size in percent; omit or 0 for no pool.
    """
    name = name.strip()
    if not name:
        return {"error": "Scenario name must not be blank"}
    try:
        founder_items = [FounderIn(**f) for f in founders]
        round_items = [RoundIn(**r) for r in rounds or []]
        esop = EsopIn(percentage=esop_percentage) if esop_percentage else None
    except ValueError as exc:
        return {"error": f"Invalid input: {exc}"}
    with _repository() as repo:
        try:
            aggregate = repo.create_scenario_aggregate(name, founder_items, round_items, esop)
        except RepositoryError as exc:
            return _error(exc)
        return services.aggregate_detail(aggregate)


@mcp.tool()
def rename_scenario(scenario_id: str, name: str) -> dict:
    """Rename a scenario."""
    name = name.strip()
    if not name:
        return {"error": "Scenario name must not be blank"}
    with _repository() as repo:
        try:
            scenario = repo.rename_scenario(scenario_id, name)
        except RepositoryError as exc:
            return _error(exc)
        if scenario is None:
            return {"error": f"Scenario {scenario_id} not found"}
        return services.scenario_summary(scenario)


@mcp.tool()
def delete_scenario(scenario_id: str) -> dict:
    """Delete a scenario together with its founders, rounds and ESOP pool."""
    with _repository() as repo:
        try:
            deleted = repo.delete_scenario_aggregate(scenario_id)
        except RepositoryError as exc:
            return _error(exc)
        return {"ok": True, "deleted": deleted, "scenario_id": scenario_id}


# ---------------------------------------------------------------------------
# Tools: Dependents
# ---------------------------------------------------------------------------


@mcp.tool()
def replace_founders(scenario_id: str, founders: list[dict]) -> list[dict] | dict:
    """Replace all founders of a scenario. An empty list removes every founder."""
    try:
        items = [FounderIn(**f) for f in founders]
    except ValueError as exc:
        return {"error": f"Invalid input: {exc}"}
    with _repository() as repo:
        try:
            return services.dependents_out("founders", repo.replace_founders(scenario_id, items))
        except RepositoryError as exc:
            return _error(exc)


@mcp.tool()
def replace_rounds(scenario_id: str, rounds: list[dict]) -> list[dict] | dict:
    """Replace all funding rounds of a scenario. An empty list removes every round."""
    try:
        items = [RoundIn(**r) for r in rounds]
    except ValueError as exc:
        return {"error": f"Invalid input: {exc}"}
    with _repository() as repo:
        try:
            return services.dependents_out("rounds", repo.replace_rounds(scenario_id, items))
        except RepositoryError as exc:
            return _error(exc)


@mcp.tool()
def replace_esop(scenario_id: str, percentage: float | None = None) -> list[dict] | dict:
    """Set the ESOP pool of a scenario; omit ``percentage`` to remove it."""
    try:
        items = [EsopIn(percentage=percentage)] if percentage is not None else []
    except ValueError as exc:
        return {"error": f"Invalid input: {exc}"}
    with _repository() as repo:
        try:
            return services.dependents_out("esop", repo.replace_esop(scenario_id, items))
        except RepositoryError as exc:
            return _error(exc)


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Count the current user's scenarios, founders, rounds and ESOP pools."""
    with _repository() as repo:
        try:
            return services.compute_stats(repo)
        except RepositoryError as exc:
            return _error(exc)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Equiplan MCP server over stdio."""
    configure_logging(stderr=True)
    mcp.run()


if __name__ == "__main__":
    main()
