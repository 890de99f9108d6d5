"""Scenario aggregate repository.

A scenario and its dependents (founders, rounds, one optional ESOP pool) are
read and written as one logical unit through a ``RowStore``. Writes that span
several tables run as a fixed sequence of independent store calls:

    create:   scenarios -> founders -> rounds -> esop
    replace:  delete <dependents> -> insert <dependents>

Each call commits on its own and nothing is rolled back. When a step fails
after an earlier one committed, ``PartialAggregateFailure`` reports which
steps are already stored so the caller can retry the failed step or delete
the partial scenario.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping

from pydantic import BaseModel

from equiplan.errors import (
    InvalidAggregate, PartialAggregateFailure, StoreError, StoreFailure, Unauthenticated,
)
from equiplan.models import EsopPool, Founder, FundingRound, Scenario
from equiplan.store import Identity, RowStore

log = logging.getLogger(__name__)

DEPENDENT_TABLES = ("founders", "rounds", "esop")

Item = BaseModel | Mapping[str, Any]


@dataclass
class ScenarioAggregate:
    scenario: Scenario
    founders: list[Founder] = field(default_factory=list)
    rounds: list[FundingRound] = field(default_factory=list)
    esop: EsopPool | None = None

    @property
    def id(self) -> str:
        return self.scenario.id

    @property
    def name(self) -> str:
        return self.scenario.name

    @classmethod
    def from_scenario(cls, scenario: Scenario) -> ScenarioAggregate:
        """Build from a scenario row fetched with its dependents embedded."""
        return cls(
            scenario=scenario,
            founders=list(scenario.founders),
            rounds=list(scenario.rounds),
            esop=scenario.esop[0] if scenario.esop else None,
        )


def _as_row(item: Item) -> dict[str, Any]:
    if isinstance(item, BaseModel):
        return item.model_dump()
    return dict(item)


def _dependent_rows(items: Iterable[Item], scenario_id: str) -> list[dict[str, Any]]:
    # Replaced sets always get fresh ids; a caller echoing back fetched rows must not reuse them.
    rows = []
    for item in items:
        row = _as_row(item)
        row.pop("id", None)
        row["scenario_id"] = scenario_id
        rows.append(row)
    return rows


class ScenarioRepository:
    """Ownership-scoped CRUD over the scenario aggregate."""

    def __init__(self, store: RowStore):
        self._store = store

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_scenarios_for_current_user(self) -> list[ScenarioAggregate]:
        """All of the caller's scenarios with dependents, newest first."""
        identity = self._require_identity()
        scenarios = self._call(
            "list", self._store.select, "scenarios", {"owner_id": identity.user_id},
            embed=DEPENDENT_TABLES, order_by=("created_at", "desc"),
        )
        return [ScenarioAggregate.from_scenario(s) for s in scenarios]

    def get_scenario_aggregate(self, scenario_id: str) -> ScenarioAggregate | None:
        self._require_identity()
        scenarios = self._call(
            "get", self._store.select, "scenarios", {"id": scenario_id}, embed=DEPENDENT_TABLES,
        )
        return ScenarioAggregate.from_scenario(scenarios[0]) if scenarios else None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_scenario_aggregate(
        self, name: str, founders: Iterable[Item] = (), rounds: Iterable[Item] = (),
        esop: Item | None = None,
    ) -> ScenarioAggregate:
        """Insert a scenario, then its founders, rounds and ESOP pool, in that order."""
        identity = self._require_identity()
        founders, rounds = list(founders), list(rounds)

        [scenario] = self._call(
            "scenario", self._store.insert, "scenarios", [{"name": name, "owner_id": identity.user_id}],
        )
        aggregate = ScenarioAggregate(scenario=scenario)
        committed = ["scenario"]

        aggregate.founders = self._insert_dependents("founders", founders, scenario.id, committed)
        committed.append("founders")
        aggregate.rounds = self._insert_dependents("rounds", rounds, scenario.id, committed)
        committed.append("rounds")
        if esop is not None:
            [aggregate.esop] = self._insert_dependents("esop", [esop], scenario.id, committed)

        log.info(
            "Created scenario %s (%d founders, %d rounds, esop=%s)",
            scenario.id, len(aggregate.founders), len(aggregate.rounds), aggregate.esop is not None,
        )
        return aggregate

    def rename_scenario(self, scenario_id: str, name: str) -> Scenario | None:
        """Change the scenario name. Returns None when no visible row matched."""
        self._require_identity()
        rows = self._call("rename", self._store.update, "scenarios", {"id": scenario_id}, {"name": name})
        return rows[0] if rows else None

    def delete_scenario_aggregate(self, scenario_id: str) -> bool:
        """Delete the scenario row; dependents go with it via the FK cascade.

        A zero-row delete (missing or not owned) is still a success; the
        return value only says whether a row was removed.
        """
        self._require_identity()
        removed = self._call("delete", self._store.delete, "scenarios", {"id": scenario_id})
        log.info("Deleted scenario %s (rows=%d)", scenario_id, removed)
        return removed > 0

    def replace_founders(self, scenario_id: str, founders: Iterable[Item]) -> list[Founder]:
        return self._replace("founders", scenario_id, founders)

    def replace_rounds(self, scenario_id: str, rounds: Iterable[Item]) -> list[FundingRound]:
        return self._replace("rounds", scenario_id, rounds)

    def replace_esop(self, scenario_id: str, esop: Iterable[Item]) -> list[EsopPool]:
        esop = list(esop)
        if len(esop) > 1:
            raise InvalidAggregate(f"A scenario has at most one ESOP pool (got {len(esop)})")
        return self._replace("esop", scenario_id, esop)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_identity(self) -> Identity:
        identity = self._store.current_identity()
        if identity is None:
            raise Unauthenticated()
        return identity

    @staticmethod
    def _call(step: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except StoreError as exc:
            log.warning("Store call failed at step %s: %s", step, exc.message)
            raise StoreFailure.from_store_error(exc, step) from exc

    def _insert_dependents(
        self, table: str, items: list[Item], scenario_id: str, committed: list[str],
    ) -> list[Any]:
        rows = _dependent_rows(items, scenario_id)
        try:
            return self._store.insert(table, rows)
        except StoreError as exc:
            log.warning(
                "Scenario %s left partial: %s insert failed after %s committed: %s",
                scenario_id, table, ", ".join(committed), exc.message,
            )
            raise PartialAggregateFailure(
                exc.message, exc.code, scenario_id=scenario_id,
                failed_step=table, committed_steps=tuple(committed),
            ) from exc

    def _replace(self, table: str, scenario_id: str, items: Iterable[Item]) -> list[Any]:
        self._require_identity()
        rows = _dependent_rows(items, scenario_id)
        removed = self._call(f"delete_{table}", self._store.delete, table, {"scenario_id": scenario_id})
        try:
            return self._store.insert(table, rows)
        except StoreError as exc:
            if not removed:
                # Nothing was cleared, so the aggregate is unchanged.
                raise StoreFailure.from_store_error(exc, f"insert_{table}") from exc
            log.warning("Scenario %s has no %s: insert after delete failed: %s", scenario_id, table, exc.message)
            raise PartialAggregateFailure(
                exc.message, exc.code, scenario_id=scenario_id,
                failed_step=f"insert_{table}", committed_steps=(f"delete_{table}",),
            ) from exc
