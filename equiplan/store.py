"""Table-level row store with row-level authorization.

``RowStore`` is the narrow interface the scenario repository talks to. It
exposes ``insert``/``select``/``update``/``delete`` by table name, the way a
hosted REST-over-SQL backend does, and scopes every call to the identity it
was built for:

- ``scenarios`` rows are visible and mutable only when ``owner_id`` matches.
- ``founders``, ``rounds`` and ``esop`` rows carry no owner; they are visible
  through the scenario they reference.
- Inserts must satisfy the same policy, otherwise they are rejected.

Each call commits on its own. A sequence of calls is therefore *not* a
transaction: whatever succeeded before a failing call stays stored.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Generator, Iterable

from sqlalchemy import delete as sa_delete, false, select as sa_select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from equiplan.errors import StoreError
from equiplan.models import Base, EsopPool, Founder, FundingRound, Scenario

log = logging.getLogger(__name__)

TABLES: dict[str, type[Base]] = {
    "scenarios": Scenario,
    "founders": Founder,
    "rounds": FundingRound,
    "esop": EsopPool,
}

IMMUTABLE_COLUMNS: dict[str, frozenset[str]] = {
    "scenarios": frozenset({"id", "owner_id", "created_at"}),
    "founders": frozenset({"id", "scenario_id"}),
    "rounds": frozenset({"id", "scenario_id"}),
    "esop": frozenset({"id", "scenario_id"}),
}

POLICY_VIOLATION = "forbidden"


@dataclass(frozen=True)
class Identity:
    """An authenticated caller."""
    user_id: str


class RowStore:
    def __init__(self, session: Session, identity: Identity | None):
        self._session = session
        self._identity = identity

    def current_identity(self) -> Identity | None:
        return self._identity

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def insert(self, table: str, rows: Iterable[dict[str, Any]]) -> list[Any]:
        """Insert rows and return them with generated ids and timestamps."""
        model = self._model(table)
        rows = list(rows)
        if not rows:
            return []
        objs = []
        with self._call("insert", table):
            for values in rows:
                self._check_columns(table, model, values)
                self._check_insert_policy(table, model, values)
                objs.append(model(**values))
            self._session.add_all(objs)
        return objs

    def select(
        self, table: str, filters: dict[str, Any] | None = None, *,
        embed: Iterable[str] = (), order_by: tuple[str, str] | None = None,
    ) -> list[Any]:
        """Fetch visible rows matching ``filters`` (column equality).

        ``embed`` names child relationships loaded in the same call;
        ``order_by`` is ``(column, "asc" | "desc")``.
        """
        model = self._model(table)
        stmt = sa_select(model).where(self._visible(model), *self._where(table, model, filters))
        for name in embed:
            if name not in model.__mapper__.relationships:
                raise StoreError(f"Could not find a relationship between '{table}' and '{name}'", "unknown_embed")
            stmt = stmt.options(selectinload(getattr(model, name)))
        if order_by:
            column, direction = order_by
            self._check_columns(table, model, {column: None})
            col = getattr(model, column)
            stmt = stmt.order_by(col.desc() if direction == "desc" else col.asc())
        # Refresh objects already in the identity map, including embedded collections.
        stmt = stmt.execution_options(populate_existing=True)
        with self._call("select", table):
            rows = list(self._session.execute(stmt).scalars().all())
        return rows

    def update(self, table: str, filters: dict[str, Any], patch: dict[str, Any]) -> list[Any]:
        """Apply ``patch`` to visible rows matching ``filters``; return the updated rows."""
        model = self._model(table)
        if not filters:
            raise StoreError("UPDATE requires a WHERE clause", "missing_filter")
        self._check_columns(table, model, patch)
        frozen = sorted(set(patch) & IMMUTABLE_COLUMNS[table])
        if frozen:
            raise StoreError(f"column(s) {', '.join(frozen)} of '{table}' cannot be updated", "immutable")
        stmt = (
            sa_select(model)
            .where(self._visible(model), *self._where(table, model, filters))
            .execution_options(populate_existing=True)
        )
        with self._call("update", table):
            rows = list(self._session.execute(stmt).scalars().all())
            for row in rows:
                for key, value in patch.items():
                    setattr(row, key, value)
        return rows

    def delete(self, table: str, filters: dict[str, Any]) -> int:
        """Delete visible rows matching ``filters``; return the affected row count."""
        model = self._model(table)
        if not filters:
            raise StoreError("DELETE requires a WHERE clause", "missing_filter")
        stmt = (
            sa_delete(model)
            .where(self._visible(model), *self._where(table, model, filters))
            .execution_options(synchronize_session=False)
        )
        with self._call("delete", table):
            result = self._session.execute(stmt)
        return result.rowcount or 0

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _call(self, action: str, table: str) -> Generator[None, None, None]:
        try:
            yield
            self._session.commit()
        except StoreError:
            self._session.rollback()
            raise
        except SQLAlchemyError as exc:
            self._session.rollback()
            code = "integrity" if isinstance(exc, IntegrityError) else "database"
            message = str(getattr(exc, "orig", None) or exc)
            log.warning("Store %s on %s failed: %s", action, table, message)
            raise StoreError(message, code) from exc

    def _model(self, table: str) -> type[Base]:
        try:
            return TABLES[table]
        except KeyError:
            raise StoreError(f'relation "{table}" does not exist', "unknown_table") from None

    @staticmethod
    def _check_columns(table: str, model: type[Base], values: dict[str, Any]) -> None:
        unknown = sorted(set(values) - set(model.__table__.columns.keys()))
        if unknown:
            raise StoreError(f"column(s) {', '.join(unknown)} of '{table}' do not exist", "unknown_column")

    def _where(self, table: str, model: type[Base], filters: dict[str, Any] | None) -> list:
        filters = filters or {}
        self._check_columns(table, model, filters)
        return [getattr(model, col) == value for col, value in filters.items()]

    def _owned_scenario_ids(self):
        return sa_select(Scenario.id).where(Scenario.owner_id == self._identity.user_id)

    def _visible(self, model: type[Base]):
        if self._identity is None:
            return false()
        if model is Scenario:
            return Scenario.owner_id == self._identity.user_id
        return model.scenario_id.in_(self._owned_scenario_ids())

    def _check_insert_policy(self, table: str, model: type[Base], values: dict[str, Any]) -> None:
        denied = StoreError(f'new row violates row-level security policy for table "{table}"', POLICY_VIOLATION)
        if self._identity is None:
            raise denied
        if model is Scenario:
            if values.get("owner_id") != self._identity.user_id:
                raise denied
            return
        owned = self._session.execute(
            self._owned_scenario_ids().where(Scenario.id == values.get("scenario_id"))
        ).first()
        if owned is None:
            raise denied
