"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database shared through StaticPool.
"""
from __future__ import annotations

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from equiplan.db import enable_sqlite_foreign_keys
from equiplan.errors import StoreError
from equiplan.models import Base
from equiplan.store import RowStore

ALICE = {"X-User-Id": "user-alice"}
BOB = {"X-User-Id": "user-bob"}

SEED_PLAN = {
    "name": "Seed Round Plan",
    "founders": [
        {"name": "Alice", "equity_percentage": 60},
        {"name": "Bob", "equity_percentage": 40},
    ],
    "rounds": [{"round_name": "Seed", "investment_amount": 500000, "valuation": 4000000}],
    "esop": {"percentage": 10},
}


@pytest.fixture()
def test_db():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db):
    """FastAPI TestClient using the in-memory database."""
    _, TestSession = test_db
    from equiplan.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with patch("equiplan.app.init_db"):
        with TestClient(app, raise_server_exceptions=True) as c:
            yield c
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded(client):
    resp = client.post("/api/scenarios", json=SEED_PLAN, headers=ALICE)
    assert resp.status_code == 201
    return client, resp.json()["id"]


class TestScenarioEndpoints:
    def test_create(self, client):
        resp = client.post("/api/scenarios", json=SEED_PLAN, headers=ALICE)
        assert resp.status_code == 201
        data = resp.json()
        assert data["name"] == "Seed Round Plan"
        assert data["owner_id"] == "user-alice"
        assert {(f["name"], f["equity_percentage"]) for f in data["founders"]} == {("Alice", 60), ("Bob", 40)}
        assert data["rounds"][0]["valuation"] == 4000000
        assert data["esop"]["percentage"] == 10
        assert data["founder_count"] == 2
        assert data["round_count"] == 1
        assert all(f["scenario_id"] == data["id"] for f in data["founders"])

    def test_create_trims_name(self, client):
        resp = client.post("/api/scenarios", json={**SEED_PLAN, "name": "  Trimmed  "}, headers=ALICE)
        assert resp.json()["name"] == "Trimmed"

    def test_create_without_esop(self, client):
        body = {k: v for k, v in SEED_PLAN.items() if k != "esop"}
        resp = client.post("/api/scenarios", json=body, headers=ALICE)
        assert resp.status_code == 201
        assert resp.json()["esop"] is None

    def test_create_zero_esop_is_no_pool(self, client):
        resp = client.post("/api/scenarios", json={**SEED_PLAN, "esop": {"percentage": 0}}, headers=ALICE)
        assert resp.status_code == 201
        assert resp.json()["esop"] is None
        assert client.get("/api/stats", headers=ALICE).json()["esop_pools"] == 0

    def test_timestamps_match_across_reads(self, client):
        created = client.post("/api/scenarios", json=SEED_PLAN, headers=ALICE).json()
        listed = client.get("/api/scenarios", headers=ALICE).json()["items"][0]
        fetched = client.get(f"/api/scenarios/{created['id']}", headers=ALICE).json()
        for field in ("created_at", "updated_at"):
            assert created[field] == listed[field] == fetched[field]
            assert "+" not in created[field]

    def test_rename_timestamp_matches_get(self, seeded):
        client, scenario_id = seeded
        renamed = client.put(f"/api/scenarios/{scenario_id}", json={"name": "Series A"}, headers=ALICE).json()
        fetched = client.get(f"/api/scenarios/{scenario_id}", headers=ALICE).json()
        assert renamed["updated_at"] == fetched["updated_at"]

    def test_create_requires_identity(self, client):
        resp = client.post("/api/scenarios", json=SEED_PLAN)
        assert resp.status_code == 401

    def test_create_blank_name(self, client):
        resp = client.post("/api/scenarios", json={**SEED_PLAN, "name": "   "}, headers=ALICE)
        assert resp.status_code == 422

    def test_create_blank_founder_name(self, client):
        body = {**SEED_PLAN, "founders": [{"name": " ", "equity_percentage": 50}]}
        resp = client.post("/api/scenarios", json=body, headers=ALICE)
        assert resp.status_code == 422

    def test_create_needs_a_founder(self, client):
        resp = client.post("/api/scenarios", json={**SEED_PLAN, "founders": []}, headers=ALICE)
        assert resp.status_code == 422

    def test_create_negative_investment(self, client):
        body = {**SEED_PLAN, "rounds": [{"round_name": "Seed", "investment_amount": -1, "valuation": 0}]}
        resp = client.post("/api/scenarios", json=body, headers=ALICE)
        assert resp.status_code == 422

    def test_create_partial_failure(self, client):
        original = RowStore.insert

        def failing_insert(self, table, rows):
            if table == "founders":
                raise StoreError("insert failed", "integrity")
            return original(self, table, rows)

        with patch.object(RowStore, "insert", failing_insert):
            resp = client.post("/api/scenarios", json=SEED_PLAN, headers=ALICE)
        assert resp.status_code == 500
        detail = resp.json()["detail"]
        assert detail["failed_step"] == "founders"
        assert detail["committed_steps"] == ["scenario"]

        listed = client.get("/api/scenarios", headers=ALICE).json()
        assert listed["total"] == 1
        assert listed["items"][0]["id"] == detail["scenario_id"]
        assert listed["items"][0]["founders"] == []

    def test_list(self, seeded):
        client, scenario_id = seeded
        resp = client.get("/api/scenarios", headers=ALICE)
        assert resp.status_code == 200
        data = resp.json()
        assert data["total"] == 1
        assert data["items"][0]["id"] == scenario_id

    def test_list_empty(self, client):
        resp = client.get("/api/scenarios", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json() == {"items": [], "total": 0}

    def test_list_requires_identity(self, client):
        assert client.get("/api/scenarios").status_code == 401

    def test_list_other_user(self, seeded):
        client, _ = seeded
        assert client.get("/api/scenarios", headers=BOB).json()["total"] == 0

    def test_get(self, seeded):
        client, scenario_id = seeded
        resp = client.get(f"/api/scenarios/{scenario_id}", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["name"] == "Seed Round Plan"

    def test_get_other_user_404(self, seeded):
        client, scenario_id = seeded
        assert client.get(f"/api/scenarios/{scenario_id}", headers=BOB).status_code == 404

    def test_rename(self, seeded):
        client, scenario_id = seeded
        resp = client.put(f"/api/scenarios/{scenario_id}", json={"name": "Series A"}, headers=ALICE)
        assert resp.status_code == 200
        assert resp.json()["name"] == "Series A"
        assert client.get(f"/api/scenarios/{scenario_id}", headers=ALICE).json()["name"] == "Series A"

    def test_rename_missing_404(self, client):
        resp = client.put("/api/scenarios/missing", json={"name": "X"}, headers=ALICE)
        assert resp.status_code == 404

    def test_rename_other_user_404(self, seeded):
        client, scenario_id = seeded
        resp = client.put(f"/api/scenarios/{scenario_id}", json={"name": "Mine"}, headers=BOB)
        assert resp.status_code == 404

    def test_delete(self, seeded):
        client, scenario_id = seeded
        resp = client.delete(f"/api/scenarios/{scenario_id}", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "deleted": True}
        assert client.get("/api/scenarios", headers=ALICE).json()["total"] == 0

    def test_delete_missing_is_ok(self, client):
        resp = client.delete("/api/scenarios/missing", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json() == {"ok": True, "deleted": False}

    def test_delete_other_user_keeps_scenario(self, seeded):
        client, scenario_id = seeded
        assert client.delete(f"/api/scenarios/{scenario_id}", headers=BOB).json()["deleted"] is False
        assert client.get(f"/api/scenarios/{scenario_id}", headers=ALICE).status_code == 200


class TestDependentEndpoints:
    def test_replace_founders(self, seeded):
        client, scenario_id = seeded
        resp = client.put(f"/api/scenarios/{scenario_id}/founders", headers=ALICE, json=[
            {"name": "F1", "equity_percentage": 50}, {"name": "F2", "equity_percentage": 50},
        ])
        assert resp.status_code == 200
        assert {f["name"] for f in resp.json()} == {"F1", "F2"}
        detail = client.get(f"/api/scenarios/{scenario_id}", headers=ALICE).json()
        assert {f["name"] for f in detail["founders"]} == {"F1", "F2"}

    def test_clear_founders(self, seeded):
        client, scenario_id = seeded
        resp = client.put(f"/api/scenarios/{scenario_id}/founders", headers=ALICE, json=[])
        assert resp.status_code == 200
        assert resp.json() == []
        assert client.get(f"/api/scenarios/{scenario_id}", headers=ALICE).json()["founder_count"] == 0

    def test_replace_rounds(self, seeded):
        client, scenario_id = seeded
        resp = client.put(f"/api/scenarios/{scenario_id}/rounds", headers=ALICE, json=[
            {"round_name": "Series A", "investment_amount": 5000000, "valuation": 25000000},
        ])
        assert resp.status_code == 200
        assert resp.json()[0]["round_name"] == "Series A"

    def test_replace_esop(self, seeded):
        client, scenario_id = seeded
        resp = client.put(f"/api/scenarios/{scenario_id}/esop", headers=ALICE, json=[{"percentage": 12.5}])
        assert resp.status_code == 200
        assert client.get(f"/api/scenarios/{scenario_id}", headers=ALICE).json()["esop"]["percentage"] == 12.5

    def test_replace_esop_too_many(self, seeded):
        client, scenario_id = seeded
        resp = client.put(f"/api/scenarios/{scenario_id}/esop", headers=ALICE,
                          json=[{"percentage": 5}, {"percentage": 6}])
        assert resp.status_code == 422
        assert client.get(f"/api/scenarios/{scenario_id}", headers=ALICE).json()["esop"]["percentage"] == 10

    def test_replace_founders_other_user_forbidden(self, seeded):
        client, scenario_id = seeded
        resp = client.put(f"/api/scenarios/{scenario_id}/founders", headers=BOB,
                          json=[{"name": "Mallory", "equity_percentage": 100}])
        assert resp.status_code == 403
        assert resp.json()["detail"]["code"] == "forbidden"

    def test_replace_requires_identity(self, seeded):
        client, scenario_id = seeded
        assert client.put(f"/api/scenarios/{scenario_id}/rounds", json=[]).status_code == 401


class TestStatsEndpoint:
    def test_stats(self, seeded):
        client, _ = seeded
        resp = client.get("/api/stats", headers=ALICE)
        assert resp.status_code == 200
        assert resp.json() == {"scenarios": 1, "founders": 2, "rounds": 1, "esop_pools": 1}

    def test_stats_other_user(self, seeded):
        client, _ = seeded
        assert client.get("/api/stats", headers=BOB).json()["scenarios"] == 0

    def test_health(self, client):
        assert client.get("/api/health").json() == {"ok": True}
