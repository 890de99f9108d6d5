"""Pydantic request/response schemas for the Equiplan API."""
from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


def _required_text(v: str) -> str:
    v = v.strip()
    if not v:
        raise ValueError("must not be blank")
    return v


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class FounderIn(BaseModel):
    name: str
    equity_percentage: float = Field(0.0, ge=0)

    @field_validator("name")
    @classmethod
    def name_must_not_be_blank(cls, v: str) -> str:
        return _required_text(v)


class RoundIn(BaseModel):
    round_name: str
    investment_amount: float = Field(0.0, ge=0)
    valuation: float = Field(0.0, ge=0, description="Post-money valuation")

    @field_validator("round_name")
    @classmethod
    def round_name_must_not_be_blank(cls, v: str) -> str:
        return _required_text(v)


class EsopIn(BaseModel):
    percentage: float = Field(0.0, ge=0)


class ScenarioCreate(BaseModel):
    name: str
    founders: list[FounderIn] = Field(min_length=1)
    rounds: list[RoundIn] = []
    esop: EsopIn | None = None

    @field_validator("name")
    @classmethod
    def name_must_not_be_blank(cls, v: str) -> str:
        return _required_text(v)

    @field_validator("esop")
    @classmethod
    def empty_pool_means_none(cls, v: EsopIn | None) -> EsopIn | None:
        return v if v is not None and v.percentage > 0 else None


class ScenarioRename(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def name_must_not_be_blank(cls, v: str) -> str:
        return _required_text(v)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class FounderOut(BaseModel):
    id: str
    scenario_id: str
    name: str
    equity_percentage: float


class RoundOut(BaseModel):
    id: str
    scenario_id: str
    round_name: str
    investment_amount: float
    valuation: float


class EsopOut(BaseModel):
    id: str
    scenario_id: str
    percentage: float


class ScenarioOut(BaseModel):
    id: str
    owner_id: str
    name: str
    created_at: str | None = None
    updated_at: str | None = None


class ScenarioDetail(ScenarioOut):
    founders: list[FounderOut] = []
    rounds: list[RoundOut] = []
    esop: EsopOut | None = None
    founder_count: int = 0
    round_count: int = 0


class ScenarioListResponse(BaseModel):
    items: list[ScenarioDetail]
    total: int


class DeleteResult(BaseModel):
    ok: bool
    deleted: bool


class StatsOut(BaseModel):
    scenarios: int
    founders: int
    rounds: int
    esop_pools: int
