from __future__ import annotations

import uuid
from datetime import datetime, UTC

from sqlalchemy import DateTime, Float, ForeignKey, String, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class Scenario(Base):
    __tablename__ = "scenarios"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow, onupdate=_utcnow)

    # Deletion goes through the FK cascade, never through the ORM.
    founders: Mapped[list[Founder]] = relationship(
        "Founder", back_populates="scenario", cascade="all, delete-orphan", passive_deletes=True,
    )
    rounds: Mapped[list[FundingRound]] = relationship(
        "FundingRound", back_populates="scenario", cascade="all, delete-orphan", passive_deletes=True,
    )
    esop: Mapped[list[EsopPool]] = relationship(
        "EsopPool", back_populates="scenario", cascade="all, delete-orphan", passive_deletes=True,
    )


class Founder(Base):
    __tablename__ = "founders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    scenario_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("scenarios.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    equity_percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    scenario: Mapped[Scenario] = relationship("Scenario", back_populates="founders")


class FundingRound(Base):
    __tablename__ = "rounds"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    scenario_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("scenarios.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    round_name: Mapped[str] = mapped_column(String(200), nullable=False)
    investment_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    valuation: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)  # post-money

    scenario: Mapped[Scenario] = relationship("Scenario", back_populates="rounds")


class EsopPool(Base):
    __tablename__ = "esop"
    __table_args__ = (UniqueConstraint("scenario_id", name="uq_esop_scenario"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    scenario_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("scenarios.id", ondelete="CASCADE"), nullable=False,
    )
    percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    scenario: Mapped[Scenario] = relationship("Scenario", back_populates="esop")
