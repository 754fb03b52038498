from __future__ import annotations

import uuid
from datetime import date, datetime

from sqlalchemy import (
    Date, DateTime, ForeignKeyConstraint, Index, Integer, String, Text, Uuid, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


class Opportunity(Base):
    __tablename__ = "opportunities"

    org_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    account_name: Mapped[str | None] = mapped_column(String(300))
    rep_name: Mapped[str | None] = mapped_column(String(200))
    amount: Mapped[float | None] = mapped_column()
    close_date: Mapped[date | None] = mapped_column(Date)

    # Stage text, in the order the forecast bucketer consults it
    sales_stage_for_closed: Mapped[str | None] = mapped_column(String(100))
    stage: Mapped[str | None] = mapped_column(String(100))
    forecast_stage: Mapped[str | None] = mapped_column(String(100))
    ai_forecast: Mapped[str | None] = mapped_column(String(50))

    pain_score: Mapped[int | None] = mapped_column(Integer)
    pain_summary: Mapped[str | None] = mapped_column(Text)
    pain_tip: Mapped[str | None] = mapped_column(Text)
    metrics_score: Mapped[int | None] = mapped_column(Integer)
    metrics_summary: Mapped[str | None] = mapped_column(Text)
    metrics_tip: Mapped[str | None] = mapped_column(Text)
    champion_score: Mapped[int | None] = mapped_column(Integer)
    champion_summary: Mapped[str | None] = mapped_column(Text)
    champion_tip: Mapped[str | None] = mapped_column(Text)
    champion_name: Mapped[str | None] = mapped_column(String(200))
    champion_title: Mapped[str | None] = mapped_column(String(200))
    eb_score: Mapped[int | None] = mapped_column(Integer)
    eb_summary: Mapped[str | None] = mapped_column(Text)
    eb_tip: Mapped[str | None] = mapped_column(Text)
    eb_name: Mapped[str | None] = mapped_column(String(200))
    eb_title: Mapped[str | None] = mapped_column(String(200))
    criteria_score: Mapped[int | None] = mapped_column(Integer)
    criteria_summary: Mapped[str | None] = mapped_column(Text)
    criteria_tip: Mapped[str | None] = mapped_column(Text)
    process_score: Mapped[int | None] = mapped_column(Integer)
    process_summary: Mapped[str | None] = mapped_column(Text)
    process_tip: Mapped[str | None] = mapped_column(Text)
    competition_score: Mapped[int | None] = mapped_column(Integer)
    competition_summary: Mapped[str | None] = mapped_column(Text)
    competition_tip: Mapped[str | None] = mapped_column(Text)
    paper_score: Mapped[int | None] = mapped_column(Integer)
    paper_summary: Mapped[str | None] = mapped_column(Text)
    paper_tip: Mapped[str | None] = mapped_column(Text)
    timing_score: Mapped[int | None] = mapped_column(Integer)
    timing_summary: Mapped[str | None] = mapped_column(Text)
    timing_tip: Mapped[str | None] = mapped_column(Text)
    budget_score: Mapped[int | None] = mapped_column(Integer)
    budget_summary: Mapped[str | None] = mapped_column(Text)
    budget_tip: Mapped[str | None] = mapped_column(Text)

    risk_summary: Mapped[str | None] = mapped_column(Text)
    next_steps: Mapped[str | None] = mapped_column(Text)
    rep_comments: Mapped[str | None] = mapped_column(Text)
    manager_comments: Mapped[str | None] = mapped_column(Text)

    # Sum of the ten category scores; only ever written by the save engine
    health_score: Mapped[int | None] = mapped_column(Integer)
    previous_total_score: Mapped[int | None] = mapped_column(Integer)
    previous_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), server_default=func.now())

    audit_events: Mapped[list[OpportunityAuditEvent]] = relationship(
        "OpportunityAuditEvent", order_by="OpportunityAuditEvent.id", viewonly=True,
    )


class OpportunityAuditEvent(Base):
    """One row per committed save. Insert-only."""

    __tablename__ = "opportunity_audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    org_id: Mapped[int] = mapped_column(Integer, nullable=False)
    opportunity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    run_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, unique=True)
    call_id: Mapped[str | None] = mapped_column(String(200))
    actor_type: Mapped[str] = mapped_column(String(30), nullable=False)  # "agent" | "human"
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, nullable=False)
    prompt_version: Mapped[str] = mapped_column(String(20), nullable=False)
    logic_version: Mapped[str] = mapped_column(String(20), nullable=False)
    forecast_stage: Mapped[str | None] = mapped_column(String(100))
    ai_forecast: Mapped[str | None] = mapped_column(String(50))
    risk_summary: Mapped[str | None] = mapped_column(Text)
    risk_flags_json: Mapped[str | None] = mapped_column(Text)  # JSON list of flag strings
    total_score: Mapped[int | None] = mapped_column(Integer)
    max_score: Mapped[int | None] = mapped_column(Integer)
    delta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    definitions_json: Mapped[str] = mapped_column(Text, default="{}")
    meta_json: Mapped[str] = mapped_column(Text, default="{}")

    __table_args__ = (
        ForeignKeyConstraint(
            ["org_id", "opportunity_id"], ["opportunities.org_id", "opportunities.id"],
        ),
        Index("ix_audit_events_org_opportunity", "org_id", "opportunity_id"),
    )
