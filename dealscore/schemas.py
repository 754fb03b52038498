"""Pydantic schemas for save-call identity and tool responses."""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, field_validator

from dealscore.utils import clean_text, to_number


def _positive_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("must be a positive integer")
    n = to_number(value)
    if n is None or n <= 0 or n != int(n):
        raise ValueError("must be a positive integer")
    return int(n)


class SaveDealIdentity(BaseModel):
    """Who and what a ``save_deal_data`` call targets, normalized."""
    org_id: int
    opportunity_id: int
    rep_name: str | None = None
    call_id: str | None = None

    @field_validator("org_id", "opportunity_id", mode="before")
    @classmethod
    def validate_id(cls, v: Any) -> int:
        return _positive_int(v)

    @field_validator("rep_name", "call_id", mode="before")
    @classmethod
    def validate_text(cls, v: Any) -> str | None:
        return clean_text(v)


class SaveResult(BaseModel):
    ok: bool = True
    saved: bool = True
    org_id: int
    opportunity_id: int
    run_id: str
    total_score: int


class AuditEventOut(BaseModel):
    id: int
    org_id: int
    opportunity_id: int
    ts: str | None = None
    run_id: str
    call_id: str | None = None
    actor_type: str
    event_type: str
    schema_version: int
    prompt_version: str
    logic_version: str
    forecast_stage: str | None = None
    ai_forecast: str | None = None
    risk_summary: str | None = None
    risk_flags: list[str] | None = None
    total_score: int | None = None
    max_score: int | None = None
    delta: dict[str, Any] = {}
    definitions: dict[str, Any] = {}
    meta: dict[str, Any] = {}


class ConfidenceOut(BaseModel):
    confidence_score: int
    confidence_band: str
    confidence_summary: str
    score_source: str
    evidence: dict[str, Any] = {}
    computed_at: str


class DealAssessment(BaseModel):
    org_id: int
    opportunity_id: int
    health_score: int
    max_score: int
    ai_forecast: str | None = None
    confidence: ConfidenceOut
