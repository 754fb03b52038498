"""Save-and-audit transaction engine plus read-time deal assessment.

``save_deal_data`` is the one write path for deal qualification data. A single
call, on a caller-supplied session, does:

1. validate identifiers (before any database access)
2. update the registered, writable columns the caller supplied
3. re-read the audit context for the deal under a row lock
4. recompute ``health_score`` from the ten category columns
5. insert one ``opportunity_audit_events`` row with the caller's delta
6. commit

Any failure rolls the whole unit back and re-raises the original exception.
"""
from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Mapping

from pydantic import ValidationError
from sqlalchemy import Row, Select, select, update
from sqlalchemy.orm import Session

from dealscore.categories import (
    FIELD_REGISTRY, MAX_TOTAL_SCORE, SCORE_FIELDS, build_delta, clamp_score,
    detect_category, sum_category_scores, writable_fields,
)
from dealscore.confidence import ScoreSource, compute_confidence
from dealscore.forecast import compute_ai_forecast
from dealscore.models import Opportunity, OpportunityAuditEvent
from dealscore.schemas import AuditEventOut, DealAssessment, SaveDealIdentity, SaveResult
from dealscore.utils import clean_text, json_parse, to_number

log = logging.getLogger(__name__)

SAVE_TOOL = "save_deal_data"
ACTOR_TYPE = "agent"
SCHEMA_VERSION = 1
PROMPT_VERSION = "v1"
LOGIC_VERSION = "v1"


class SaveDealError(Exception):
    """Base class for save_deal_data failures raised by this module."""


class InvalidSaveArgs(SaveDealError, ValueError):
    """Caller arguments rejected before touching the database."""


class DealNotFound(SaveDealError, LookupError):
    """No opportunity matches the (org_id, opportunity_id) pair."""


# ---------------------------------------------------------------------------
# Argument handling
# ---------------------------------------------------------------------------


def parse_identity(args: Mapping[str, Any]) -> SaveDealIdentity:
    try:
        return SaveDealIdentity.model_validate({
            "org_id": args.get("org_id"),
            "opportunity_id": args.get("opportunity_id"),
            "rep_name": args.get("rep_name"),
            "call_id": args.get("call_id"),
        })
    except ValidationError as exc:
        raise InvalidSaveArgs(
            f"{SAVE_TOOL} requires org_id and opportunity_id as positive integers"
        ) from exc


def prepare_update(args: Mapping[str, Any]) -> dict[str, Any]:
    """Registered, writable columns from *args*, coerced to their column types.

    Scores are clamped to 0..3; a score that is not a number is rejected.
    """
    values: dict[str, Any] = {}
    for key, value in writable_fields(args).items():
        if value is None:
            values[key] = None
        elif FIELD_REGISTRY[key].kind == "score":
            n = to_number(value)
            if n is None:
                raise InvalidSaveArgs(f"{key} must be a number, got {value!r}")
            values[key] = clamp_score(n)
        else:
            values[key] = str(value)
    return values


def parse_risk_flags(value: Any) -> list[str] | None:
    """Normalize ``risk_flags`` to a list of non-empty strings; a bare string is one flag."""
    if value is None:
        return None
    items = [value] if isinstance(value, str) else value
    if not isinstance(items, (list, tuple)):
        raise InvalidSaveArgs(f"risk_flags must be a list of strings, got {value!r}")
    return [text for text in (clean_text(str(item)) for item in items if item is not None) if text]


# ---------------------------------------------------------------------------
# Statements (always scoped to one org + deal)
# ---------------------------------------------------------------------------


_deals = Opportunity.__table__


def _deal_scope(org_id: int, opportunity_id: int) -> tuple:
    return (_deals.c.org_id == org_id, _deals.c.id == opportunity_id)


def update_deal_fields(
    session: Session, org_id: int, opportunity_id: int, values: dict[str, Any], now: datetime,
) -> int:
    """Write *values* plus ``updated_at``; returns the matched row count."""
    stmt = (
        update(_deals)
        .where(*_deal_scope(org_id, opportunity_id))
        .values(**values, updated_at=now)
    )
    return session.execute(stmt).rowcount


def audit_context_query(org_id: int, opportunity_id: int) -> Select:
    """Post-update snapshot columns, locking the row until commit or rollback."""
    return (
        select(Opportunity.forecast_stage, Opportunity.ai_forecast, Opportunity.risk_summary)
        .where(*_deal_scope(org_id, opportunity_id))
        .with_for_update()
    )


def read_audit_context(session: Session, org_id: int, opportunity_id: int) -> Row | None:
    return session.execute(audit_context_query(org_id, opportunity_id)).first()


def recompute_total_score(session: Session, org_id: int, opportunity_id: int) -> int | None:
    """Sum the persisted category scores; ``None`` if the deal does not exist."""
    columns = [getattr(Opportunity, f) for f in SCORE_FIELDS]
    row = session.execute(
        select(*columns).where(*_deal_scope(org_id, opportunity_id))
    ).first()
    if row is None:
        return None
    return sum_category_scores(row._mapping)


def persist_total_score(
    session: Session, org_id: int, opportunity_id: int, total: int, now: datetime,
) -> None:
    """Store *total* as ``health_score`` and roll the old value into the baseline."""
    # previous_total_score must be assigned before health_score for MySQL-style SET evaluation
    stmt = (
        update(_deals)
        .where(*_deal_scope(org_id, opportunity_id))
        .ordered_values(
            (_deals.c.previous_total_score, _deals.c.health_score),
            (_deals.c.previous_updated_at, now),
            (_deals.c.health_score, total),
        )
    )
    session.execute(stmt)


def insert_audit_event(
    session: Session,
    *,
    identity: SaveDealIdentity,
    context: Row,
    total_score: int,
    delta: dict[str, Any],
    category: str | None,
    now: datetime,
    risk_flags: list[str] | None = None,
) -> OpportunityAuditEvent:
    event = OpportunityAuditEvent(
        org_id=identity.org_id,
        opportunity_id=identity.opportunity_id,
        ts=now,
        run_id=uuid.uuid4(),
        call_id=identity.call_id,
        actor_type=ACTOR_TYPE,
        event_type=SAVE_TOOL,
        schema_version=SCHEMA_VERSION,
        prompt_version=PROMPT_VERSION,
        logic_version=LOGIC_VERSION,
        forecast_stage=context.forecast_stage or None,
        ai_forecast=context.ai_forecast or None,
        risk_summary=context.risk_summary or None,
        risk_flags_json=json.dumps(risk_flags) if risk_flags is not None else None,
        total_score=total_score,
        max_score=MAX_TOTAL_SCORE,
        delta_json=json.dumps(delta, default=str),
        definitions_json=json.dumps({}),
        meta_json=json.dumps({
            "rep_name": identity.rep_name, "category": category, "saved_at": now.isoformat(),
        }),
    )
    session.add(event)
    session.flush()
    return event


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


def save_deal_data(
    session: Session, args: Mapping[str, Any], now: datetime | None = None,
) -> dict[str, Any]:
    """Apply one save_deal_data call as a single all-or-nothing unit of work."""
    identity = parse_identity(args)
    category = detect_category(args)
    delta = build_delta(args)
    values = prepare_update(args)
    risk_flags = parse_risk_flags(args.get("risk_flags"))
    now = now or datetime.now(UTC)
    org_id, opportunity_id = identity.org_id, identity.opportunity_id

    try:
        if values:
            update_deal_fields(session, org_id, opportunity_id, values, now)

        context = read_audit_context(session, org_id, opportunity_id)
        if context is None:
            raise DealNotFound(f"Opportunity {opportunity_id} not found for org {org_id}")

        total = recompute_total_score(session, org_id, opportunity_id)
        if total is None:
            raise DealNotFound(f"Opportunity {opportunity_id} not found for org {org_id}")
        persist_total_score(session, org_id, opportunity_id, total, now)

        event = insert_audit_event(
            session, identity=identity, context=context, total_score=total,
            delta=delta, category=category, now=now, risk_flags=risk_flags,
        )
        session.commit()
    except Exception as exc:
        session.rollback()
        log.warning("save_deal_data rolled back (org=%s opportunity=%s): %s", org_id, opportunity_id, exc)
        raise

    log.info(
        "Saved opportunity %s/%s: category=%s fields=%d total=%d run=%s",
        org_id, opportunity_id, category, len(values), total, event.run_id,
    )
    return SaveResult(
        org_id=org_id, opportunity_id=opportunity_id,
        run_id=str(event.run_id), total_score=total,
    ).model_dump()


def handle_function_call(
    session: Session, tool_name: str, args: Mapping[str, Any] | None, now: datetime | None = None,
) -> dict[str, Any]:
    """Dispatch an agent tool call. Only ``save_deal_data`` is handled."""
    if tool_name != SAVE_TOOL:
        log.info("Ignoring tool call %r", tool_name)
        return {"ok": True, "ignored": tool_name}
    return save_deal_data(session, args or {}, now=now)


# ---------------------------------------------------------------------------
# Read-time helpers
# ---------------------------------------------------------------------------


def get_opportunity(session: Session, org_id: int, opportunity_id: int) -> Opportunity | None:
    return session.execute(
        select(Opportunity).where(*_deal_scope(org_id, opportunity_id))
    ).scalars().first()


def deal_snapshot(opp: Opportunity) -> dict[str, Any]:
    """Plain field map of a deal row, as consumed by the confidence engine."""
    return {col.key: getattr(opp, col.key) for col in Opportunity.__table__.columns}


def deal_detail(opp: Opportunity) -> dict[str, Any]:
    out = deal_snapshot(opp)
    for key in ("close_date", "updated_at", "previous_updated_at"):
        if out[key] is not None:
            out[key] = out[key].isoformat()
    out["audit_event_count"] = len(opp.audit_events)
    return out


def assess_deal(
    session: Session,
    org_id: int,
    opportunity_id: int,
    source: ScoreSource | str = ScoreSource.REP_REVIEW,
    extraction_confidence: str | None = None,
    comment_ingestion_id: Any = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Confidence and AI forecast for one deal's current state. Nothing is written."""
    opp = get_opportunity(session, org_id, opportunity_id)
    if opp is None:
        raise DealNotFound(f"Opportunity {opportunity_id} not found for org {org_id}")
    snapshot = deal_snapshot(opp)
    health = opp.health_score if opp.health_score is not None else sum_category_scores(snapshot)
    confidence = compute_confidence(
        snapshot, source,
        extraction_confidence=extraction_confidence,
        comment_ingestion_id=comment_ingestion_id,
        now=now,
    )
    forecast = compute_ai_forecast(
        health,
        sales_stage_for_closed=opp.sales_stage_for_closed,
        sales_stage=opp.stage,
        forecast_stage=opp.forecast_stage,
    )
    return DealAssessment(
        org_id=org_id, opportunity_id=opportunity_id,
        health_score=health, max_score=MAX_TOTAL_SCORE,
        ai_forecast=forecast, confidence=confidence.to_dict(),
    ).model_dump()


def audit_event_dict(event: OpportunityAuditEvent) -> dict[str, Any]:
    return AuditEventOut(
        id=event.id, org_id=event.org_id, opportunity_id=event.opportunity_id,
        ts=event.ts.isoformat() if event.ts else None,
        run_id=str(event.run_id), call_id=event.call_id,
        actor_type=event.actor_type, event_type=event.event_type,
        schema_version=event.schema_version, prompt_version=event.prompt_version,
        logic_version=event.logic_version,
        forecast_stage=event.forecast_stage, ai_forecast=event.ai_forecast,
        risk_summary=event.risk_summary,
        risk_flags=json_parse(event.risk_flags_json, None),
        total_score=event.total_score, max_score=event.max_score,
        delta=json_parse(event.delta_json, {}),
        definitions=json_parse(event.definitions_json, {}),
        meta=json_parse(event.meta_json, {}),
    ).model_dump()


def list_audit_events(
    session: Session, org_id: int, opportunity_id: int, limit: int = 20,
) -> list[dict[str, Any]]:
    """Audit history for one deal, newest first."""
    events = session.execute(
        select(OpportunityAuditEvent)
        .where(
            OpportunityAuditEvent.org_id == org_id,
            OpportunityAuditEvent.opportunity_id == opportunity_id,
        )
        .order_by(OpportunityAuditEvent.id.desc())
        .limit(max(1, limit))
    ).scalars().all()
    return [audit_event_dict(e) for e in events]
