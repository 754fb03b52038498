from __future__ import annotations

import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from mcp.server.fastmcp import FastMCP

from dealscore import services
from dealscore.categories import CATEGORIES, FREE_TEXT_FIELDS, MAX_TOTAL_SCORE
from dealscore.confidence import SOURCE_LABELS
from dealscore.db import init_db, session_scope

log = logging.getLogger(__name__)

LOG_LEVEL_ENV = "DEALSCORE_LOG_LEVEL"


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def dealscore_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "DealScore",
    instructions=(
        "DealScore records deal-qualification scores for sales opportunities. "
        "Use save_deal_data to write category scores and notes (every save is audited), "
        "get_deal_confidence and get_deal_forecast to read the derived analytics, "
        "and list_audit_events to review what changed."
    ),
    lifespan=dealscore_lifespan,
    json_response=True,
)


def _error(exc: Exception) -> dict:
    return {"error": str(exc)}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("dealscore://overview")
def dealscore_overview() -> str:
    """Overview of DealScore: categories, writable fields, and derived outputs."""
    return json.dumps({
        "system": "DealScore: deal qualification scoring with an audit trail",
        "categories": [
            {"key": c.key, "label": c.label, "fields": list(c.companion_fields)}
            for c in CATEGORIES
        ],
        "free_text_fields": list(FREE_TEXT_FIELDS),
        "score_range": "Each category scores 0-3; health_score is their sum (max "
                       f"{MAX_TOTAL_SCORE}).",
        "score_sources": {s.value: label for s, label in SOURCE_LABELS.items()},
        "forecast_buckets": ["Closed Won", "Closed Lost", "Commit", "Best Case", "Pipeline"],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Saving
# ---------------------------------------------------------------------------


@mcp.tool()
def save_deal_data(
    org_id: int, opportunity_id: int, fields: dict[str, Any],
    rep_name: str | None = None, call_id: str | None = None,
) -> dict:
    """Save category scores and notes for a deal and write an audit event.

    Args:
        org_id: Organization the deal belongs to.
        opportunity_id: Deal id within the organization.
        fields: Values to set, e.g. {"pain_score": 2, "pain_summary": "...",
                "risk_summary": "..."}. Scores are 0-3. Unknown keys are
                recorded in the audit delta but not written. A "risk_flags"
                list is stored on the audit event.
        rep_name: Display name of the rep reporting the update.
        call_id: External call identifier to link the audit event to.
    """
    args = {**fields, "org_id": org_id, "opportunity_id": opportunity_id,
            "rep_name": rep_name, "call_id": call_id}
    with session_scope() as session:
        try:
            return services.handle_function_call(session, services.SAVE_TOOL, args)
        except services.SaveDealError as exc:
            return _error(exc)


# ---------------------------------------------------------------------------
# Tools: Reading
# ---------------------------------------------------------------------------


@mcp.tool()
def get_deal(org_id: int, opportunity_id: int) -> dict:
    """Get the current stored state of a deal, including all category fields."""
    with session_scope() as session:
        opp = services.get_opportunity(session, org_id, opportunity_id)
        if opp is None:
            return {"error": f"Opportunity {opportunity_id} not found for org {org_id}"}
        return services.deal_detail(opp)


@mcp.tool()
def get_deal_confidence(
    org_id: int, opportunity_id: int, source: str = "rep_review",
    extraction_confidence: str | None = None, comment_ingestion_id: int | None = None,
) -> dict:
    """Compute how trustworthy a deal's current scoring is (0-100, high/medium/low).

    Args:
        source: rep_review, ai_notes, manager_override, or system.
        extraction_confidence: high, medium, or low. Only used for ai_notes.
        comment_ingestion_id: Upstream notes ingestion id, reported back for ai_notes.
    """
    with session_scope() as session:
        try:
            result = services.assess_deal(
                session, org_id, opportunity_id, source=source,
                extraction_confidence=extraction_confidence,
                comment_ingestion_id=comment_ingestion_id,
            )
        except services.DealNotFound as exc:
            return _error(exc)
        return result["confidence"]


@mcp.tool()
def get_deal_forecast(org_id: int, opportunity_id: int) -> dict:
    """Get the AI forecast bucket (Closed Won/Lost, Commit, Best Case, Pipeline) for a deal."""
    with session_scope() as session:
        try:
            result = services.assess_deal(session, org_id, opportunity_id)
        except services.DealNotFound as exc:
            return _error(exc)
        return {k: result[k] for k in ("org_id", "opportunity_id", "health_score",
                                        "max_score", "ai_forecast")}


@mcp.tool()
def list_audit_events(org_id: int, opportunity_id: int, limit: int = 20) -> list[dict]:
    """List audit events for a deal, newest first (max 200)."""
    with session_scope() as session:
        return services.list_audit_events(
            session, org_id, opportunity_id, limit=max(1, min(limit, 200)),
        )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the DealScore MCP server over stdio."""
    logging.basicConfig(
        level=os.environ.get(LOG_LEVEL_ENV, "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    mcp.run()


if __name__ == "__main__":
    main()
