"""Deterministic confidence scoring for a deal's current qualification state.

No model calls and no I/O. The score is built from a fixed point budget:

- **Coverage** (0-50): share of the ten categories with a score above zero
- **Recency** (0-25): days since the deal was last updated
- **Source** (5-15): who produced the scores
- **Evidence** (0-10): extraction confidence, AI-notes source only
- **Time penalty** (0-10, subtracted): close date is near but updates are stale

The raw sum is clamped to 0..100 and mapped to a ``high`` / ``medium`` / ``low``
band. Malformed inputs never raise: unparseable scores count as zero and a
missing ``updated_at`` is treated as 999 days stale.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Mapping

from dealscore.categories import CATEGORIES
from dealscore.utils import to_datetime, to_number

STALE_DAYS = 999
MAX_GAPS = 2


class ScoreSource(str, Enum):
    REP_REVIEW = "rep_review"
    AI_NOTES = "ai_notes"
    MANAGER_OVERRIDE = "manager_override"
    SYSTEM = "system"


SOURCE_POINTS = {
    ScoreSource.REP_REVIEW: 15,
    ScoreSource.MANAGER_OVERRIDE: 12,
    ScoreSource.AI_NOTES: 8,
    ScoreSource.SYSTEM: 5,
}

SOURCE_LABELS = {
    ScoreSource.REP_REVIEW: "Rep Review",
    ScoreSource.AI_NOTES: "AI-notes",
    ScoreSource.MANAGER_OVERRIDE: "Manager Override",
    ScoreSource.SYSTEM: "System",
}

EVIDENCE_POINTS = {"high": 10, "medium": 5}

STALE_CLOSE_WARNING = "Close date is near and updates are stale."


@dataclass(frozen=True)
class ConfidenceResult:
    confidence_score: int
    confidence_band: str
    confidence_summary: str
    score_source: str
    evidence: dict[str, Any] = field(default_factory=dict)
    computed_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence_score": self.confidence_score,
            "confidence_band": self.confidence_band,
            "confidence_summary": self.confidence_summary,
            "score_source": self.score_source,
            "evidence": dict(self.evidence),
            "computed_at": self.computed_at,
        }


def parse_source(source: ScoreSource | str | None) -> ScoreSource:
    """Map a source string onto :class:`ScoreSource`; unknown values become ``SYSTEM``."""
    if isinstance(source, ScoreSource):
        return source
    try:
        return ScoreSource(str(source or "").strip().lower())
    except ValueError:
        return ScoreSource.SYSTEM


def days_between(start: datetime, end: datetime) -> int:
    """Whole days from *start* to *end*, floored (negative if *end* is earlier)."""
    return math.floor((end - start).total_seconds() / 86400)


def _category_score(opportunity: Mapping[str, Any], score_field: str) -> float:
    return to_number(opportunity.get(score_field)) or 0.0


def coverage_count(opportunity: Mapping[str, Any]) -> int:
    return sum(1 for c in CATEGORIES if _category_score(opportunity, c.score_field) > 0)


def coverage_points(count: int) -> int:
    return round(count / len(CATEGORIES) * 50)


def recency_points(days_since_update: int) -> int:
    if days_since_update <= 3:
        return 25
    if days_since_update <= 7:
        return 20
    if days_since_update <= 14:
        return 12
    if days_since_update <= 30:
        return 5
    return 0


def time_penalty(days_to_close: int | None, days_since_update: int) -> int:
    if days_to_close is None:
        return 0
    if days_to_close <= 14 and days_since_update > 7:
        return 10
    if days_to_close <= 30 and days_since_update > 14:
        return 5
    return 0


def confidence_band(score: int) -> str:
    if score >= 75:
        return "high"
    if score >= 45:
        return "medium"
    return "low"


def find_gaps(opportunity: Mapping[str, Any], limit: int = MAX_GAPS) -> list[str]:
    """Labels of the first *limit* categories scored zero or not at all."""
    gaps: list[str] = []
    for cat in CATEGORIES:
        if len(gaps) >= limit:
            break
        if _category_score(opportunity, cat.score_field) == 0:
            gaps.append(cat.label)
    return gaps


def _build_summary(
    band: str, count: int, days: int, source_label: str, gaps: list[str], penalised: bool,
) -> str:
    if band == "high":
        updated = "recently" if days <= 7 else f"{days} days ago"
        return (
            f"High confidence: {count}/10 categories scored; updated {updated}; "
            f"sourced from {source_label}."
        )
    # only the low band collapses long staleness into a phrase
    updated = "over 30 days ago" if band == "low" and days > 30 else f"{days} days ago"
    text = (
        f"{band.capitalize()} confidence: {count}/10 categories scored; updated {updated}; "
        f"sourced from {source_label}."
    )
    if gaps:
        text += f" Key gaps: {', '.join(gaps)}."
    if penalised:
        text += f" {STALE_CLOSE_WARNING}"
    return text


def compute_confidence(
    opportunity: Mapping[str, Any] | None,
    source: ScoreSource | str | None,
    extraction_confidence: str | None = None,
    comment_ingestion_id: Any = None,
    now: datetime | None = None,
) -> ConfidenceResult:
    """Compute the confidence score, band, and rationale for a deal snapshot.

    Args:
        opportunity: Plain field map of the deal (``*_score``, ``updated_at``, ``close_date``).
        source: Where the scores came from; see :class:`ScoreSource`.
        extraction_confidence: ``high`` / ``medium`` / ``low`` hint, AI-notes source only.
        comment_ingestion_id: Upstream ingestion reference, echoed in ``evidence``
            for the AI-notes source.
        now: Reference time; defaults to the current UTC time.
    """
    opp = opportunity or {}
    src = parse_source(source)
    ref = to_datetime(now) or datetime.now(UTC)

    count = coverage_count(opp)

    updated_at = to_datetime(opp.get("updated_at"))
    days_since_update = days_between(updated_at, ref) if updated_at else STALE_DAYS

    close_date = to_datetime(opp.get("close_date"))
    days_to_close = days_between(ref, close_date) if close_date else None
    penalty = time_penalty(days_to_close, days_since_update)

    evidence_mod = 0
    if src is ScoreSource.AI_NOTES and extraction_confidence:
        evidence_mod = EVIDENCE_POINTS.get(str(extraction_confidence).strip().lower(), 0)

    raw = (
        coverage_points(count)
        + recency_points(days_since_update)
        + SOURCE_POINTS[src]
        + evidence_mod
        - penalty
    )
    score = max(0, min(100, raw))
    band = confidence_band(score)

    summary = _build_summary(
        band, count, days_since_update, SOURCE_LABELS[src], find_gaps(opp), penalty > 0,
    )
    ingestion_ref = comment_ingestion_id if src is ScoreSource.AI_NOTES else None
    return ConfidenceResult(
        confidence_score=score,
        confidence_band=band,
        confidence_summary=summary,
        score_source=src.value,
        evidence={"comment_ingestion_id": ingestion_ref},
        computed_at=ref.isoformat(),
    )
