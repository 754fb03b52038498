"""AI forecast bucket: health score + stage text -> Closed Won / Closed Lost / Commit / Best Case / Pipeline."""
from __future__ import annotations

import re
from typing import Any

from dealscore.utils import to_number

CLOSED_WON = "Closed Won"
CLOSED_LOST = "Closed Lost"
COMMIT = "Commit"
BEST_CASE = "Best Case"
PIPELINE = "Pipeline"

COMMIT_THRESHOLD = 24
BEST_CASE_THRESHOLD = 18

_WON_RE = re.compile(r"\bwon\b", re.IGNORECASE)
_LOST_RE = re.compile(r"\b(?:lost|closed)\b", re.IGNORECASE)


def _stage_text(value: Any) -> str:
    return str(value or "").strip()


def pick_stage(*candidates: Any) -> str:
    """First non-empty stage text among *candidates*, or ``""``."""
    for candidate in candidates:
        text = _stage_text(candidate)
        if text:
            return text
    return ""


def is_closed_stage(stage: Any) -> bool:
    s = _stage_text(stage)
    return bool(s) and bool(_WON_RE.search(s) or _LOST_RE.search(s))


def normalize_closed_forecast(stage: Any) -> str | None:
    s = _stage_text(stage)
    if not s:
        return None
    if _WON_RE.search(s):
        return CLOSED_WON
    if _LOST_RE.search(s):
        return CLOSED_LOST
    return None


def compute_ai_forecast(
    health_score: Any,
    sales_stage_for_closed: Any = None,
    sales_stage: Any = None,
    forecast_stage: Any = None,
) -> str | None:
    """Bucket a deal for the AI forecast.

    A closed stage (whole word ``won``, ``lost`` or ``closed``) wins over the
    score. Open deals are bucketed on the health score: >=24 Commit, >=18 Best
    Case, otherwise Pipeline. A missing or non-numeric score yields ``None``.
    """
    stage = pick_stage(sales_stage_for_closed, sales_stage, forecast_stage)
    if is_closed_stage(stage):
        return normalize_closed_forecast(stage)

    score = to_number(health_score)
    if score is None:
        return None
    if score >= COMMIT_THRESHOLD:
        return COMMIT
    if score >= BEST_CASE_THRESHOLD:
        return BEST_CASE
    return PIPELINE
