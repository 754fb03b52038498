"""Qualification categories and the registry of deal fields the save engine may write.

There are ten fixed categories (MEDDPICC plus Timing and Budget). Each one owns
a set of companion columns on ``opportunities`` named ``<prefix>_<suffix>``:

- ``_score``: integer 0..3
- ``_summary`` / ``_tip``: free text
- ``_name`` / ``_title``: contact fields, champion and economic buyer only

The registry below is explicit: a caller-supplied key is written only if it is
listed here and marked writable. Everything else is left out of the update but
still recorded in the audit delta.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from dealscore.utils import to_number

MIN_CATEGORY_SCORE = 0
MAX_CATEGORY_SCORE = 3


@dataclass(frozen=True)
class Category:
    key: str
    prefix: str
    label: str
    has_contact: bool = False

    @property
    def score_field(self) -> str:
        return f"{self.prefix}_score"

    @property
    def companion_fields(self) -> tuple[str, ...]:
        suffixes = ("score", "summary", "tip")
        if self.has_contact:
            suffixes += ("name", "title")
        return tuple(f"{self.prefix}_{s}" for s in suffixes)


CATEGORIES: tuple[Category, ...] = (
    Category("pain", "pain", "Pain"),
    Category("metrics", "metrics", "Metrics"),
    Category("champion", "champion", "Champion", has_contact=True),
    Category("economic_buyer", "eb", "Economic Buyer", has_contact=True),
    Category("criteria", "criteria", "Criteria"),
    Category("process", "process", "Process"),
    Category("competition", "competition", "Competition"),
    Category("paper", "paper", "Paper Process"),
    Category("timing", "timing", "Timing"),
    Category("budget", "budget", "Budget"),
)

SCORE_FIELDS: tuple[str, ...] = tuple(c.score_field for c in CATEGORIES)
MAX_TOTAL_SCORE = len(CATEGORIES) * MAX_CATEGORY_SCORE

# Keys that identify the call rather than describe the deal.
IDENTITY_KEYS = frozenset({"org_id", "opportunity_id", "rep_name", "call_id"})

FREE_TEXT_FIELDS = ("risk_summary", "next_steps", "rep_comments")


@dataclass(frozen=True)
class FieldSpec:
    kind: str  # "score" | "text"
    writable: bool = True


def _build_registry() -> dict[str, FieldSpec]:
    registry: dict[str, FieldSpec] = {}
    for cat in CATEGORIES:
        for field in cat.companion_fields:
            kind = "score" if field == cat.score_field else "text"
            registry[field] = FieldSpec(kind)
    for field in FREE_TEXT_FIELDS:
        registry[field] = FieldSpec("text")
    # Present on the deal but owned by other writers.
    registry["manager_comments"] = FieldSpec("text", writable=False)
    registry["health_score"] = FieldSpec("score", writable=False)
    return registry


FIELD_REGISTRY: dict[str, FieldSpec] = _build_registry()


def detect_category(args: Mapping[str, Any]) -> str | None:
    """Return the key of the first category (fixed order) with any companion field supplied."""
    for cat in CATEGORIES:
        if any(f in args for f in cat.companion_fields):
            return cat.key
    return None


def build_delta(args: Mapping[str, Any]) -> dict[str, Any]:
    """Everything the caller asked to change, verbatim, minus the identity keys."""
    return {k: v for k, v in args.items() if k not in IDENTITY_KEYS}


def writable_fields(args: Mapping[str, Any]) -> dict[str, Any]:
    """Filter caller args down to the registered, writable columns."""
    out: dict[str, Any] = {}
    for key, value in args.items():
        if key in IDENTITY_KEYS:
            continue
        spec = FIELD_REGISTRY.get(key)
        if spec is not None and spec.writable:
            out[key] = value
    return out


def clamp_score(value: float) -> int:
    return int(max(MIN_CATEGORY_SCORE, min(MAX_CATEGORY_SCORE, round(value))))


def sum_category_scores(values: Mapping[str, Any]) -> int:
    """Aggregate health score: the ten category scores summed, missing or non-numeric as zero."""
    total = 0.0
    for field in SCORE_FIELDS:
        n = to_number(values.get(field))
        if n is not None:
            total += n
    return int(total)
