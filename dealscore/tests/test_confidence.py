from __future__ import annotations

from datetime import UTC, date, datetime, timedelta

import pytest

from dealscore.categories import SCORE_FIELDS
from dealscore.confidence import (
    STALE_CLOSE_WARNING, ScoreSource, compute_confidence, confidence_band, days_between,
    parse_source,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


def _opp(scores: dict | None = None, days_ago: float | None = 2, close_date=None) -> dict:
    opp = {f: 0 for f in SCORE_FIELDS}
    opp.update({
        "pain_score": 2, "metrics_score": 2, "champion_score": 1, "competition_score": 2,
        "timing_score": 1, "budget_score": 2,
    })
    if scores is not None:
        opp.update(scores)
    opp["updated_at"] = (NOW - timedelta(days=days_ago)).isoformat() if days_ago is not None else None
    opp["close_date"] = close_date
    return opp


def _all(value) -> dict:
    return {f: value for f in SCORE_FIELDS}


class TestScenarios:
    def test_nothing_scored_recent_rep_review_is_low(self):
        r = compute_confidence(_opp(_all(0), days_ago=1), ScoreSource.REP_REVIEW, now=NOW)
        assert r.confidence_score == 40
        assert r.confidence_band == "low"
        assert r.confidence_summary == (
            "Low confidence: 0/10 categories scored; updated 1 days ago; "
            "sourced from Rep Review. Key gaps: Pain, Metrics."
        )

    def test_fully_scored_today_is_high(self):
        r = compute_confidence(_opp(_all(3), days_ago=0), "rep_review", now=NOW)
        assert r.confidence_score == 90
        assert r.confidence_band == "high"
        assert r.confidence_summary == (
            "High confidence: 10/10 categories scored; updated recently; sourced from Rep Review."
        )

    def test_near_close_and_stale_is_penalised(self):
        near = _opp(days_ago=10, close_date=date(2026, 3, 11))
        far = _opp(days_ago=10, close_date=date(2026, 5, 1))
        r_near = compute_confidence(near, "rep_review", now=NOW)
        r_far = compute_confidence(far, "rep_review", now=NOW)
        # 6/10 coverage = 30, recency 12, source 15
        assert r_far.confidence_score == 57
        assert r_near.confidence_score == 47
        assert r_near.confidence_band == "medium"
        assert r_near.confidence_summary.endswith(STALE_CLOSE_WARNING)
        assert STALE_CLOSE_WARNING not in r_far.confidence_summary
        assert "Key gaps: Economic Buyer, Criteria." in r_near.confidence_summary

    def test_thirty_day_window_penalty(self):
        opp = _opp(days_ago=20, close_date=date(2026, 3, 25))
        r = compute_confidence(opp, "rep_review", now=NOW)
        # 30 + 5 + 15 - 5
        assert r.confidence_score == 45

    def test_fresh_update_near_close_not_penalised(self):
        opp = _opp(days_ago=2, close_date=date(2026, 3, 5))
        r = compute_confidence(opp, "rep_review", now=NOW)
        assert r.confidence_score == 70


class TestSourceAndEvidence:
    @pytest.mark.parametrize("source,expected", [
        ("rep_review", 70), ("manager_override", 67), ("ai_notes", 63), ("system", 60),
        ("something_else", 60), (None, 60),
    ])
    def test_source_points(self, source, expected):
        assert compute_confidence(_opp(), source, now=NOW).confidence_score == expected

    @pytest.mark.parametrize("hint,expected", [("high", 73), ("medium", 68), ("low", 63), (None, 63)])
    def test_evidence_modifier_for_ai_notes(self, hint, expected):
        r = compute_confidence(_opp(), "ai_notes", extraction_confidence=hint, now=NOW)
        assert r.confidence_score == expected

    def test_evidence_modifier_ignored_for_other_sources(self):
        r = compute_confidence(_opp(), "rep_review", extraction_confidence="high", now=NOW)
        assert r.confidence_score == 70

    def test_ingestion_reference_only_for_ai_notes(self):
        ai = compute_confidence(_opp(), "ai_notes", comment_ingestion_id=55, now=NOW)
        rep = compute_confidence(_opp(), "rep_review", comment_ingestion_id=55, now=NOW)
        assert ai.evidence == {"comment_ingestion_id": 55}
        assert rep.evidence == {"comment_ingestion_id": None}
        assert "AI-notes" in ai.confidence_summary

    def test_parse_source(self):
        assert parse_source(" AI_NOTES ") is ScoreSource.AI_NOTES
        assert parse_source(ScoreSource.MANAGER_OVERRIDE) is ScoreSource.MANAGER_OVERRIDE
        assert parse_source("nope") is ScoreSource.SYSTEM


class TestBandsAndBounds:
    @pytest.mark.parametrize("score,band", [
        (100, "high"), (75, "high"), (74, "medium"), (45, "medium"), (44, "low"), (0, "low"),
    ])
    def test_band_thresholds(self, score, band):
        assert confidence_band(score) == band

    def test_clamped_at_zero(self):
        opp = _opp(_all(0), days_ago=40, close_date=date(2026, 3, 5))
        r = compute_confidence(opp, "system", now=NOW)
        assert r.confidence_score == 0
        assert r.confidence_band == "low"

    def test_score_always_in_range(self):
        for days in (0, 5, 10, 20, 40, None):
            for source in ScoreSource:
                for hint in ("high", None):
                    r = compute_confidence(
                        _opp(days_ago=days, close_date=date(2026, 3, 2)), source,
                        extraction_confidence=hint, now=NOW,
                    )
                    assert 0 <= r.confidence_score <= 100
                    assert r.confidence_band == confidence_band(r.confidence_score)


class TestMonotonicity:
    def test_more_coverage_never_lowers_score(self):
        scores = _all(0)
        previous = compute_confidence(_opp(scores), "rep_review", now=NOW).confidence_score
        for field in SCORE_FIELDS:
            scores[field] = 2
            current = compute_confidence(_opp(scores), "rep_review", now=NOW).confidence_score
            assert current >= previous
            previous = current

    def test_more_staleness_never_raises_score(self):
        previous = None
        for days in (0, 2, 3, 4, 7, 8, 14, 15, 30, 31, 100):
            current = compute_confidence(
                _opp(days_ago=days, close_date=date(2026, 3, 20)), "rep_review", now=NOW,
            ).confidence_score
            if previous is not None:
                assert current <= previous
            previous = current


class TestMalformedInput:
    def test_missing_updated_at_is_maximally_stale(self):
        r = compute_confidence(_opp(days_ago=None), "rep_review", now=NOW)
        assert r.confidence_score == 45
        assert r.confidence_band == "medium"
        assert "updated 999 days ago" in r.confidence_summary

    def test_low_band_collapses_long_staleness(self):
        r = compute_confidence(_opp(_all(0), days_ago=None), "rep_review", now=NOW)
        assert r.confidence_band == "low"
        assert "updated over 30 days ago" in r.confidence_summary
        r = compute_confidence(_opp(days_ago=45), "rep_review", now=NOW)
        assert r.confidence_band == "medium"
        assert "updated 45 days ago" in r.confidence_summary

    def test_unparseable_dates(self):
        opp = _opp()
        opp["updated_at"] = "last tuesday"
        opp["close_date"] = "soon"
        r = compute_confidence(opp, "rep_review", now=NOW)
        assert r.confidence_score == 45

    def test_non_numeric_scores_count_as_gaps(self):
        r = compute_confidence(
            _opp({"pain_score": "abc", "metrics_score": "3"}, days_ago=20), "system", now=NOW,
        )
        assert "5/10 categories scored" in r.confidence_summary
        assert "Key gaps: Pain, Economic Buyer." in r.confidence_summary

    def test_empty_and_none_opportunity(self):
        for opp in (None, {}):
            r = compute_confidence(opp, "system", now=NOW)
            assert r.confidence_score == 5
            assert r.confidence_summary.count("Key gaps:") == 1

    def test_naive_timestamps_treated_as_utc(self):
        opp = _opp()
        opp["updated_at"] = datetime(2026, 2, 27, 12, 0)
        assert compute_confidence(opp, "rep_review", now=NOW).confidence_score == 70


class TestRationale:
    def test_at_most_two_gaps_and_one_gap_clause(self):
        r = compute_confidence(_opp(_all(0) | {"pain_score": 1}), "rep_review", now=NOW)
        assert "1/10 categories scored" in r.confidence_summary
        assert r.confidence_summary.count("Key gaps:") == 1
        assert "Key gaps: Metrics, Champion." in r.confidence_summary

    def test_no_gap_clause_when_fully_covered(self):
        r = compute_confidence(_opp(_all(1), days_ago=40), "system", now=NOW)
        assert r.confidence_band == "medium"
        assert "Key gaps:" not in r.confidence_summary

    def test_high_band_reports_days_when_not_recent(self):
        r = compute_confidence(_opp(_all(3), days_ago=10), "ai_notes",
                               extraction_confidence="high", now=NOW)
        # 50 + 12 + 8 + 10
        assert r.confidence_score == 80
        assert "updated 10 days ago" in r.confidence_summary

    def test_computed_at_is_reference_time(self):
        r = compute_confidence(_opp(), "rep_review", now=NOW)
        assert r.computed_at == NOW.isoformat()
        assert r.to_dict()["confidence_score"] == r.confidence_score


class TestDaysBetween:
    def test_floors_partial_days(self):
        assert days_between(NOW, NOW + timedelta(hours=47)) == 1
        assert days_between(NOW, NOW - timedelta(hours=12)) == -1
