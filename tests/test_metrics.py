from datetime import datetime

from membership.classifier import ClassificationResult, apply_classification
from membership.filters import FilterCriteria, normalize_filters
from membership.metrics_ai import compute_ai_analytics
from membership.metrics_overview import compute_overview

NOW = datetime(2025, 1, 1)


def test_overview_counts(records):
    payload = compute_overview(FilterCriteria(), records, now=NOW)
    kpis = payload["kpis"]
    assert kpis["total_members"] == 5
    assert kpis["active_members"] == 3
    assert kpis["churned_members"] == 1
    assert kpis["frozen_members"] == 1
    assert kpis["expiring_this_month"] == 2
    assert kpis["expired_members"] == 1
    assert kpis["annotated_members"] == 2
    assert kpis["total_paid"] == 12000 + 4500 + 60000 + 8000
    assert payload["rates"]["active_rate"] == 60.0
    assert set(payload["charts"]) == {"status", "location"}
    assert payload["active_filter_count"] == 0


def test_overview_respects_filters(records):
    payload = compute_overview(normalize_filters({"location": ["Bandra"]}), records, now=NOW)
    assert payload["kpis"]["total_members"] == 3
    assert payload["filters"]["location"] == ("Bandra",)


def test_overview_of_nothing(records):
    payload = compute_overview(normalize_filters({"search": "nobody"}), records, now=NOW)
    assert payload["kpis"]["total_members"] == 0
    assert payload["rates"]["churn_rate"] is None
    assert payload["charts"] == {}


def test_ai_analytics(records):
    tagged = list(records)
    tagged[0] = apply_classification(tagged[0], ClassificationResult("A", ("Health or injury issues",), 95.0, "injury"), now=NOW)
    tagged[2] = apply_classification(
        tagged[2], ClassificationResult("C", ("Cost concerns", "Perceived value gap"), 85.0, "price"), now=NOW
    )
    tagged[4] = apply_classification(tagged[4], ClassificationResult("E", ("Miscellaneous",), 50.0, "n/a"), now=NOW)

    payload = compute_ai_analytics(FilterCriteria(), tagged, now=NOW)
    assert payload["analyzed_count"] == 3
    assert payload["analyzed_percentage"] == 60.0
    assert payload["tag_counts"]["Cost concerns"] == 1
    assert payload["average_confidence"] == (95 + 85 + 50) / 3
    assert payload["risk_members"] == 2
    assert payload["risk_member_ids"] == ["A", "C"]
    assert payload["unique_tags"] == 4
    assert payload["top_issue"]["tag"] == "Health or injury issues"
    assert tagged[0].ai_analysis_date == "2025-01-01T00:00:00"


def test_ai_analytics_without_results(records):
    payload = compute_ai_analytics(FilterCriteria(), records, now=NOW)
    assert payload["analyzed_count"] == 0
    assert payload["top_issue"] is None
    assert payload["charts"]["top_tags"] is None
