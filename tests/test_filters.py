from datetime import datetime

import pytest

from membership.filters import (
    CUSTOM_FILTERS,
    FilterCriteria,
    active_filter_count,
    filter_options,
    filter_records,
    has_active_filters,
    normalize_filters,
)
from membership.records import MembershipRecord
from tests.fakes import ids

NOW = datetime(2025, 1, 1)


def run(records, now=NOW, **raw):
    return filter_records(records, normalize_filters(raw), now=now)


def test_empty_criteria_is_identity(records):
    result = filter_records(records, FilterCriteria(), now=NOW)
    assert result == records
    assert ids(result) == ["A", "B", "C", "D", "E"]


def test_filtering_is_idempotent(records):
    criteria = normalize_filters({"location": ["Bandra"], "expiry_range": "future"})
    once = filter_records(records, criteria, now=NOW)
    assert filter_records(once, criteria, now=NOW) == once


def test_status_then_expiring_week_example():
    a = MembershipRecord(member_id="A", status="Active", end_date="2025-01-05")
    b = MembershipRecord(member_id="B", status="Churned", end_date="2025-01-05")
    assert ids(run([a, b], status=["Active"])) == ["A"]
    assert ids(run([a, b], status=["Active"], expiry_range="expiring-week")) == ["A"]


def test_end_date_equal_to_now_is_expiring_not_expired():
    r = MembershipRecord(member_id="X", end_date="2025-01-01")
    assert ids(run([r], expiry_range="expired")) == []
    assert ids(run([r], expiry_range="expiring-week")) == ["X"]
    assert ids(run([r], custom_filters=["expiring-week"])) == ["X"]


@pytest.mark.parametrize(
    "first,second",
    [
        ({"status": ["Active"]}, {"location": ["Bandra"]}),
        ({"search": "studio 12"}, {"expiry_range": "expiring-week"}),
        ({"high_value": True}, {"has_annotations": True}),
        ({"membership_type": ["Studio 8 Pack"]}, {"expiry_range": "expired"}),
        ({"custom_filters": ["premium"]}, {"sessions_range": {"min": 10, "max": 100}}),
    ],
)
def test_and_composition_is_intersection(records, first, second):
    # each side must narrow the sheet on its own
    assert len(run(records, **first)) < len(records)
    assert len(run(records, **second)) < len(records)
    both = set(ids(run(records, **first, **second)))
    assert both == set(ids(run(records, **first))) & set(ids(run(records, **second)))


def test_expiry_ranges(records):
    assert ids(run(records, expiry_range="expired")) == ["D"]
    assert ids(run(records, expiry_range="expiring-week")) == ["A", "B"]
    assert ids(run(records, expiry_range="expiring-month")) == ["A", "B"]
    assert ids(run(records, expiry_range="future")) == ["C"]


def test_unparsable_end_date_fails_closed(records):
    assert "E" not in ids(run(records, expiry_range="future"))
    assert "E" not in ids(run(records, date_range={"start": "2000-01-01"}))


def test_date_range_bounds_are_inclusive(records):
    assert ids(run(records, date_range={"start": "2025-01-05", "end": "2025-01-05"})) == ["A", "B"]
    assert ids(run(records, date_range={"end": "2024-12-31"})) == ["D"]


def test_search_is_case_insensitive_substring(records):
    assert ids(run(records, search="ASHA")) == ["A"]
    assert ids(run(records, search="kemps")) == ["B", "D"]
    assert ids(run(records, search="@example.com")) == ["A", "B", "C", "D", "E"]


def test_flags_and_sessions(records):
    assert ids(run(records, high_value=True)) == ["A", "C", "E"]
    assert ids(run(records, low_sessions=True)) == ["A", "B", "D"]
    assert ids(run(records, sessions_range={"min": 3, "max": 10})) == ["E"]
    assert ids(run(records, has_annotations=True)) == ["A", "C"]


def test_custom_filters(records):
    assert ids(run(records, custom_filters=["premium"])) == ["A", "C"]
    assert ids(run(records, custom_filters=["high-value"])) == ["A", "C", "E"]
    assert ids(run(records, custom_filters=["low-sessions"])) == ["A", "B", "D"]
    # Churned B ends in the same window but only Active plans count
    assert ids(run(records, custom_filters=["expiring-week"])) == ["A"]
    assert ids(run(records, custom_filters=["expiring-month"])) == ["A"]


def test_empty_sets_match_all(records):
    assert run(records, status=[], location=[], membership_type=[]) == records


def test_normalize_filters_drops_all_and_defaults():
    criteria = normalize_filters({"status": "all", "location": ["all", "Bandra"], "sessions_range": {"min": "x"}})
    assert criteria.status == ()
    assert criteria.location == ("Bandra",)
    assert criteria.sessions_range.min == 0.0
    assert not criteria.sessions_range.is_active


@pytest.mark.parametrize(
    "raw",
    [
        {"status": ["Paused"]},
        {"expiry_range": "soon"},
        {"custom_filters": ["vip-only"]},
    ],
)
def test_invalid_criteria_raise(raw):
    with pytest.raises(ValueError):
        normalize_filters(raw)


def test_active_filter_count():
    assert not has_active_filters(FilterCriteria())
    criteria = normalize_filters(
        {"search": "x", "status": ["Active", "Frozen"], "expiry_range": "expired", "custom_filters": ["premium"], "high_value": True}
    )
    assert active_filter_count(criteria) == 6
    assert has_active_filters(criteria)


def test_filter_options(records):
    options = filter_options(records)
    assert options["status"] == ["Active", "Churned", "Frozen"]
    assert options["location"] == ["Bandra", "Kemps Corner"]
    assert options["custom_filters"] == sorted(CUSTOM_FILTERS)


@pytest.mark.parametrize(
    "name,expected",
    [
        ("premium", ["A", "C"]),
        ("high-value", ["A", "C", "E"]),
        ("low-sessions", ["A", "B", "D"]),
        ("expiring-week", ["A"]),
        ("expiring-month", ["A"]),
    ],
)
def test_single_named_filter_without_date_predicates(records, name, expected):
    assert ids(run(records, custom_filters=[name])) == expected


def test_named_filters_combine_with_each_other(records):
    assert ids(run(records, custom_filters=["high-value", "low-sessions"])) == ["A"]
    assert ids(run(records, custom_filters=["premium"], location=["Bandra"], status=["Active"])) == ["A", "C"]
