from datetime import datetime

from membership.records import (
    ANNOTATION_HEADER,
    days_until_expiry,
    merge_annotations,
    normalize_status,
    normalize_tags,
    parse_amount,
    parse_date,
    records_from_rows,
    records_to_frame,
)

HEADER = ["Unique Id", "Member Id", "First Name", "Last Name", "Email", "Membership Name", "End Date", "Home Location", "Paid", "Status", "Sessions Left"]


def test_parse_date_tolerates_garbage():
    assert parse_date("2025-01-05") == datetime(2025, 1, 5)
    assert parse_date("") is None
    assert parse_date("n/a") is None
    assert parse_date("not a date") is None
    assert parse_date(None) is None


def test_parse_date_drops_timezone():
    assert parse_date("2025-01-05T10:00:00+05:30") == datetime(2025, 1, 5, 4, 30)


def test_parse_amount_strips_symbols():
    assert parse_amount("12,500.00") == 12500.0
    assert parse_amount("₹ 4999") == 4999.0
    assert parse_amount("") == 0.0
    assert parse_amount("free") == 0.0


def test_days_until_expiry_rounds_up():
    now = datetime(2025, 1, 1)
    assert days_until_expiry("2025-01-01", now) == 0
    assert days_until_expiry("2025-01-05", now) == 4
    assert days_until_expiry("2024-12-31", now) == -1
    assert days_until_expiry(datetime(2025, 1, 1, 6), now) == 1
    assert days_until_expiry("bad", now) is None


def test_normalize_status():
    assert normalize_status("churned") == "Churned"
    assert normalize_status("") == "Active"
    assert normalize_status("Paused") == "Active"


def test_normalize_tags_dedupes_and_splits():
    assert normalize_tags("VIP, Follow up,VIP") == ("VIP", "Follow up")
    assert normalize_tags(["a", "", "b"]) == ("a", "b")
    assert normalize_tags(None) == ()


def test_records_from_rows_maps_headers_and_dedupes():
    rows = [
        HEADER,
        ["u1", "M1", "Asha", "Rao", "asha@example.com", "Studio 12 Pack", "2025-01-05", "Bandra", "12000", "active", "4"],
        ["u2", "M1", "Dup", "Row", "", "", "", "", "", "", ""],
        ["u3", "", "No", "Id"],
        ["u4", "M2", "Bilal", "Khan", "", "Studio 8 Pack", "", "Kemps Corner", "", "", ""],
    ]
    records = records_from_rows(rows)
    assert [r.member_id for r in records] == ["M1", "M2"]
    first = records[0]
    assert first.first_name == "Asha"
    assert first.location == "Bandra"
    assert first.status == "Active"
    assert first.sessions_left == 4.0
    assert records[1].sessions_left is None


def test_merge_annotations_overrides_non_blank_fields(records):
    rows = [ANNOTATION_HEADER, ["B", "bilal@example.com", "Moving cities", "", "Follow up", "", "Priya", "2025-01-01T00:00:00"]]
    merged = merge_annotations(records, rows)
    b = next(r for r in merged if r.member_id == "B")
    assert b.comments == "Moving cities"
    assert b.tags == ("Follow up",)
    assert b.associate_name == "Priya"
    assert merged[0] is records[0]


def test_records_to_frame_parses_helper_columns(records):
    df = records_to_frame(records)
    assert list(df["member_id"]) == ["A", "B", "C", "D", "E"]
    assert df.loc[0, "paid_amount"] == 12000.0
    assert df.loc[3, "sessions"] == 0.0
    assert df["end_date_parsed"].isna().tolist() == [False, False, False, False, True]
    assert "end_date_parsed" not in records_to_frame(records, parse_dates=False).columns


def test_with_annotations_keeps_associate_when_not_given(records):
    updated = records[2].with_annotations(comments="ok", notes="", tags="a,b")
    assert updated.tags == ("a", "b")
    assert updated.associate_name == records[2].associate_name
    assert records[2].comments == ""
