"""Composable filter engine over membership records.

Every predicate group is ANDed with the others. A group at its default value
(empty string, empty set, ``"all"``, sessions range ``[0, 100]``, flag off)
is inactive and matches every record.

Empty ``status`` / ``location`` / ``membership_type`` sets mean *match all*,
not *match none*. Filter panels start with nothing selected and show the
whole sheet, so this is kept intentionally.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from membership.records import (
    STATUSES,
    MembershipRecord,
    parse_date,
    parse_date_series,
    records_to_frame,
)

EXPIRY_RANGES: Tuple[str, ...] = ("all", "expired", "expiring-week", "expiring-month", "future")
SESSIONS_MIN_DEFAULT = 0.0
SESSIONS_MAX_DEFAULT = 100.0
HIGH_VALUE_THRESHOLD = 5000.0
PREMIUM_THRESHOLD = 10000.0
LOW_SESSIONS_THRESHOLD = 3.0

SEARCH_FIELDS: Tuple[str, ...] = ("first_name", "last_name", "email", "member_id", "membership_name", "location")

Predicate = Callable[[pd.DataFrame, datetime], pd.Series]

CUSTOM_FILTERS: Dict[str, Predicate] = {}


def custom_filter(name: str) -> Callable[[Predicate], Predicate]:
    def register(fn: Predicate) -> Predicate:
        CUSTOM_FILTERS[name] = fn
        return fn

    return register


@dataclass(frozen=True)
class DateRange:
    start: str = ""
    end: str = ""

    @property
    def is_active(self) -> bool:
        return bool(self.start or self.end)


@dataclass(frozen=True)
class SessionsRange:
    min: float = SESSIONS_MIN_DEFAULT
    max: float = SESSIONS_MAX_DEFAULT

    @property
    def is_active(self) -> bool:
        return self.min > SESSIONS_MIN_DEFAULT or self.max < SESSIONS_MAX_DEFAULT


@dataclass(frozen=True)
class FilterCriteria:
    """Immutable filter state. Empty sets and defaults leave a group inactive."""

    search: str = ""
    status: Tuple[str, ...] = ()
    location: Tuple[str, ...] = ()
    membership_type: Tuple[str, ...] = ()
    date_range: DateRange = field(default_factory=DateRange)
    sessions_range: SessionsRange = field(default_factory=SessionsRange)
    expiry_range: str = "all"
    has_annotations: bool = False
    high_value: bool = False
    low_sessions: bool = False
    custom_filters: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        bad_status = [s for s in self.status if s not in STATUSES]
        if bad_status:
            raise ValueError(f"Unknown status filter(s) {bad_status}; expected one of {list(STATUSES)}")
        if self.expiry_range not in EXPIRY_RANGES:
            raise ValueError(f"Unknown expiry range {self.expiry_range!r}; expected one of {list(EXPIRY_RANGES)}")
        unknown = [name for name in self.custom_filters if name not in CUSTOM_FILTERS]
        if unknown:
            raise ValueError(f"Unknown custom filter(s) {unknown}; expected any of {sorted(CUSTOM_FILTERS)}")


# ---------------- Named custom filters ----------------
def days_until_expiry_series(end_dates: pd.Series, now: datetime) -> pd.Series:
    """ceil((end - now) / 1 day); NaN where the end date is unreadable."""
    delta = (end_dates - pd.Timestamp(now)) / pd.Timedelta(days=1)
    return pd.Series(np.ceil(delta.astype(float)), index=end_dates.index)


def _active_and_ending_within(df: pd.DataFrame, now: datetime, days: int) -> pd.Series:
    ends = df["end_date_parsed"]
    horizon = pd.Timestamp(now + timedelta(days=days))
    return df["status"].eq("Active") & ends.notna() & (ends >= pd.Timestamp(now)) & (ends <= horizon)


@custom_filter("premium")
def _premium(df: pd.DataFrame, now: datetime) -> pd.Series:
    return df["paid_amount"] > PREMIUM_THRESHOLD


@custom_filter("high-value")
def _high_value(df: pd.DataFrame, now: datetime) -> pd.Series:
    return df["paid_amount"] > HIGH_VALUE_THRESHOLD


@custom_filter("low-sessions")
def _low_sessions(df: pd.DataFrame, now: datetime) -> pd.Series:
    return df["sessions"] <= LOW_SESSIONS_THRESHOLD


@custom_filter("expiring-week")
def _expiring_week(df: pd.DataFrame, now: datetime) -> pd.Series:
    return _active_and_ending_within(df, now, 7)


@custom_filter("expiring-month")
def _expiring_month(df: pd.DataFrame, now: datetime) -> pd.Series:
    return _active_and_ending_within(df, now, 30)


EXPIRY_PREDICATES: Dict[str, Callable[[pd.Series], pd.Series]] = {
    "expired": lambda days: days < 0,
    "expiring-week": lambda days: (days >= 0) & (days <= 7),
    "expiring-month": lambda days: (days >= 0) & (days <= 30),
    "future": lambda days: days > 30,
}

DATE_DEPENDENT_FILTERS = {"expiring-week", "expiring-month"}


# ---------------- Criteria construction ----------------
def _as_str_tuple(values: object) -> Tuple[str, ...]:
    if not values:
        return ()
    if isinstance(values, str):
        values = [values]
    out: List[str] = []
    for v in values:  # type: ignore[union-attr]
        if v is None:
            continue
        s = str(v).strip()
        if s and s.lower() != "all" and s not in out:
            out.append(s)
    return tuple(out)


def _as_float(value: object, default: float) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def normalize_filters(raw: Optional[dict]) -> FilterCriteria:
    """Build criteria from a loose dict (query params, JSON body, UI state).

    Numbers and blanks are coerced to defaults; unknown statuses, expiry
    ranges or custom filter names raise ``ValueError``.
    """
    raw = raw or {}
    date_range = raw.get("date_range") or {}
    sessions_range = raw.get("sessions_range") or {}
    expiry_range = str(raw.get("expiry_range") or "all").strip() or "all"
    return FilterCriteria(
        search=str(raw.get("search") or "").strip(),
        status=_as_str_tuple(raw.get("status")),
        location=_as_str_tuple(raw.get("location")),
        membership_type=_as_str_tuple(raw.get("membership_type")),
        date_range=DateRange(
            start=str(date_range.get("start") or "").strip(),
            end=str(date_range.get("end") or "").strip(),
        ),
        sessions_range=SessionsRange(
            min=_as_float(sessions_range.get("min"), SESSIONS_MIN_DEFAULT),
            max=_as_float(sessions_range.get("max"), SESSIONS_MAX_DEFAULT),
        ),
        expiry_range=expiry_range,
        has_annotations=bool(raw.get("has_annotations", False)),
        high_value=bool(raw.get("high_value", False)),
        low_sessions=bool(raw.get("low_sessions", False)),
        custom_filters=_as_str_tuple(raw.get("custom_filters")),
    )


def has_active_filters(criteria: FilterCriteria) -> bool:
    return active_filter_count(criteria) > 0


def active_filter_count(criteria: FilterCriteria) -> int:
    count = 0
    if criteria.search:
        count += 1
    count += len(criteria.status) + len(criteria.location) + len(criteria.membership_type)
    if criteria.date_range.is_active:
        count += 1
    if criteria.sessions_range.is_active:
        count += 1
    if criteria.has_annotations:
        count += 1
    if criteria.expiry_range != "all":
        count += 1
    count += len(criteria.custom_filters)
    if criteria.high_value:
        count += 1
    if criteria.low_sessions:
        count += 1
    return count


# ---------------- Evaluation ----------------
def _needs_dates(criteria: FilterCriteria) -> bool:
    return (
        criteria.date_range.is_active
        or criteria.expiry_range != "all"
        or any(name in DATE_DEPENDENT_FILTERS for name in criteria.custom_filters)
    )


def _search_mask(df: pd.DataFrame, term: str) -> pd.Series:
    needle = term.lower()
    mask = pd.Series(False, index=df.index)
    for col in SEARCH_FIELDS:
        mask |= df[col].astype(str).str.lower().str.contains(needle, regex=False, na=False)
    return mask


def _annotation_mask(df: pd.DataFrame) -> pd.Series:
    return (
        df["comments"].astype(str).str.strip().ne("")
        | df["notes"].astype(str).str.strip().ne("")
        | df["tags"].map(len).gt(0)
    )


def filter_mask(df: pd.DataFrame, criteria: FilterCriteria, now: datetime) -> pd.Series:
    """Boolean mask over a ``records_to_frame`` frame.

    Set membership and flag checks run first; end dates are parsed only for
    rows that survive them, unless the frame already carries
    ``end_date_parsed``.
    """
    mask = pd.Series(True, index=df.index)
    if criteria.status:
        mask &= df["status"].isin(criteria.status)
    if criteria.location:
        mask &= df["location"].isin(criteria.location)
    if criteria.membership_type:
        mask &= df["membership_name"].isin(criteria.membership_type)
    if criteria.high_value:
        mask &= df["paid_amount"] > HIGH_VALUE_THRESHOLD
    if criteria.low_sessions:
        mask &= df["sessions"] <= LOW_SESSIONS_THRESHOLD
    if criteria.sessions_range.is_active:
        mask &= df["sessions"].between(criteria.sessions_range.min, criteria.sessions_range.max)
    if criteria.has_annotations:
        mask &= _annotation_mask(df)
    if criteria.search:
        mask &= _search_mask(df, criteria.search)
    for name in criteria.custom_filters:
        if name not in DATE_DEPENDENT_FILTERS:
            mask &= CUSTOM_FILTERS[name](df, now).astype(bool)

    if not _needs_dates(criteria) or not mask.any():
        return mask

    if "end_date_parsed" in df.columns:
        work = df.loc[mask]
    else:
        work = df.loc[mask].copy()
        work["end_date_parsed"] = parse_date_series(work["end_date"])
    ends = work["end_date_parsed"]
    keep = pd.Series(True, index=work.index)

    if criteria.date_range.is_active:
        keep &= ends.notna()
        start = parse_date(criteria.date_range.start)
        end = parse_date(criteria.date_range.end)
        if start is not None:
            keep &= ends >= pd.Timestamp(start)
        if end is not None:
            keep &= ends <= pd.Timestamp(end)

    if criteria.expiry_range != "all":
        days = days_until_expiry_series(ends, now)
        keep &= days.notna() & EXPIRY_PREDICATES[criteria.expiry_range](days)

    for name in criteria.custom_filters:
        if name in DATE_DEPENDENT_FILTERS:
            keep &= CUSTOM_FILTERS[name](work, now).astype(bool)

    out = pd.Series(False, index=df.index)
    out.loc[keep.index] = keep
    return out


def filter_records(
    records: Iterable[MembershipRecord],
    criteria: FilterCriteria,
    *,
    now: Optional[datetime] = None,
) -> List[MembershipRecord]:
    """Return the records matching every active predicate, in input order.

    Pure: records are never modified and the result depends only on the
    arguments (``now`` defaults to the current time).
    """
    records = list(records)
    if not records or not has_active_filters(criteria):
        return records
    df = records_to_frame(records, parse_dates=False)
    mask = filter_mask(df, criteria, now or datetime.now())
    return [record for record, keep in zip(records, mask.tolist()) if keep]


def filter_options(records: Sequence[MembershipRecord]) -> Dict[str, List[str]]:
    present = {r.status for r in records}
    return {
        "status": [s for s in STATUSES if s in present],
        "location": sorted({r.location for r in records if r.location}),
        "membership_type": sorted({r.membership_name for r in records if r.membership_name}),
        "expiry_range": list(EXPIRY_RANGES),
        "custom_filters": sorted(CUSTOM_FILTERS),
    }
