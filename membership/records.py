"""Membership record model and tolerant field parsing.

Rows come from the member sheet (header row first, columns matched by header
name) and the annotation sheet. Parsing never raises: blank or garbled dates
read as ``None`` and numbers as ``0``.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, fields, replace
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

STATUSES: Tuple[str, ...] = ("Active", "Churned", "Frozen")
DEFAULT_STATUS = "Active"

NA_TOKENS = {"nan", "none", "null", "<na>", "nat", "na", "n/a"}

MEMBER_COLUMNS = {
    "unique id": "unique_id",
    "member id": "member_id",
    "first name": "first_name",
    "last name": "last_name",
    "email": "email",
    "membership name": "membership_name",
    "end date": "end_date",
    "home location": "location",
    "location": "location",
    "current usage": "current_usage",
    "id": "item_id",
    "item id": "item_id",
    "order at": "order_date",
    "order date": "order_date",
    "sold by": "sold_by",
    "membership id": "membership_id",
    "frozen": "frozen",
    "paid": "paid",
    "status": "status",
    "comments": "comments",
    "notes": "notes",
    "sessions left": "sessions_left",
}

ANNOTATION_HEADER: List[str] = [
    "Member ID",
    "Email",
    "Comments",
    "Notes",
    "Tags",
    "Unique ID",
    "Associate Name",
    "Timestamp",
]


@dataclass(frozen=True)
class MembershipRecord:
    member_id: str
    unique_id: str = ""
    membership_id: str = ""
    item_id: str = ""
    first_name: str = ""
    last_name: str = ""
    email: str = ""
    membership_name: str = ""
    location: str = ""
    order_date: str = ""
    end_date: str = ""
    paid: str = ""
    status: str = DEFAULT_STATUS
    sold_by: str = ""
    frozen: str = ""
    current_usage: str = ""
    sessions_left: Optional[float] = None
    comments: str = ""
    notes: str = ""
    tags: Tuple[str, ...] = ()
    associate_name: str = ""
    annotated_at: str = ""
    ai_tags: Tuple[str, ...] = ()
    ai_confidence: Optional[float] = None
    ai_reasoning: str = ""
    ai_analysis_date: str = ""

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @property
    def paid_amount(self) -> float:
        return parse_amount(self.paid)

    @property
    def sessions(self) -> float:
        return parse_sessions(self.sessions_left)

    @property
    def has_feedback(self) -> bool:
        return bool(self.comments.strip() or self.notes.strip())

    @property
    def has_annotations(self) -> bool:
        return self.has_feedback or bool(self.tags)

    def with_annotations(
        self,
        *,
        comments: str,
        notes: str,
        tags: Iterable[str] | str,
        associate_name: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> "MembershipRecord":
        return replace(
            self,
            comments=comments or "",
            notes=notes or "",
            tags=normalize_tags(tags),
            associate_name=associate_name if associate_name is not None else self.associate_name,
            annotated_at=timestamp or self.annotated_at,
        )

    def with_ai_tags(
        self, tags: Iterable[str], confidence: float, reasoning: str, analysis_date: str
    ) -> "MembershipRecord":
        return replace(
            self,
            ai_tags=tuple(tags),
            ai_confidence=float(confidence),
            ai_reasoning=reasoning,
            ai_analysis_date=analysis_date,
        )

    def to_dict(self) -> Dict[str, object]:
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        out["tags"] = list(self.tags)
        out["ai_tags"] = list(self.ai_tags)
        return out


RECORD_FIELDS: Tuple[str, ...] = tuple(f.name for f in fields(MembershipRecord))


# ---------------- Field parsing ----------------
def clean_cell(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and math.isnan(value):
        return ""
    s = str(value).strip()
    if s.lower() in NA_TOKENS:
        return ""
    return s


def parse_date(value: object) -> Optional[datetime]:
    """Parse a sheet date cell into a naive datetime.

    Blank cells and anything pandas cannot read return ``None``; this function
    never raises. Timezone-aware values are converted to naive UTC.
    """
    if isinstance(value, (datetime, date)):
        ts = pd.Timestamp(value)
    else:
        s = clean_cell(value)
        if not s:
            return None
        try:
            ts = pd.to_datetime(s, errors="coerce")
        except (ValueError, TypeError, OverflowError):
            return None
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_convert(None)
    return ts.to_pydatetime()


def parse_amount(value: object) -> float:
    """Read a paid amount like ``"12,500.00"`` or ``"₹ 4999"``; 0 when unreadable."""
    s = re.sub(r"[^\d.\-]", "", clean_cell(value))
    try:
        out = float(s)
    except ValueError:
        return 0.0
    if math.isnan(out) or math.isinf(out):
        return 0.0
    return out


def parse_sessions(value: object) -> float:
    if value is None:
        return 0.0
    try:
        out = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(out) or math.isinf(out):
        return 0.0
    return out


def days_until_expiry(end_date: object, now: datetime) -> Optional[int]:
    end = end_date if isinstance(end_date, datetime) else parse_date(end_date)
    if end is None:
        return None
    return math.ceil((end - now).total_seconds() / 86400)


def normalize_status(value: object) -> str:
    s = clean_cell(value)
    if not s:
        return DEFAULT_STATUS
    for status in STATUSES:
        if s.lower() == status.lower():
            return status
    logger.warning("Unknown membership status %r, treating as %s", s, DEFAULT_STATUS)
    return DEFAULT_STATUS


def normalize_tags(tags: Iterable[str] | str | None) -> Tuple[str, ...]:
    if not tags:
        return ()
    items = tags.split(",") if isinstance(tags, str) else tags
    out: List[str] = []
    for tag in items:
        t = clean_cell(tag)
        if t and t not in out:
            out.append(t)
    return tuple(out)


# ---------------- Sheet rows -> records ----------------
def _canonical_header(value: object) -> str:
    return re.sub(r"\s+", " ", str(value)).strip().lower()


def rows_to_frame(rows: Sequence[Sequence[object]]) -> pd.DataFrame:
    """Turn a header-first list of sheet rows into a DataFrame of strings."""
    if not rows:
        return pd.DataFrame()
    header = [str(h) for h in rows[0]]
    width = len(header)
    body = [list(r)[:width] + [""] * (width - len(r)) for r in rows[1:]]
    return pd.DataFrame(body, columns=header)


def records_from_frame(df: pd.DataFrame) -> List[MembershipRecord]:
    if df.empty:
        return []
    renamed = df.rename(columns=lambda c: MEMBER_COLUMNS.get(_canonical_header(c), c))
    renamed = renamed.loc[:, ~renamed.columns.duplicated()]
    if "member_id" not in renamed.columns:
        logger.warning("Member sheet has no Member Id column; columns=%s", list(df.columns))
        return []

    records: List[MembershipRecord] = []
    seen: set[str] = set()
    skipped_blank = 0
    duplicates: List[str] = []
    for row in renamed.to_dict(orient="records"):
        member_id = clean_cell(row.get("member_id"))
        if not member_id:
            skipped_blank += 1
            continue
        if member_id in seen:
            duplicates.append(member_id)
            continue
        seen.add(member_id)
        text = {name: clean_cell(row.get(name)) for name in MEMBER_COLUMNS.values() if name != "sessions_left"}
        sessions_raw = clean_cell(row.get("sessions_left"))
        records.append(
            MembershipRecord(
                member_id=member_id,
                unique_id=text["unique_id"],
                membership_id=text["membership_id"],
                item_id=text["item_id"],
                first_name=text["first_name"],
                last_name=text["last_name"],
                email=text["email"],
                membership_name=text["membership_name"],
                location=text["location"],
                order_date=text["order_date"],
                end_date=text["end_date"],
                paid=text["paid"],
                status=normalize_status(text["status"]),
                sold_by=text["sold_by"],
                frozen=text["frozen"],
                current_usage=text["current_usage"],
                sessions_left=parse_sessions(sessions_raw) if sessions_raw else None,
                comments=text["comments"],
                notes=text["notes"],
            )
        )
    if skipped_blank:
        logger.warning("Skipped %d member rows without a Member Id", skipped_blank)
    if duplicates:
        logger.warning("Dropped %d duplicate member rows (first kept): %s", len(duplicates), duplicates[:10])
    return records


def records_from_rows(rows: Sequence[Sequence[object]]) -> List[MembershipRecord]:
    return records_from_frame(rows_to_frame(rows))


def merge_annotations(
    records: Sequence[MembershipRecord], annotation_rows: Sequence[Sequence[object]]
) -> List[MembershipRecord]:
    """Overlay the annotation sheet onto member records.

    Non-blank comments, notes and tags from the annotation row replace the
    member sheet values for the same ``member_id``.
    """
    if len(annotation_rows) <= 1:
        return list(records)
    by_member: Dict[str, Sequence[object]] = {}
    for row in annotation_rows[1:]:
        cells = list(row) + [""] * (len(ANNOTATION_HEADER) - len(row))
        member_id = clean_cell(cells[0])
        if member_id:
            by_member[member_id] = cells

    merged: List[MembershipRecord] = []
    for record in records:
        cells = by_member.get(record.member_id)
        if cells is None:
            merged.append(record)
            continue
        comments, notes, tags = clean_cell(cells[2]), clean_cell(cells[3]), normalize_tags(clean_cell(cells[4]))
        merged.append(
            replace(
                record,
                comments=comments or record.comments,
                notes=notes or record.notes,
                tags=tags or record.tags,
                associate_name=clean_cell(cells[6]) or record.associate_name,
                annotated_at=clean_cell(cells[7]) or record.annotated_at,
            )
        )
    return merged


def parse_date_series(values: pd.Series) -> pd.Series:
    """Element-wise ``parse_date`` returning a datetime64 Series (NaT when unreadable)."""
    return pd.to_datetime(values.map(parse_date).astype(object), errors="coerce")


def records_to_frame(records: Sequence[MembershipRecord], *, parse_dates: bool = True) -> pd.DataFrame:
    """One row per record, in input order, with parsed helper columns.

    ``paid_amount`` and ``sessions`` are always derived; ``end_date_parsed``
    (datetime or NaT) only when ``parse_dates`` is set, since date parsing is
    the expensive part for large sheets.
    """
    df = pd.DataFrame([r.to_dict() for r in records], columns=list(RECORD_FIELDS))
    df["paid_amount"] = pd.Series([r.paid_amount for r in records], dtype=float)
    df["sessions"] = pd.Series([r.sessions for r in records], dtype=float)
    if parse_dates:
        df["end_date_parsed"] = parse_date_series(df["end_date"])
    return df.reset_index(drop=True)
