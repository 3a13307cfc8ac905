"""Lapsing members: Active plans ending within the next 30 days."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd

from membership.charts import PRIORITY_COLORS, count_bar_chart, to_vega_spec
from membership.records import MembershipRecord, days_until_expiry

PRIORITIES = ("critical", "high", "medium", "low")
LAPSING_WINDOW_DAYS = 30
FOLLOW_UP_DAYS = 7


@dataclass(frozen=True)
class LapsingMember:
    record: MembershipRecord
    days_until_expiry: int
    priority: str
    follow_up_required: bool

    def to_dict(self) -> Dict[str, Any]:
        out = self.record.to_dict()
        out.update(
            days_until_expiry=self.days_until_expiry,
            priority=self.priority,
            follow_up_required=self.follow_up_required,
        )
        return out


def lapsing_priority(days: int) -> str:
    if days <= 3:
        return "critical"
    if days <= 7:
        return "high"
    if days <= 14:
        return "medium"
    return "low"


def compute_lapsing_members(
    records: Sequence[MembershipRecord], *, now: Optional[datetime] = None
) -> List[LapsingMember]:
    now = now or datetime.now()
    out: List[LapsingMember] = []
    for record in records:
        if record.status != "Active":
            continue
        days = days_until_expiry(record.end_date, now)
        if days is None or not (0 < days <= LAPSING_WINDOW_DAYS):
            continue
        out.append(
            LapsingMember(
                record=record,
                days_until_expiry=days,
                priority=lapsing_priority(days),
                follow_up_required=days <= FOLLOW_UP_DAYS,
            )
        )
    # sorted() is stable, so equal days keep input order
    return sorted(out, key=lambda m: m.days_until_expiry)


def compute_lapsing(
    records: Sequence[MembershipRecord],
    *,
    now: Optional[datetime] = None,
    priority: str = "all",
) -> Dict[str, Any]:
    if priority != "all" and priority not in PRIORITIES:
        raise ValueError(f"Unknown priority {priority!r}")
    lapsing = compute_lapsing_members(records, now=now)
    stats = {p: sum(1 for m in lapsing if m.priority == p) for p in PRIORITIES}
    stats["total"] = len(lapsing)
    stats["follow_up_required"] = sum(1 for m in lapsing if m.follow_up_required)

    selected = lapsing if priority == "all" else [m for m in lapsing if m.priority == priority]

    chart = None
    if lapsing:
        counts = pd.DataFrame({"priority": list(PRIORITIES), "count": [stats[p] for p in PRIORITIES]})
        chart = to_vega_spec(count_bar_chart(counts, "priority", title="Lapsing by priority", colors=PRIORITY_COLORS))

    return {
        "priority": priority,
        "stats": stats,
        "members": [m.to_dict() for m in selected],
        "charts": {"priority": chart},
    }
