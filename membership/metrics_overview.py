from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

import pandas as pd

from membership.charts import STATUS_COLORS, count_bar_chart, to_vega_spec
from membership.filters import FilterCriteria, active_filter_count, days_until_expiry_series, filter_records
from membership.records import STATUSES, MembershipRecord, records_to_frame


def _rate(part: int, total: int) -> Optional[float]:
    return (part / total) * 100 if total else None


def compute_overview(
    criteria: FilterCriteria,
    records: Sequence[MembershipRecord],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now()
    visible = filter_records(records, criteria, now=now)
    df = records_to_frame(visible)

    total = len(df)
    by_status = df["status"].value_counts().to_dict() if total else {}
    days = days_until_expiry_series(df["end_date_parsed"], now)

    expiring_this_month = int(((days >= 0) & (days <= 30)).sum())
    expired = int((df["end_date_parsed"] < pd.Timestamp(now)).sum())
    annotated = sum(1 for r in visible if r.has_annotations)
    ai_analyzed = sum(1 for r in visible if r.ai_tags)
    active = int(by_status.get("Active", 0))
    churned = int(by_status.get("Churned", 0))

    charts: Dict[str, Any] = {}
    if total:
        status_counts = pd.DataFrame({"status": list(STATUSES), "count": [int(by_status.get(s, 0)) for s in STATUSES]})
        charts["status"] = to_vega_spec(
            count_bar_chart(status_counts, "status", title="Members by status", colors=STATUS_COLORS)
        )
        location_counts = (
            df.assign(location=df["location"].replace("", "Unknown"))
            .groupby("location")
            .size()
            .reset_index(name="count")
            .sort_values("count", ascending=False)
        )
        charts["location"] = to_vega_spec(
            count_bar_chart(location_counts, "location", title="Members by location", horizontal=True)
        )

    return {
        "filters": asdict(criteria),
        "active_filter_count": active_filter_count(criteria),
        "kpis": {
            "total_members": total,
            "active_members": active,
            "churned_members": churned,
            "frozen_members": int(by_status.get("Frozen", 0)),
            "expiring_this_month": expiring_this_month,
            "expired_members": expired,
            "annotated_members": annotated,
            "ai_analyzed_members": ai_analyzed,
            "total_paid": float(df["paid_amount"].sum()) if total else 0.0,
        },
        "rates": {
            "active_rate": _rate(active, total),
            "churn_rate": _rate(churned, total),
            "annotation_rate": _rate(annotated, total),
            "ai_coverage_rate": _rate(ai_analyzed, total),
            "expiring_rate": _rate(expiring_this_month, total),
        },
        "charts": charts,
    }
