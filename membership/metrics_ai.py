from __future__ import annotations

from collections import Counter
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

import pandas as pd

from membership.charts import count_bar_chart, to_vega_spec
from membership.classifier import RISK_TAGS
from membership.filters import FilterCriteria, filter_records
from membership.records import MembershipRecord

TOP_TAGS = 10


def compute_ai_analytics(
    criteria: FilterCriteria,
    records: Sequence[MembershipRecord],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    visible = filter_records(records, criteria, now=now)
    analyzed = [r for r in visible if r.ai_tags]
    total, analyzed_count = len(visible), len(analyzed)

    tag_counts: Counter[str] = Counter(tag for r in analyzed for tag in r.ai_tags)
    # most_common keeps first-seen order among ties
    top_tags = tag_counts.most_common(TOP_TAGS)
    confidences = [r.ai_confidence for r in analyzed if r.ai_confidence]
    risk_members = [r for r in analyzed if any(tag in RISK_TAGS for tag in r.ai_tags)]

    chart = None
    if top_tags:
        counts = pd.DataFrame(top_tags, columns=["tag", "count"])
        chart = to_vega_spec(count_bar_chart(counts, "tag", title="Top AI tags", horizontal=True))

    return {
        "filters": asdict(criteria),
        "total_members": total,
        "analyzed_count": analyzed_count,
        "analyzed_percentage": (analyzed_count / total) * 100 if total else 0.0,
        "tag_counts": dict(tag_counts),
        "top_tags": [{"tag": tag, "count": count, "percentage": (count / analyzed_count) * 100} for tag, count in top_tags],
        "average_confidence": sum(confidences) / len(confidences) if confidences else 0.0,
        "risk_members": len(risk_members),
        "risk_percentage": (len(risk_members) / analyzed_count) * 100 if analyzed_count else 0.0,
        "risk_member_ids": [r.member_id for r in risk_members],
        "top_issue": {"tag": top_tags[0][0], "count": top_tags[0][1]} if top_tags else None,
        "unique_tags": len(tag_counts),
        "charts": {"top_tags": chart},
    }
