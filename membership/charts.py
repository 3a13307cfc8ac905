from __future__ import annotations

from typing import Any, Dict, Optional

import altair as alt
import pandas as pd

alt.data_transformers.disable_max_rows()

STATUS_COLORS = {"Active": "#16a34a", "Churned": "#dc2626", "Frozen": "#2563eb"}
PRIORITY_COLORS = {"critical": "#dc2626", "high": "#ea580c", "medium": "#ca8a04", "low": "#6b7280"}


def to_vega_spec(chart: alt.Chart) -> Dict[str, Any]:
    """Convert an Altair chart into a Vega-Lite spec dict (JSON-serializable)."""
    return chart.to_dict()


def count_bar_chart(
    counts: pd.DataFrame,
    category: str,
    *,
    title: str,
    colors: Optional[Dict[str, str]] = None,
    horizontal: bool = False,
    height: int = 260,
) -> alt.Chart:
    """Bar chart over a ``[category, count]`` frame, largest first."""
    cat_axis = alt.Axis(labelLimit=220)
    sort = alt.EncodingSortField(field="count", order="descending")
    color = (
        alt.Color(
            f"{category}:N",
            scale=alt.Scale(domain=list(colors), range=list(colors.values())),
            legend=None,
        )
        if colors
        else alt.value("#4f46e5")
    )
    if horizontal:
        x = alt.X("count:Q", title="Members", axis=alt.Axis(format="d", gridDash=[4, 4]))
        y = alt.Y(f"{category}:N", title=None, sort=sort, axis=cat_axis)
    else:
        x = alt.X(f"{category}:N", title=None, sort=sort, axis=cat_axis)
        y = alt.Y("count:Q", title="Members", axis=alt.Axis(format="d", gridDash=[4, 4]))
    return (
        alt.Chart(counts)
        .mark_bar(cornerRadius=3)
        .encode(x=x, y=y, color=color, tooltip=[f"{category}:N", alt.Tooltip("count:Q", format=",")])
        .properties(title=title, height=height)
    )
