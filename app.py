import asyncio
from contextlib import contextmanager
from datetime import date, datetime
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st

from membership import config
from membership.annotations import make_edit, save_annotations
from membership.classifier import ClassificationResult, MemberClassifier, apply_classifications, get_classification_backend
from membership.filters import (
    CUSTOM_FILTERS,
    EXPIRY_RANGES,
    SESSIONS_MAX_DEFAULT,
    SESSIONS_MIN_DEFAULT,
    active_filter_count,
    filter_options,
    filter_records,
    normalize_filters,
)
from membership.lapsing import PRIORITIES, compute_lapsing
from membership.metrics_ai import compute_ai_analytics
from membership.metrics_overview import compute_overview
from membership.records import MembershipRecord
from membership.store import RecordStoreError, get_record_store

config.configure_logging()

MEMBER_TABLE_COLUMNS = [
    "member_id",
    "first_name",
    "last_name",
    "email",
    "membership_name",
    "location",
    "status",
    "end_date",
    "paid",
    "sessions_left",
    "tags",
    "ai_tags",
]


# ---------- UI / layout helpers ----------
def inject_base_styles():
    if st.session_state.get("_base_css_injected"):
        return
    st.markdown(
        """
        <style>
        .app-top-bar {padding: 6px 0 4px;border-bottom: 1px solid #e5e7eb;margin-bottom: 10px;}
        .app-top-bar .breadcrumb {color: #6b7280;font-size: 0.9rem;margin-bottom: 2px;}
        .app-top-bar .page-title {font-size: 1.4rem;font-weight: 700;color: #111827;}
        .card {border: 1px solid #e5e7eb;border-radius: 12px;padding: 16px;background: #ffffff;
               box-shadow: 0 1px 2px rgba(0,0,0,0.04); margin-bottom: 12px;}
        .card-title {font-weight: 600;font-size: 1.0rem;color: #111827;margin-bottom: 8px;}
        .chip-row {display: flex;flex-wrap: wrap;gap: 6px;margin-top: 6px;}
        .chip {background: #f3f4f6;border: 1px solid #e5e7eb;border-radius: 14px;padding: 4px 10px;font-size: 0.85rem;color: #374151;}
        </style>
        """,
        unsafe_allow_html=True,
    )
    st.session_state["_base_css_injected"] = True


@contextmanager
def card(title: str):
    container = st.container()
    container.markdown(f"<div class='card'><div class='card-title'>{title}</div>", unsafe_allow_html=True)
    body = container.container()
    with body:
        yield body
    container.markdown("</div>", unsafe_allow_html=True)


def format_filter_summary(raw: Dict[str, Any]) -> str:
    chips = []
    for key, label in (("status", "Status"), ("location", "Location"), ("membership_type", "Plan")):
        values = raw.get(key) or []
        chips.append(f"{label}: {', '.join(values)}" if values else f"{label}: All")
    if raw.get("search"):
        chips.append(f"Search: {raw['search']}")
    if raw.get("expiry_range", "all") != "all":
        chips.append(f"Expiry: {raw['expiry_range']}")
    for name in raw.get("custom_filters") or []:
        chips.append(name)
    return "".join(f"<span class='chip'>{txt}</span>" for txt in chips)


def render_page_header(title: str, filter_summary_html: str, export_df: Optional[pd.DataFrame] = None, export_name: str = "export.csv"):
    inject_base_styles()
    c1, c2 = st.columns([7, 3])
    with c1:
        st.markdown(
            f"<div class='app-top-bar'><div class='breadcrumb'>Members / {title}</div><div class='page-title'>{title}</div></div>",
            unsafe_allow_html=True,
        )
    with c2:
        btn_cols = st.columns(2)
        if btn_cols[0].button("Refresh"):
            load_records.clear()
            st.rerun()
        if export_df is not None and not export_df.empty:
            btn_cols[1].download_button(
                "Export CSV",
                data=export_df.to_csv(index=False).encode("utf-8"),
                file_name=export_name,
                mime="text/csv",
            )
    st.markdown(f"<div class='chip-row'>{filter_summary_html}</div>", unsafe_allow_html=True)


def members_frame(records: List[MembershipRecord]) -> pd.DataFrame:
    df = pd.DataFrame([r.to_dict() for r in records], columns=MEMBER_TABLE_COLUMNS)
    for col in ("tags", "ai_tags"):
        df[col] = df[col].map(lambda v: ", ".join(v) if isinstance(v, list) else "")
    return df


def render_chart(spec: Optional[Dict[str, Any]], empty_message: str = "No data for the selected filters."):
    if not spec:
        st.info(empty_message)
        return
    st.vega_lite_chart(spec, use_container_width=True)


@st.cache_data(ttl=300, show_spinner="Loading members...")
def load_records() -> List[MembershipRecord]:
    return asyncio.run(get_record_store().fetch_all())


def run_ai_analysis(targets: List[MembershipRecord]) -> int:
    classifier = MemberClassifier(get_classification_backend())
    results = asyncio.run(classifier.analyze_members_batch(targets))
    for result in results:
        ai_results[result.member_id] = result
    return len(results)


def render_annotation_form(candidates: List[MembershipRecord]):
    by_id = {r.member_id: r for r in candidates}
    member_id = st.selectbox(
        "Member",
        options=list(by_id),
        format_func=lambda mid: f"{mid} · {by_id[mid].full_name or by_id[mid].email}",
    )
    record = by_id[member_id]
    with st.form(f"annotate_{member_id}"):
        comments = st.text_area("Member comments", value=record.comments)
        notes = st.text_area("Internal notes", value=record.notes)
        tags = st.text_input("Tags (comma separated)", value=", ".join(record.tags))
        associate = st.text_input("Associate name", value=record.associate_name)
        submitted = st.form_submit_button("Save annotation")
    if not submitted:
        return
    edit = make_edit(
        record.member_id,
        email=record.email,
        comments=comments,
        notes=notes,
        tags=tags,
        unique_id=record.unique_id,
        associate_name=associate or None,
    )
    status = asyncio.run(save_annotations(get_record_store(), [edit], retry_delay=0))
    if status["failed_edits"]:
        st.error(f"Annotation not saved: {status['last_error']}")
        return
    load_records.clear()
    st.toast(f"Saved annotation for {record.full_name or record.member_id}.")
    st.rerun()


# ---------- UI setup ----------
st.set_page_config(page_title="Membership Dashboard", layout="wide")
inject_base_styles()
st.title("Membership Dashboard")
st.caption("Member status, lapsing plans, staff annotations and AI feedback tags.")

try:
    stored_records = load_records()
except RecordStoreError as exc:
    st.error(f"Could not load members: {exc}")
    st.stop()

# AI results live in the session; the store only holds annotations.
if "ai_results" not in st.session_state:
    st.session_state["ai_results"] = {}
ai_results: Dict[str, ClassificationResult] = st.session_state["ai_results"]
records = apply_classifications(stored_records, ai_results.values())

if not records:
    st.error("No member rows found. Check MEMBERS_PATH or SPREADSHEET_ID.")
    st.stop()

options = filter_options(records)

# ----- Sidebar: navigation + filters -----
with st.sidebar:
    st.markdown("### Navigate")
    nav_choice = st.radio("Navigate", ["Overview", "Members", "Lapsing", "AI Analytics"], index=0)

    st.markdown("---")
    st.markdown("### Filters")
    search = st.text_input("Search name, email, id, plan or location", "")
    selected_status = st.multiselect("Status", options=options["status"], default=[])
    selected_locations = st.multiselect("Location", options=options["location"], default=[])
    selected_plans = st.multiselect("Membership", options=options["membership_type"], default=[])
    expiry_range = st.selectbox("Expiry", options=list(EXPIRY_RANGES), index=0)
    selected_custom = st.multiselect("Quick filters", options=sorted(CUSTOM_FILTERS), default=[])

    with st.expander("Advanced", expanded=False):
        use_dates = st.checkbox("Limit by end date", value=False)
        end_between = st.date_input("End date between", value=(date.today(), date.today())) if use_dates else ()
        sessions_min, sessions_max = st.slider(
            "Sessions left",
            min_value=SESSIONS_MIN_DEFAULT,
            max_value=SESSIONS_MAX_DEFAULT,
            value=(SESSIONS_MIN_DEFAULT, SESSIONS_MAX_DEFAULT),
            step=1.0,
        )
        has_annotations = st.checkbox("Has annotations", value=False)
        high_value = st.checkbox("High value (> 5,000 paid)", value=False)
        low_sessions = st.checkbox("Low sessions (<= 3 left)", value=False)

date_range = {}
if len(end_between) == 2:
    date_range = {"start": end_between[0].isoformat(), "end": end_between[1].isoformat()}

raw_filters = {
    "search": search,
    "status": selected_status,
    "location": selected_locations,
    "membership_type": selected_plans,
    "date_range": date_range,
    "sessions_range": {"min": sessions_min, "max": sessions_max},
    "expiry_range": expiry_range,
    "has_annotations": has_annotations,
    "high_value": high_value,
    "low_sessions": low_sessions,
    "custom_filters": selected_custom,
}
criteria = normalize_filters(raw_filters)
now = datetime.now()
visible = filter_records(records, criteria, now=now)
filter_summary_html = format_filter_summary(raw_filters)


def render_overview_page():
    render_page_header("Overview", filter_summary_html, export_df=members_frame(visible), export_name="members.csv")
    payload = compute_overview(criteria, records, now=now)
    kpis, rates = payload["kpis"], payload["rates"]

    with card("KPI Tiles"):
        cols = st.columns(5)
        cols[0].metric("Members", f"{kpis['total_members']:,}", help=f"{active_filter_count(criteria)} active filters")
        cols[1].metric(
            "Active",
            f"{kpis['active_members']:,}",
            delta=f"{rates['active_rate']:.1f}%" if rates["active_rate"] is not None else None,
        )
        cols[2].metric(
            "Churned",
            f"{kpis['churned_members']:,}",
            delta=f"{rates['churn_rate']:.1f}%" if rates["churn_rate"] is not None else None,
            delta_color="inverse",
        )
        cols[3].metric("Expiring in 30 days", f"{kpis['expiring_this_month']:,}")
        cols[4].metric("Total paid", f"{kpis['total_paid']:,.0f}")

    chart_cols = st.columns(2)
    with chart_cols[0]:
        with card("Members by status"):
            render_chart(payload["charts"].get("status"))
    with chart_cols[1]:
        with card("Members by location"):
            render_chart(payload["charts"].get("location"))


def render_members_page():
    df = members_frame(visible)
    render_page_header("Members", filter_summary_html, export_df=df, export_name="members.csv")
    st.caption(f"{len(visible):,} of {len(records):,} members")
    with card("Member list"):
        st.dataframe(df, hide_index=True, use_container_width=True)

    annotated = [r for r in visible if r.has_annotations]
    if annotated:
        with card("Annotations"):
            notes = pd.DataFrame(
                [
                    {
                        "member_id": r.member_id,
                        "name": r.full_name,
                        "comments": r.comments,
                        "notes": r.notes,
                        "tags": ", ".join(r.tags),
                        "associate": r.associate_name,
                        "updated": r.annotated_at,
                    }
                    for r in annotated
                ]
            )
            st.dataframe(notes, hide_index=True, use_container_width=True)

    if visible:
        with card("Edit annotation"):
            render_annotation_form(visible)


def render_lapsing_page():
    priority = st.selectbox("Priority", options=["all", *PRIORITIES], index=0)
    payload = compute_lapsing(visible, now=now, priority=priority)
    members_df = pd.DataFrame(payload["members"])
    render_page_header("Lapsing", filter_summary_html, export_df=members_df, export_name="lapsing.csv")

    stats = payload["stats"]
    with card("Lapsing members"):
        cols = st.columns(5)
        cols[0].metric("Total", stats["total"])
        cols[1].metric("Critical (<= 3 days)", stats["critical"])
        cols[2].metric("High (<= 7 days)", stats["high"])
        cols[3].metric("Medium (<= 14 days)", stats["medium"])
        cols[4].metric("Follow up now", stats["follow_up_required"])
        render_chart(payload["charts"].get("priority"), "No Active memberships end in the next 30 days.")

    if not members_df.empty:
        with card("Follow-up list"):
            cols = [c for c in ["member_id", "first_name", "last_name", "email", "membership_name", "end_date", "days_until_expiry", "priority"] if c in members_df.columns]
            st.dataframe(members_df[cols], hide_index=True, use_container_width=True)


def render_ai_page():
    payload = compute_ai_analytics(criteria, records, now=now)
    render_page_header("AI Analytics", filter_summary_html)
    with card("Coverage"):
        cols = st.columns(4)
        cols[0].metric("Analyzed", f"{payload['analyzed_count']:,}", delta=f"{payload['analyzed_percentage']:.1f}%")
        cols[1].metric("Average confidence", f"{payload['average_confidence']:.0f}")
        cols[2].metric("At risk", payload["risk_members"], delta=f"{payload['risk_percentage']:.1f}%", delta_color="inverse")
        top_issue = payload["top_issue"]
        cols[3].metric("Top issue", top_issue["tag"] if top_issue else "N/A")
    with card("Top AI tags"):
        render_chart(payload["charts"].get("top_tags"), "No AI tags yet. Analyze members below.")

    pending = [r for r in visible if r.has_feedback and r.member_id not in ai_results]
    with card("Run analysis"):
        st.caption(f"{len(pending):,} filtered members have comments or notes without AI tags.")
        cols = st.columns([2, 1, 1])
        limit = cols[0].number_input("Members per run", min_value=1, max_value=500, value=min(max(len(pending), 1), 25))
        if cols[1].button("Analyze", disabled=not pending):
            with st.spinner("Analyzing member feedback..."):
                run_ai_analysis(pending[: int(limit)])
            st.rerun()
        if cols[2].button("Clear results", disabled=not ai_results):
            ai_results.clear()
            st.rerun()

    analyzed = [r for r in visible if r.ai_tags]
    if analyzed:
        with card("Member tags"):
            tags_df = pd.DataFrame(
                [
                    {
                        "member_id": r.member_id,
                        "name": r.full_name,
                        "ai_tags": ", ".join(r.ai_tags),
                        "confidence": r.ai_confidence,
                        "reasoning": r.ai_reasoning,
                    }
                    for r in analyzed
                ]
            )
            st.dataframe(tags_df, hide_index=True, use_container_width=True)


if nav_choice == "Overview":
    render_overview_page()
elif nav_choice == "Members":
    render_members_page()
elif nav_choice == "Lapsing":
    render_lapsing_page()
else:
    render_ai_page()
