from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from dataclasses import asdict, replace
from datetime import datetime
from typing import Dict, List, Literal, Optional

import numpy as np
import pandas as pd
from fastapi import FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from api.schemas import AnalyzeBatchModel, AnnotationEditModel, FilterCriteriaModel
from membership import config
from membership.annotations import AnnotationEdit, AnnotationQueue, annotation_stats, make_edit, search_members_with_annotations
from membership.classifier import AI_TAGS, RISK_TAGS, MemberClassifier, apply_classification, get_classification_backend
from membership.filters import FilterCriteria, active_filter_count, filter_options, filter_records, normalize_filters
from membership.lapsing import compute_lapsing, compute_lapsing_members
from membership.metrics_ai import compute_ai_analytics
from membership.metrics_overview import compute_overview
from membership.records import MembershipRecord
from membership.store import RecordStore, get_record_store

logger = logging.getLogger(__name__)

AI_FIELDS = ("ai_tags", "ai_confidence", "ai_reasoning", "ai_analysis_date")


class DashboardState:
    """In-memory member view shared by all requests.

    Records are loaded from the store on first use. Annotation edits and AI
    results are applied here immediately; the store only sees annotations,
    through the queue.
    """

    def __init__(self, store: RecordStore, queue: AnnotationQueue, classifier: MemberClassifier) -> None:
        self.store = store
        self.queue = queue
        self.classifier = classifier
        self.records: Optional[List[MembershipRecord]] = None
        self.loaded_at: Optional[datetime] = None
        self._load_lock = asyncio.Lock()

    async def get_records(self) -> List[MembershipRecord]:
        if self.records is None:
            async with self._load_lock:
                if self.records is None:
                    await self._load()
        return self.records or []

    async def refresh(self) -> List[MembershipRecord]:
        async with self._load_lock:
            await self._load()
        return self.records or []

    async def _load(self) -> None:
        fresh = await self.store.fetch_all()
        previous = {r.member_id: r for r in self.records or []}
        unsaved = self.queue.unsaved()
        out: List[MembershipRecord] = []
        for record in fresh:
            old = previous.get(record.member_id)
            if old is not None and old.ai_tags:
                record = replace(record, **{name: getattr(old, name) for name in AI_FIELDS})
            edit = unsaved.get(record.member_id)
            if edit is not None:
                record = edit.apply_to(record)
            out.append(record)
        self.records = out
        self.loaded_at = datetime.now()
        logger.info("Member view loaded: %d records", len(out))

    async def find(self, member_id: str) -> Optional[MembershipRecord]:
        for record in await self.get_records():
            if record.member_id == member_id:
                return record
        return None

    def replace_record(self, record: MembershipRecord) -> None:
        if self.records is None:
            return
        self.records = [record if r.member_id == record.member_id else r for r in self.records]


def _log_give_up(edits: List[AnnotationEdit]) -> None:
    logger.error("Annotation edits not saved for members: %s", [e.member_id for e in edits])


@asynccontextmanager
async def lifespan(app: FastAPI):
    config.configure_logging()
    store = get_record_store()
    queue = AnnotationQueue(store, on_give_up=_log_give_up)
    classifier = MemberClassifier(get_classification_backend())
    app.state.dashboard = DashboardState(store, queue, classifier)
    try:
        yield
    finally:
        await queue.aclose()


app = FastAPI(title="Membership Dashboard API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _state(request: Request) -> DashboardState:
    return request.app.state.dashboard


def _criteria_from_model(model: FilterCriteriaModel) -> FilterCriteria:
    return normalize_filters(model.model_dump())


def _json(data: object) -> JSONResponse:
    """Return JSON with safe encoding for pandas/numpy objects."""

    def _safe_float(value: object) -> float | None:
        try:
            out = float(value)  # type: ignore[arg-type]
        except Exception:
            return None
        if math.isnan(out) or math.isinf(out):
            return None
        return out

    return JSONResponse(
        content=jsonable_encoder(
            data,
            custom_encoder={
                type(pd.NA): lambda _: None,
                np.integer: int,
                float: _safe_float,
                np.floating: _safe_float,
                np.bool_: bool,
                np.ndarray: lambda arr: arr.tolist(),
                pd.Timestamp: lambda ts: ts.isoformat(),
            },
        )
    )


def _failed(name: str, exc: Exception) -> JSONResponse:
    logger.exception("%s failed", name)
    return JSONResponse(status_code=500, content={"error": str(exc), "type": type(exc).__name__})


def _not_found(member_id: str) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": f"Member {member_id} not found", "type": "NotFound"})


@app.get("/meta/filter-options")
async def meta_filter_options(request: Request):
    try:
        records = await _state(request).get_records()
        return _json(filter_options(records))
    except Exception as exc:
        return _failed("meta_filter_options", exc)


@app.get("/meta/ai-tags")
def meta_ai_tags():
    return _json({"tags": list(AI_TAGS), "risk_tags": [t for t in AI_TAGS if t in RISK_TAGS]})


@app.post("/members")
async def members(
    request: Request,
    filters: FilterCriteriaModel,
    limit: int = Query(default=500, ge=1),
    offset: int = Query(default=0, ge=0),
):
    try:
        f = _criteria_from_model(filters)
        visible = filter_records(await _state(request).get_records(), f)
        page = visible[offset : offset + limit]
        return _json(
            {
                "filters": asdict(f),
                "active_filter_count": active_filter_count(f),
                "total": len(visible),
                "members": [r.to_dict() for r in page],
            }
        )
    except Exception as exc:
        return _failed("members", exc)


@app.post("/overview")
async def overview(request: Request, filters: FilterCriteriaModel):
    try:
        f = _criteria_from_model(filters)
        return _json(compute_overview(f, await _state(request).get_records()))
    except Exception as exc:
        return _failed("overview", exc)


@app.post("/lapsing")
async def lapsing(
    request: Request,
    filters: FilterCriteriaModel,
    priority: Literal["all", "critical", "high", "medium", "low"] = Query(default="all"),
):
    try:
        f = _criteria_from_model(filters)
        now = datetime.now()
        visible = filter_records(await _state(request).get_records(), f, now=now)
        payload = compute_lapsing(visible, now=now, priority=priority)
        payload["filters"] = asdict(f)
        return _json(payload)
    except Exception as exc:
        return _failed("lapsing", exc)


@app.post("/ai-analytics")
async def ai_analytics(request: Request, filters: FilterCriteriaModel):
    try:
        f = _criteria_from_model(filters)
        return _json(compute_ai_analytics(f, await _state(request).get_records()))
    except Exception as exc:
        return _failed("ai_analytics", exc)


@app.post("/annotations")
async def annotate(request: Request, body: AnnotationEditModel):
    try:
        state = _state(request)
        record = await state.find(body.member_id)
        if record is None:
            return _not_found(body.member_id)
        edit = state.queue.enqueue(
            make_edit(
                record.member_id,
                email=record.email,
                comments=body.comments,
                notes=body.notes,
                tags=body.tags,
                unique_id=record.unique_id,
                associate_name=body.associate_name,
            )
        )
        updated = edit.apply_to(record)
        state.replace_record(updated)
        return _json({"member": updated.to_dict(), "queue": state.queue.status()})
    except Exception as exc:
        return _failed("annotate", exc)


@app.post("/annotations/flush")
async def annotations_flush(request: Request):
    try:
        queue = _state(request).queue
        ok = await queue.flush_pending_annotations()
        return _json({"ok": ok, "queue": queue.status()})
    except Exception as exc:
        return _failed("annotations_flush", exc)


@app.get("/annotations/status")
def annotations_status(request: Request):
    return _json(_state(request).queue.status())


@app.get("/annotations/stats")
async def annotations_stats(request: Request):
    try:
        rows = await _state(request).store.fetch_annotations()
        return _json(annotation_stats(rows))
    except Exception as exc:
        return _failed("annotations_stats", exc)


@app.get("/annotations/search")
async def annotations_search(request: Request, q: str = Query(default="")):
    try:
        state = _state(request)
        rows = await state.store.search_annotations(q)
        found = search_members_with_annotations(await state.get_records(), rows, q)
        return _json({"query": q, "total": len(found), "members": [r.to_dict() for r in found]})
    except Exception as exc:
        return _failed("annotations_search", exc)


@app.post("/ai/analyze/{member_id}")
async def ai_analyze_member(request: Request, member_id: str):
    try:
        state = _state(request)
        record = await state.find(member_id)
        if record is None:
            return _not_found(member_id)
        result = await state.classifier.analyze_member(record)
        state.replace_record(apply_classification(record, result))
        return _json(result.to_dict())
    except Exception as exc:
        return _failed("ai_analyze_member", exc)


@app.post("/ai/analyze-batch")
async def ai_analyze_batch(request: Request, body: AnalyzeBatchModel):
    try:
        state = _state(request)
        f = _criteria_from_model(body.filters)
        targets = [r for r in filter_records(await state.get_records(), f) if r.has_feedback]
        if body.limit is not None:
            targets = targets[: body.limit]
        results = await state.classifier.analyze_members_batch(targets)
        by_id: Dict[str, MembershipRecord] = {r.member_id: r for r in targets}
        for result in results:
            state.replace_record(apply_classification(by_id[result.member_id], result))
        return _json({"analyzed": len(results), "results": [r.to_dict() for r in results]})
    except Exception as exc:
        return _failed("ai_analyze_batch", exc)


@app.post("/refresh")
async def refresh(request: Request):
    try:
        state = _state(request)
        state.store.invalidate_annotations_cache()
        records = await state.refresh()
        return _json({"total": len(records), "loaded_at": state.loaded_at})
    except Exception as exc:
        return _failed("refresh", exc)


@app.post("/export/{page}")
async def export_page(request: Request, page: str, filters: FilterCriteriaModel):
    f = _criteria_from_model(filters)
    now = datetime.now()
    visible = filter_records(await _state(request).get_records(), f, now=now)

    filename = f"{page}.csv"
    if page == "members":
        export_df = pd.DataFrame([r.to_dict() for r in visible])
    elif page == "lapsing":
        export_df = pd.DataFrame([m.to_dict() for m in compute_lapsing_members(visible, now=now)])
    elif page in {"ai", "ai-analytics"}:
        export_df = pd.DataFrame([r.to_dict() for r in visible if r.ai_tags])
        filename = "ai-analytics.csv"
    else:
        export_df = pd.DataFrame()

    for col in ("tags", "ai_tags"):
        if col in export_df.columns:
            export_df[col] = export_df[col].map(", ".join)
    csv_bytes = export_df.to_csv(index=False).encode("utf-8")
    return Response(content=csv_bytes, media_type="text/csv", headers={"Content-Disposition": f"attachment; filename={filename}"})
