from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, Field


class DateRangeModel(BaseModel):
    start: str = ""
    end: str = ""


class SessionsRangeModel(BaseModel):
    min: float = 0.0
    max: float = 100.0


class FilterCriteriaModel(BaseModel):
    search: str = ""
    status: List[Literal["Active", "Churned", "Frozen"]] = Field(default_factory=list)
    location: List[str] = Field(default_factory=list)
    membership_type: List[str] = Field(default_factory=list)
    date_range: DateRangeModel = Field(default_factory=DateRangeModel)
    sessions_range: SessionsRangeModel = Field(default_factory=SessionsRangeModel)
    expiry_range: Literal["all", "expired", "expiring-week", "expiring-month", "future"] = "all"
    has_annotations: bool = False
    high_value: bool = False
    low_sessions: bool = False
    custom_filters: List[Literal["premium", "high-value", "low-sessions", "expiring-week", "expiring-month"]] = Field(
        default_factory=list
    )


class AnnotationEditModel(BaseModel):
    member_id: str = Field(min_length=1)
    comments: str = ""
    notes: str = ""
    tags: List[str] = Field(default_factory=list)
    associate_name: Optional[str] = None


class AnalyzeBatchModel(BaseModel):
    filters: FilterCriteriaModel = Field(default_factory=FilterCriteriaModel)
    limit: Optional[int] = Field(default=None, ge=1)
