from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from suppfacts.modules.storage.models import ReviewStatus


class ReviewEntryOut(BaseModel):
    item_id: str
    total_discrepancies: int
    high_count: int
    medium_count: int
    priority: int
    status: ReviewStatus
    notes: str | None = None
    created_at: datetime
    reviewed_at: datetime | None = None

    model_config = {"from_attributes": True}


class ResolveRequest(BaseModel):
    notes: str | None = None
    status: ReviewStatus = ReviewStatus.RESOLVED


class DiscrepancyOut(BaseModel):
    field_path: str
    value_a: str | None = None
    value_b: str | None = None
    kind: str
    severity: str
    confidence_score: int | None = None
    description: str | None = None

    model_config = {"from_attributes": True}


class WarningOut(BaseModel):
    field_path: str
    message: str
    severity: str
    source: str | None = None

    model_config = {"from_attributes": True}


class ItemIssuesOut(BaseModel):
    item_id: str
    discrepancies: list[DiscrepancyOut]
    warnings: list[WarningOut]


class StatsOut(BaseModel):
    total: int
    completed: int
    salvaged: int
    failed: int
    pending: int
    success_rate: float
    total_compared: int
    average_similarity: float | None = None
    high_discrepancy_items: int
    pending_reviews: int
