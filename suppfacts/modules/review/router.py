from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from suppfacts.core.database import async_session
from suppfacts.modules.review.schemas import (
    DiscrepancyOut,
    ItemIssuesOut,
    ResolveRequest,
    ReviewEntryOut,
    StatsOut,
    WarningOut,
)
from suppfacts.modules.storage.models import ReviewStatus
from suppfacts.modules.storage.repository import SqlResultStore
from suppfacts.modules.verification.review import ReviewPrioritizer

router = APIRouter(prefix="/review", tags=["review"])


def get_prioritizer() -> ReviewPrioritizer:
    return ReviewPrioritizer(async_session)


def get_store() -> SqlResultStore:
    return SqlResultStore(async_session)


@router.get("/queue", response_model=list[ReviewEntryOut])
async def list_queue(
    status: ReviewStatus | None = Query(default=None),
    prioritizer: ReviewPrioritizer = Depends(get_prioritizer),
) -> list[ReviewEntryOut]:
    entries = await prioritizer.list_queue(status)
    return [ReviewEntryOut.model_validate(e) for e in entries]


@router.post("/queue/{item_id}/resolve", response_model=ReviewEntryOut)
async def resolve_entry(
    item_id: str,
    data: ResolveRequest,
    prioritizer: ReviewPrioritizer = Depends(get_prioritizer),
) -> ReviewEntryOut:
    entry = await prioritizer.resolve(item_id, data.notes, data.status)
    if entry is None:
        raise HTTPException(status_code=404, detail=f"No review entry for item {item_id}")
    return ReviewEntryOut.model_validate(entry)


@router.get("/items/{item_id}", response_model=ItemIssuesOut)
async def item_issues(
    item_id: str,
    store: SqlResultStore = Depends(get_store),
) -> ItemIssuesOut:
    """Comparison discrepancies and validation warnings recorded for one item."""
    discrepancies = await store.discrepancies_for(item_id)
    warnings = await store.warnings_for(item_id)
    return ItemIssuesOut(
        item_id=item_id,
        discrepancies=[DiscrepancyOut.model_validate(d) for d in discrepancies],
        warnings=[WarningOut.model_validate(w) for w in warnings],
    )


@router.get("/stats", response_model=StatsOut)
async def stats(store: SqlResultStore = Depends(get_store)) -> StatsOut:
    processing = await store.statistics()
    verification = await store.verification_statistics()
    return StatsOut(
        total=processing.total,
        completed=processing.completed,
        salvaged=processing.salvaged,
        failed=processing.failed,
        pending=processing.pending,
        success_rate=round(processing.success_rate, 2),
        total_compared=verification.total_compared,
        average_similarity=verification.average_similarity,
        high_discrepancy_items=verification.high_discrepancy_items,
        pending_reviews=verification.pending_reviews,
    )
