"""Review prioritizer: one queue entry per item, ordered by priority.

Validation warnings weigh more than comparison discrepancies: a warning is
a reproducible defect in the record, a discrepancy is two models
disagreeing.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from suppfacts.modules.extraction.schemas import Severity, ValidationWarning
from suppfacts.modules.storage.models import TERMINAL_REVIEW_STATUSES, ReviewEntry, ReviewStatus
from suppfacts.modules.verification.comparison import ComparisonResult, Discrepancy

logger = structlog.get_logger()

HIGH_WARNING_WEIGHT = 3
HIGH_DISCREPANCY_WEIGHT = 2
MEDIUM_WEIGHT = 1
MAX_MEDIUM_WARNINGS = 2


def _count(items: Sequence[ValidationWarning | Discrepancy], severity: Severity) -> int:
    return sum(1 for item in items if item.severity is severity)


def compute_priority(
    warnings: Sequence[ValidationWarning],
    discrepancies: Sequence[Discrepancy],
) -> int:
    """``3 * high warnings + 2 * high discrepancies + all mediums``."""
    return (
        HIGH_WARNING_WEIGHT * _count(warnings, Severity.HIGH)
        + HIGH_DISCREPANCY_WEIGHT * _count(discrepancies, Severity.HIGH)
        + MEDIUM_WEIGHT * (_count(warnings, Severity.MEDIUM) + _count(discrepancies, Severity.MEDIUM))
    )


def needs_review(warnings: Sequence[ValidationWarning], comparison: ComparisonResult | None = None) -> bool:
    if comparison is not None and comparison.recommends_review:
        return True
    if _count(warnings, Severity.HIGH) > 0:
        return True
    return _count(warnings, Severity.MEDIUM) > MAX_MEDIUM_WARNINGS


class ReviewPrioritizer:
    """Owns the ``review_queue`` table.

    Entries are upserted by item id and never deleted.  Re-processing an
    item overwrites its totals and priority; a resolved or dismissed entry
    keeps its status unless the caller asks to reopen it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def enqueue(
        self,
        item_id: str,
        warnings: Sequence[ValidationWarning] = (),
        discrepancies: Sequence[Discrepancy] = (),
        *,
        reopen: bool = False,
    ) -> ReviewEntry:
        priority = compute_priority(warnings, discrepancies)
        high = _count(warnings, Severity.HIGH) + _count(discrepancies, Severity.HIGH)
        medium = _count(warnings, Severity.MEDIUM) + _count(discrepancies, Severity.MEDIUM)

        async with self._session_factory() as session:
            result = await session.execute(select(ReviewEntry).where(ReviewEntry.item_id == item_id))
            entry = result.scalar_one_or_none()
            if entry is None:
                entry = ReviewEntry(item_id=item_id, status=ReviewStatus.PENDING)
                session.add(entry)
            elif reopen:
                entry.status = ReviewStatus.PENDING
                entry.reviewed_at = None

            entry.total_discrepancies = len(warnings) + len(discrepancies)
            entry.high_count = high
            entry.medium_count = medium
            entry.priority = priority
            await session.commit()
            await session.refresh(entry)

        logger.info(
            "Queued for review",
            item_id=item_id,
            priority=priority,
            high=high,
            medium=medium,
            status=entry.status.value,
        )
        return entry

    async def resolve(
        self,
        item_id: str,
        notes: str | None = None,
        status: ReviewStatus = ReviewStatus.RESOLVED,
    ) -> ReviewEntry | None:
        """Move an entry to ``status``; ``None`` when the item is not queued."""
        async with self._session_factory() as session:
            result = await session.execute(select(ReviewEntry).where(ReviewEntry.item_id == item_id))
            entry = result.scalar_one_or_none()
            if entry is None:
                return None
            entry.status = status
            entry.notes = notes
            if status in TERMINAL_REVIEW_STATUSES:
                entry.reviewed_at = datetime.now(timezone.utc)
            await session.commit()
            await session.refresh(entry)

        logger.info("Review updated", item_id=item_id, status=status.value)
        return entry

    async def get(self, item_id: str) -> ReviewEntry | None:
        async with self._session_factory() as session:
            result = await session.execute(select(ReviewEntry).where(ReviewEntry.item_id == item_id))
            return result.scalar_one_or_none()

    async def list_queue(self, status: ReviewStatus | None = None) -> list[ReviewEntry]:
        query = select(ReviewEntry)
        if status is not None:
            query = query.where(ReviewEntry.status == status)
        query = query.order_by(ReviewEntry.priority.desc(), ReviewEntry.created_at.asc(), ReviewEntry.id.asc())
        async with self._session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())
