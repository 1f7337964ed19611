"""Result store: persists extraction outcomes, warnings, discrepancies and the processing log."""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

import structlog
from sqlalchemy import case, delete, distinct, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from suppfacts.modules.extraction.client import ExtractionOutcome, ExtractionState
from suppfacts.modules.extraction.schemas import ProductExtraction, ValidationWarning
from suppfacts.modules.processing.scanner import ProductFile
from suppfacts.modules.storage.models import (
    DiscrepancyRow,
    ExtractionStatus,
    IngredientRow,
    NutrientRow,
    ProcessingLog,
    Product,
    ReviewEntry,
    ReviewStatus,
    SupplementFactsRow,
    ValidationWarningRow,
)
from suppfacts.modules.verification.comparison import ComparisonResult, Discrepancy

logger = structlog.get_logger()

# "100 mg" -> ("100", "mg"), "500 mg RAE" -> ("500", "mg RAE"), "<1 g" -> ("<1", "g")
_AMOUNT_UNIT = re.compile(r"^(<?\d+(?:\.\d+)?)\s*(.+)$")

DONE_STATUSES = (ExtractionStatus.COMPLETED, ExtractionStatus.SALVAGED)

_SEVERITY_RANK = case({"high": 0, "medium": 1, "low": 2}, value=DiscrepancyRow.severity, else_=3)


def split_amount(amount: str | None) -> tuple[str | None, str | None]:
    """Split a combined amount into (number, unit); an unparsable amount keeps no unit."""
    if not amount:
        return None, None
    match = _AMOUNT_UNIT.match(amount.strip())
    if match is None:
        return amount, None
    return match.group(1), match.group(2)


@dataclass(frozen=True)
class StoreStatistics:
    total: int
    completed: int
    salvaged: int
    failed: int
    pending: int

    @property
    def success_rate(self) -> float:
        return (self.completed + self.salvaged) / self.total * 100 if self.total else 0.0


@dataclass(frozen=True)
class VerificationStatistics:
    total_compared: int
    average_similarity: float | None
    high_discrepancy_items: int
    pending_reviews: int


class SqlResultStore:
    """SQLAlchemy-backed persistence; one short session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # --- Lookups -------------------------------------------------------------

    async def is_already_processed(self, item_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product.id).where(Product.item_id == item_id, Product.status.in_(DONE_STATUSES))
            )
            return result.first() is not None

    async def processed_ids(self) -> set[str]:
        async with self._session_factory() as session:
            result = await session.execute(select(Product.item_id).where(Product.status.in_(DONE_STATUSES)))
            return set(result.scalars().all())

    async def list_failed(self) -> list[ProductFile]:
        """Failed items as scanned files, ready to be re-driven."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product).where(Product.status == ExtractionStatus.FAILED).order_by(Product.item_id)
            )
            rows = list(result.scalars().all())
        return [
            ProductFile(
                item_id=row.item_id,
                product_name=row.product_name,
                subbrand=row.subbrand,
                pdf_path=Path(row.pdf_path or ""),
                folder_path=Path(row.folder_path or ""),
            )
            for row in rows
        ]

    async def get_product(self, item_id: str) -> Product | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product)
                .where(Product.item_id == item_id)
                .options(
                    selectinload(Product.supplement_facts).selectinload(SupplementFactsRow.nutrients),
                    selectinload(Product.ingredients),
                )
            )
            return result.scalar_one_or_none()

    async def discrepancies_for(self, item_id: str) -> list[DiscrepancyRow]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(DiscrepancyRow)
                .where(DiscrepancyRow.item_id == item_id)
                .order_by(_SEVERITY_RANK, DiscrepancyRow.field_path.asc())
            )
            return list(result.scalars().all())

    async def warnings_for(self, item_id: str) -> list[ValidationWarningRow]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ValidationWarningRow)
                .where(ValidationWarningRow.item_id == item_id)
                .order_by(ValidationWarningRow.id)
            )
            return list(result.scalars().all())

    # --- Writes --------------------------------------------------------------

    async def save_product(
        self,
        product: ProductFile,
        extraction: ProductExtraction,
        outcome: ExtractionOutcome,
        *,
        completeness: float | None = None,
        verification: ExtractionOutcome | None = None,
        comparison: ComparisonResult | None = None,
    ) -> int:
        """Insert or replace the product and all of its child rows; returns the row id."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Product)
                .where(Product.item_id == product.item_id)
                .options(
                    selectinload(Product.supplement_facts).selectinload(SupplementFactsRow.nutrients),
                    selectinload(Product.ingredients),
                )
            )
            row = result.scalar_one_or_none()
            if row is None:
                row = Product(item_id=product.item_id, product_name=extraction.product_name)
                session.add(row)
            else:
                # Old children go first: supplement_facts.product_id is unique
                row.supplement_facts = None
                row.ingredients = []
                await session.flush()

            row.product_name = extraction.product_name
            row.product_slogan = extraction.product_slogan
            row.product_description = extraction.product_description
            row.subbrand = extraction.subbrand or product.subbrand
            row.directions = extraction.directions
            row.caution = extraction.caution
            row.references = extraction.references
            row.dietary_attributes = list(extraction.dietary_attributes)
            row.pdf_path = str(product.pdf_path)
            row.folder_path = str(product.folder_path)
            row.status = (
                ExtractionStatus.SALVAGED if outcome.status is ExtractionState.SALVAGED else ExtractionStatus.COMPLETED
            )
            row.provider = outcome.provider
            row.strategy = outcome.strategy.value if outcome.strategy else None
            row.retry_count = outcome.retry_count
            row.error_message = None
            row.raw_response = outcome.raw_response
            row.completeness = completeness
            row.verification_provider = verification.provider if verification else None
            row.verification_raw_response = verification.raw_response if verification else None
            row.similarity_score = comparison.similarity_score if comparison else None

            facts = extraction.supplement_facts
            if facts is not None:
                nutrients = []
                for index, nutrient in enumerate(facts.nutrients):
                    amount, unit = split_amount(nutrient.amount)
                    nutrients.append(
                        NutrientRow(
                            name=nutrient.name,
                            amount=amount,
                            unit=unit,
                            daily_value_percent_adult=nutrient.daily_value_percent_adult,
                            daily_value_percent_children=nutrient.daily_value_percent_children,
                            position=nutrient.position if nutrient.position is not None else index,
                        )
                    )
                row.supplement_facts = SupplementFactsRow(
                    servings=facts.servings,
                    servings_per_container=facts.servings_per_container,
                    calories=facts.calories,
                    protein=facts.protein,
                    nutrients=nutrients,
                )
            row.ingredients = [
                IngredientRow(name=ingredient.name, is_organic=ingredient.is_organic, position=index)
                for index, ingredient in enumerate(extraction.ingredients)
            ]

            await session.flush()
            product_id, status = row.id, row.status
            await session.commit()

        logger.info("Saved product", item_id=product.item_id, product_id=product_id, status=status.value)
        return product_id

    async def mark_failed(self, product: ProductFile, error: str, raw_response: str | None = None) -> None:
        async with self._session_factory() as session:
            result = await session.execute(select(Product).where(Product.item_id == product.item_id))
            row = result.scalar_one_or_none()
            if row is None:
                row = Product(
                    item_id=product.item_id,
                    product_name=product.product_name,
                    subbrand=product.subbrand,
                    pdf_path=str(product.pdf_path),
                    folder_path=str(product.folder_path),
                )
                session.add(row)
            row.status = ExtractionStatus.FAILED
            row.error_message = error
            row.raw_response = raw_response
            await session.commit()

    async def save_warnings(self, item_id: str, warnings: Sequence[ValidationWarning], source: str | None = None) -> None:
        """Replace the item's validation warnings."""
        async with self._session_factory() as session:
            await session.execute(delete(ValidationWarningRow).where(ValidationWarningRow.item_id == item_id))
            session.add_all(
                ValidationWarningRow(
                    item_id=item_id,
                    field_path=w.field_path,
                    message=w.message,
                    severity=w.severity.value,
                    source=source,
                )
                for w in warnings
            )
            await session.commit()
        if warnings:
            logger.info("Saved validation warnings", item_id=item_id, count=len(warnings))

    async def save_discrepancies(self, item_id: str, discrepancies: Sequence[Discrepancy]) -> None:
        """Replace the item's comparison discrepancies."""
        async with self._session_factory() as session:
            await session.execute(delete(DiscrepancyRow).where(DiscrepancyRow.item_id == item_id))
            session.add_all(
                DiscrepancyRow(
                    item_id=item_id,
                    field_path=d.field_path,
                    value_a=d.value_a,
                    value_b=d.value_b,
                    kind=d.kind.value,
                    severity=d.severity.value,
                    confidence_score=d.confidence_score,
                    description=d.description,
                )
                for d in discrepancies
            )
            await session.commit()

    async def log_processing(
        self,
        item_id: str | None,
        action: str,
        status: str,
        *,
        error: str | None = None,
        elapsed: float | None = None,
        pdf_path: str | None = None,
    ) -> None:
        async with self._session_factory() as session:
            session.add(
                ProcessingLog(
                    item_id=item_id,
                    pdf_path=pdf_path,
                    action=action,
                    status=status,
                    error_message=error,
                    elapsed_ms=int(elapsed * 1000) if elapsed is not None else None,
                )
            )
            await session.commit()

    # --- Reports -------------------------------------------------------------

    async def statistics(self) -> StoreStatistics:
        async with self._session_factory() as session:
            result = await session.execute(select(Product.status, func.count()).group_by(Product.status))
            counts = {status: count for status, count in result.all()}
        return StoreStatistics(
            total=sum(counts.values()),
            completed=counts.get(ExtractionStatus.COMPLETED, 0),
            salvaged=counts.get(ExtractionStatus.SALVAGED, 0),
            failed=counts.get(ExtractionStatus.FAILED, 0),
            pending=counts.get(ExtractionStatus.PENDING, 0),
        )

    async def verification_statistics(self) -> VerificationStatistics:
        async with self._session_factory() as session:
            compared = (
                await session.execute(
                    select(func.count(), func.avg(Product.similarity_score)).where(
                        Product.similarity_score.is_not(None)
                    )
                )
            ).one()
            high_items = (
                await session.execute(
                    select(func.count(distinct(DiscrepancyRow.item_id))).where(DiscrepancyRow.severity == "high")
                )
            ).scalar_one()
            pending = (
                await session.execute(
                    select(func.count()).select_from(ReviewEntry).where(ReviewEntry.status == ReviewStatus.PENDING)
                )
            ).scalar_one()
        total, average = compared
        return VerificationStatistics(
            total_compared=total,
            average_similarity=round(float(average), 1) if average is not None else None,
            high_discrepancy_items=high_items,
            pending_reviews=pending,
        )
