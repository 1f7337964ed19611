"""Batch orchestrator: drives many extractions in bounded windows.

Items run ``concurrency`` at a time.  Window N+1 starts only after every
task of window N has finished; inside a window completion order is free.
A shutdown request is checked between windows and never cancels work that
is already in flight.  A run always completes and returns a summary: one
item failing, or raising, is counted and logged, nothing more.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

import structlog

from suppfacts.core.config import settings
from suppfacts.modules.extraction.client import ExtractionClient, ExtractionOutcome, ExtractionRequest
from suppfacts.modules.extraction.documents import DocumentPayload
from suppfacts.modules.extraction.normalizer import check_completeness
from suppfacts.modules.extraction.schemas import ProductExtraction, Severity, ValidationWarning
from suppfacts.modules.processing.scanner import ProductFile
from suppfacts.modules.verification.comparison import ComparisonResult, Discrepancy, compare
from suppfacts.modules.verification.review import needs_review

logger = structlog.get_logger()

LOW_COMPLETENESS_PERCENT = 50


class ResultStore(Protocol):
    async def is_already_processed(self, item_id: str) -> bool: ...

    async def list_failed(self) -> list[ProductFile]: ...

    async def mark_failed(self, product: ProductFile, error: str, raw_response: str | None = None) -> None: ...

    async def save_product(
        self,
        product: ProductFile,
        extraction: ProductExtraction,
        outcome: ExtractionOutcome,
        *,
        completeness: float | None = None,
        verification: ExtractionOutcome | None = None,
        comparison: ComparisonResult | None = None,
    ) -> int: ...

    async def save_warnings(
        self, item_id: str, warnings: Sequence[ValidationWarning], source: str | None = None
    ) -> None: ...

    async def save_discrepancies(self, item_id: str, discrepancies: Sequence[Discrepancy]) -> None: ...

    async def log_processing(
        self,
        item_id: str | None,
        action: str,
        status: str,
        *,
        error: str | None = None,
        elapsed: float | None = None,
        pdf_path: str | None = None,
    ) -> None: ...


class ReviewQueue(Protocol):
    async def enqueue(
        self,
        item_id: str,
        warnings: Sequence[ValidationWarning] = (),
        discrepancies: Sequence[Discrepancy] = (),
        *,
        reopen: bool = False,
    ) -> object: ...


@dataclass(frozen=True)
class BatchSummary:
    total_processed: int
    success_count: int
    failure_count: int
    skipped_count: int
    elapsed: float

    @property
    def success_rate(self) -> float:
        attempted = self.success_count + self.failure_count
        return self.success_count / attempted * 100 if attempted else 0.0

    def render(self, title: str = "PROCESSING COMPLETE") -> str:
        return "\n".join(
            [
                "=" * 80,
                title,
                "=" * 80,
                f"Processed:     {self.total_processed}",
                f"Succeeded:     {self.success_count}",
                f"Failed:        {self.failure_count}",
                f"Skipped:       {self.skipped_count}",
                f"Success rate:  {self.success_rate:.2f}%",
                f"Elapsed:       {format_duration(self.elapsed)}",
                "=" * 80,
            ]
        )


def format_duration(seconds: float) -> str:
    minutes, secs = divmod(int(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m {secs}s"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{seconds:.1f}s"


class BatchOrchestrator:
    """Runs extraction, optional verification, persistence and review queueing per item."""

    def __init__(
        self,
        client: ExtractionClient,
        store: ResultStore,
        *,
        verifier: ExtractionClient | None = None,
        review_queue: ReviewQueue | None = None,
        hybrid: bool = False,
        review_threshold: float = 85.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.store = store
        self.verifier = verifier
        self.review_queue = review_queue
        self.hybrid = hybrid
        self.review_threshold = review_threshold
        self._clock = clock
        self._shutdown = False

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def request_shutdown(self) -> None:
        """Stop before the next window; in-flight items still finish."""
        if not self._shutdown:
            logger.warning("Shutdown requested, finishing the current window")
        self._shutdown = True

    # --- Runs ----------------------------------------------------------------

    async def run_all(
        self,
        items: Sequence[ProductFile],
        *,
        skip_existing: bool = True,
        concurrency: int | None = None,
        limit: int | None = None,
    ) -> BatchSummary:
        concurrency = concurrency or settings.concurrency
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        started = self._clock()

        pending = list(items)
        if skip_existing:
            pending = [item for item in pending if not await self.store.is_already_processed(item.item_id)]
        skipped = len(items) - len(pending)
        if skipped:
            logger.info("Skipping already processed items", skipped=skipped)

        if limit is not None and limit > 0 and len(pending) > limit:
            logger.info("Limiting run", limit=limit, available=len(pending))
            pending = pending[:limit]

        logger.info("Starting batch", items=len(pending), concurrency=concurrency, skip_existing=skip_existing)

        success = failure = 0
        for start in range(0, len(pending), concurrency):
            if self._shutdown:
                logger.warning("Shutdown requested, stopping before next window", remaining=len(pending) - start)
                break
            window = pending[start : start + concurrency]
            results = await asyncio.gather(*(self.process_item(item) for item in window), return_exceptions=True)
            for item, result in zip(window, results):
                if result is True:
                    success += 1
                    continue
                failure += 1
                if isinstance(result, BaseException):
                    logger.error("Item task raised", item_id=item.item_id, error=str(result))

        summary = BatchSummary(
            total_processed=success + failure,
            success_count=success,
            failure_count=failure,
            skipped_count=skipped,
            elapsed=self._clock() - started,
        )
        logger.info(
            "Batch complete",
            succeeded=success,
            failed=failure,
            skipped=skipped,
            success_rate=round(summary.success_rate, 2),
        )
        return summary

    async def retry_failed(self) -> BatchSummary:
        """Re-drive every failed item, one at a time."""
        started = self._clock()
        failed = await self.store.list_failed()
        logger.info("Retrying failed items", count=len(failed))

        success = failure = 0
        for item in failed:
            if self._shutdown:
                break
            if await self.process_item(item):
                success += 1
            else:
                failure += 1

        logger.info("Retry complete", succeeded=success, still_failed=failure)
        return BatchSummary(
            total_processed=success + failure,
            success_count=success,
            failure_count=failure,
            skipped_count=0,
            elapsed=self._clock() - started,
        )

    # --- Per item ------------------------------------------------------------

    async def process_item(self, item: ProductFile) -> bool:
        """Process one item; ``True`` on success.  Errors are recorded, never raised."""
        started = self._clock()
        try:
            return await self._process(item, started)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.error("Error processing item", item_id=item.item_id, error=error, exc_info=True)
            await self._record_failure(item, error, self._clock() - started)
            return False

    async def _record_failure(self, item: ProductFile, error: str, elapsed: float) -> None:
        """Persist a failure; store errors are logged, not raised."""
        try:
            await self.store.mark_failed(item, error)
            await self.store.log_processing(
                item.item_id, "extract", "error",
                error=error, elapsed=elapsed, pdf_path=str(item.pdf_path),
            )
        except Exception as exc:
            logger.error("Could not record failure", item_id=item.item_id, error=str(exc), exc_info=True)

    async def _process(self, item: ProductFile, started: float) -> bool:
        request = ExtractionRequest(
            item_id=item.item_id,
            payload=DocumentPayload(item.pdf_path),
            product_name=item.product_name,
            subbrand=item.subbrand,
        )

        extract = self.client.extract_hybrid if self.hybrid else self.client.extract
        outcome = await extract(request)
        if not outcome.success or not isinstance(outcome.data, ProductExtraction):
            error = outcome.error or "Extraction failed"
            logger.error("Extraction failed", item_id=item.item_id, error=error, status=outcome.status.value)
            await self.store.mark_failed(item, error, outcome.raw_response)
            await self.store.log_processing(
                item.item_id, "extract", "error",
                error=error, elapsed=outcome.elapsed, pdf_path=str(item.pdf_path),
            )
            return False
        extraction = outcome.data

        verification, comparison = await self._verify(request, extraction)

        completeness = check_completeness(extraction)
        if completeness.completeness_percent < LOW_COMPLETENESS_PERCENT:
            logger.warning(
                "Low data completeness",
                item_id=item.item_id,
                percent=completeness.completeness_percent,
                missing=completeness.missing_fields,
            )

        product_id = await self.store.save_product(
            item, extraction, outcome,
            completeness=completeness.completeness_percent,
            verification=verification,
            comparison=comparison,
        )
        warnings = list(outcome.warnings)
        await self.store.save_warnings(item.item_id, warnings, "hybrid" if self.hybrid else outcome.provider)
        if comparison is not None:
            await self.store.save_discrepancies(item.item_id, comparison.discrepancies)

        flagged = needs_review(warnings, comparison)
        if flagged and self.review_queue is not None:
            discrepancies = comparison.discrepancies if comparison else ()
            await self.review_queue.enqueue(item.item_id, warnings, discrepancies)
            logger.warning(
                "Flagged for review",
                item_id=item.item_id,
                high_warnings=sum(1 for w in warnings if w.severity is Severity.HIGH),
                discrepancies=len(discrepancies),
            )

        await self.store.log_processing(
            item.item_id, "extract", "success",
            elapsed=self._clock() - started, pdf_path=str(item.pdf_path),
        )
        logger.info(
            "Processed item",
            item_id=item.item_id,
            product_id=product_id,
            status=outcome.status.value,
            completeness=completeness.completeness_percent,
            needs_review=flagged,
        )
        return True

    async def _verify(
        self, request: ExtractionRequest, extraction: ProductExtraction
    ) -> tuple[ExtractionOutcome | None, ComparisonResult | None]:
        """Second-model supplement-facts pass; a failed verification never fails the item."""
        if self.verifier is None or extraction.supplement_facts is None:
            return None, None

        verification = await self.verifier.extract_supplement_facts(request)
        if not verification.success or verification.supplement_facts is None:
            logger.warning(
                "Verification failed, keeping primary extraction",
                item_id=request.item_id,
                provider=verification.provider,
                error=verification.error,
            )
            return verification, None

        comparison = compare(
            extraction.supplement_facts,
            verification.supplement_facts,
            review_threshold=self.review_threshold,
        )
        logger.info(
            "Compared with verifier",
            item_id=request.item_id,
            similarity=comparison.similarity_score,
            discrepancies=len(comparison.discrepancies),
            recommends_review=comparison.recommends_review,
        )
        return verification, comparison
