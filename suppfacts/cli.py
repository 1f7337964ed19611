"""suppfacts command line.

Usage:
    # Extract every product sheet under PRODUCTS_ROOT not yet processed
    suppfacts process

    # Only the first 5 pending sheets
    suppfacts process --limit 5

    # Re-run everything that failed last time
    suppfacts retry-failed

    # Processing and review reports
    suppfacts report
    suppfacts review-queue --status pending
    suppfacts discrepancies 0358
    suppfacts resolve 0358 --notes "checked against label"
    suppfacts verification-stats

    # Review API (FastAPI + uvicorn)
    suppfacts serve --port 8000
"""

from __future__ import annotations

import argparse
import asyncio
import signal
import sys
from pathlib import Path

import structlog
import uvicorn

from suppfacts.core.config import settings
from suppfacts.core.database import async_session, engine, init_db
from suppfacts.core.logging import configure_logging
from suppfacts.modules.extraction.client import ExtractionClient
from suppfacts.modules.extraction.diagnostics import FileDiagnosticSink
from suppfacts.modules.extraction.providers import build_invoker
from suppfacts.modules.extraction.rate_limiter import SlidingWindowRateLimiter
from suppfacts.modules.extraction.retry import RetryPolicy
from suppfacts.modules.processing.orchestrator import BatchOrchestrator, BatchSummary
from suppfacts.modules.processing.scanner import scan_products
from suppfacts.modules.storage.models import ReviewStatus
from suppfacts.modules.storage.repository import SqlResultStore
from suppfacts.modules.verification.review import ReviewPrioritizer

logger = structlog.get_logger()

BANNER = "=" * 80


def build_client(provider: str, model: str, rate_limit: int) -> ExtractionClient:
    invoker = build_invoker(provider, model)
    return ExtractionClient(
        invoker,
        SlidingWindowRateLimiter(rate_limit, name=provider),
        retry_policy=RetryPolicy(
            max_attempts=settings.max_retries,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
        ),
        diagnostics=FileDiagnosticSink(settings.log_dir),
        strict_normalization=settings.strict_normalization,
    )


def build_orchestrator() -> tuple[BatchOrchestrator, list[ExtractionClient]]:
    client = build_client(settings.extraction_provider, settings.extraction_model, settings.rate_limit_per_minute)
    verifier = None
    if settings.verification_enabled:
        verifier = build_client(
            settings.verification_provider,
            settings.verification_model,
            settings.verification_rate_limit_per_minute,
        )
    orchestrator = BatchOrchestrator(
        client,
        SqlResultStore(async_session),
        verifier=verifier,
        review_queue=ReviewPrioritizer(async_session),
        hybrid=settings.hybrid_extraction_enabled,
        review_threshold=settings.similarity_threshold,
    )
    return orchestrator, [c for c in (client, verifier) if c is not None]


def install_shutdown_handlers(orchestrator: BatchOrchestrator) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_shutdown)
        except NotImplementedError:
            # not supported on Windows event loops
            pass


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _run_batch(retry: bool, limit: int | None, root: Path, skip_existing: bool) -> BatchSummary:
    orchestrator, clients = build_orchestrator()
    install_shutdown_handlers(orchestrator)
    try:
        if retry:
            return await orchestrator.retry_failed()
        scan = scan_products(root)
        return await orchestrator.run_all(
            scan.files,
            skip_existing=skip_existing,
            concurrency=settings.concurrency,
            limit=limit,
        )
    finally:
        for client in clients:
            await client.aclose()


async def cmd_process(args: argparse.Namespace) -> None:
    summary = await _run_batch(False, args.limit, Path(args.root), not args.reprocess)
    print(summary.render())
    await cmd_report(args)


async def cmd_retry_failed(args: argparse.Namespace) -> None:
    summary = await _run_batch(True, None, Path(settings.products_root), False)
    print(summary.render("RETRY COMPLETE"))
    await cmd_report(args)


async def cmd_report(args: argparse.Namespace) -> None:
    store = SqlResultStore(async_session)
    stats = await store.statistics()
    failed = await store.list_failed()

    print(BANNER)
    print("QUALITY REPORT")
    print(BANNER)
    print(f"Total products:  {stats.total}")
    print(f"Completed:       {stats.completed}")
    print(f"Salvaged:        {stats.salvaged}")
    print(f"Failed:          {stats.failed}")
    print(f"Pending:         {stats.pending}")
    print(f"Success rate:    {stats.success_rate:.2f}%")
    if failed:
        print("\nFailed products:")
        for item in failed:
            product = await store.get_product(item.item_id)
            error = product.error_message if product else None
            print(f"  {item.item_id} - {item.product_name}")
            print(f"    Error: {error}")
    print(BANNER)


async def cmd_review_queue(args: argparse.Namespace) -> None:
    status = ReviewStatus(args.status) if args.status else None
    entries = await ReviewPrioritizer(async_session).list_queue(status)

    print(BANNER)
    print(f"REVIEW QUEUE{f' ({status.value})' if status else ''}")
    print(BANNER)
    print(f"Total items: {len(entries)}\n")
    if not entries:
        print("No items in review queue.")
    for index, entry in enumerate(entries, 1):
        print(f"{index}. Item {entry.item_id}")
        print(f"   Priority: {entry.priority}")
        print(
            f"   Issues: {entry.total_discrepancies} total "
            f"({entry.high_count} high, {entry.medium_count} medium)"
        )
        print(f"   Status: {entry.status.value}")
        if entry.notes:
            print(f"   Notes: {entry.notes}")
        print()
    print(BANNER)


async def cmd_discrepancies(args: argparse.Namespace) -> None:
    store = SqlResultStore(async_session)
    product = await store.get_product(args.item_id)
    if product is None:
        print(f"Product {args.item_id} not found", file=sys.stderr)
        return

    discrepancies = await store.discrepancies_for(args.item_id)
    warnings = await store.warnings_for(args.item_id)

    print(BANNER)
    print(f"ISSUES FOR PRODUCT {args.item_id}")
    print(BANNER)
    print(f"Product: {product.product_name}")
    print(f"Similarity: {product.similarity_score if product.similarity_score is not None else 'n/a'}")
    print(f"Discrepancies: {len(discrepancies)}, validation warnings: {len(warnings)}")

    for severity in ("high", "medium", "low"):
        group = [d for d in discrepancies if d.severity == severity]
        group_warnings = [w for w in warnings if w.severity == severity]
        if not group and not group_warnings:
            continue
        print(f"\n{severity.upper()} SEVERITY ({len(group) + len(group_warnings)}):")
        print("-" * 80)
        for d in group:
            print(f"  {d.field_path} [{d.kind}]")
            print(f"     Primary:  {d.value_a}")
            print(f"     Verifier: {d.value_b}")
            print(f"     Confidence: {d.confidence_score}%")
        for w in group_warnings:
            print(f"  {w.field_path} [validation]")
            print(f"     {w.message}")
    print(f"\nTo resolve: suppfacts resolve {args.item_id} --notes \"...\"")
    print(BANNER)


async def cmd_resolve(args: argparse.Namespace) -> None:
    entry = await ReviewPrioritizer(async_session).resolve(args.item_id, args.notes)
    if entry is None:
        print(f"No review entry for item {args.item_id}", file=sys.stderr)
        return
    print(f"Review for item {args.item_id} marked as {entry.status.value}")
    if args.notes:
        print(f"Notes: {args.notes}")


async def cmd_verification_stats(args: argparse.Namespace) -> None:
    stats = await SqlResultStore(async_session).verification_statistics()
    entries = await ReviewPrioritizer(async_session).list_queue()

    print(BANNER)
    print("VERIFICATION STATISTICS")
    print(BANNER)
    print(f"Products compared:          {stats.total_compared}")
    average = f"{stats.average_similarity:.1f}%" if stats.average_similarity is not None else "n/a"
    print(f"Average similarity:         {average}")
    print(f"Products with high issues:  {stats.high_discrepancy_items}")
    print("\nReview queue:")
    for status in ReviewStatus:
        print(f"  {status.value:<12} {sum(1 for e in entries if e.status is status)}")
    print(f"  {'total':<12} {len(entries)}")

    pending = [e for e in entries if e.status is ReviewStatus.PENDING][:5]
    if pending:
        print("\nTop priority items:")
        for index, entry in enumerate(pending, 1):
            print(f"  {index}. {entry.item_id} (priority {entry.priority}, {entry.high_count} high)")
    print(BANNER)


def cmd_serve(args: argparse.Namespace) -> None:
    uvicorn.run("suppfacts.main:app", host=args.host, port=args.port, log_level=settings.log_level.lower())


COMMANDS = {
    "process": cmd_process,
    "retry-failed": cmd_retry_failed,
    "report": cmd_report,
    "review-queue": cmd_review_queue,
    "discrepancies": cmd_discrepancies,
    "resolve": cmd_resolve,
    "verification-stats": cmd_verification_stats,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="suppfacts", description="Supplement facts extraction and review")
    sub = parser.add_subparsers(dest="command", required=True)

    process = sub.add_parser("process", help="Extract product sheets")
    process.add_argument("--limit", type=int, default=None, help="Process at most N pending sheets")
    process.add_argument("--root", type=str, default=settings.products_root, help="Products directory")
    process.add_argument("--reprocess", action="store_true", help="Also re-extract items already processed")

    sub.add_parser("retry-failed", help="Retry failed items one at a time")
    sub.add_parser("report", help="Processing quality report")

    queue = sub.add_parser("review-queue", help="Show the review queue")
    queue.add_argument("--status", choices=[s.value for s in ReviewStatus], default=None)

    discrepancies = sub.add_parser("discrepancies", help="Show issues recorded for one item")
    discrepancies.add_argument("item_id")

    resolve = sub.add_parser("resolve", help="Mark a review entry as resolved")
    resolve.add_argument("item_id")
    resolve.add_argument("--notes", default="Resolved")

    sub.add_parser("verification-stats", help="Cross-model verification statistics")

    serve = sub.add_parser("serve", help="Run the review API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    return parser


async def _main(args: argparse.Namespace) -> None:
    await init_db()
    try:
        await COMMANDS[args.command](args)
    finally:
        await engine.dispose()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level)
    if args.command == "serve":
        # uvicorn owns the event loop; the app creates tables on startup
        cmd_serve(args)
        return 0
    try:
        asyncio.run(_main(args))
    except Exception as exc:
        logger.error("Fatal error", command=args.command, error=str(exc), exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
