"""Integration tests for the SQL result store and review prioritizer.

Runs against an in-memory SQLite database created per test, with the
orchestrator wired to the real store so the full per-item write path is
exercised.
"""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from suppfacts.modules.extraction.client import ExtractionOutcome, ExtractionRequest, ExtractionState
from suppfacts.modules.extraction.recovery import Strategy
from suppfacts.modules.extraction.schemas import (
    Ingredient,
    Nutrient,
    ProductExtraction,
    Severity,
    SupplementFacts,
    ValidationWarning,
)
from suppfacts.modules.processing.orchestrator import BatchOrchestrator
from suppfacts.modules.processing.scanner import ProductFile
from suppfacts.modules.storage.models import ExtractionStatus, ProcessingLog, ReviewStatus
from suppfacts.modules.storage.repository import SqlResultStore, split_amount
from suppfacts.modules.verification.comparison import compare
from suppfacts.modules.verification.review import ReviewPrioritizer

ITEM = ProductFile(
    item_id="0358",
    product_name="Yummies Strawberry",
    subbrand="Kids",
    pdf_path=Path("/products/Kids/0358 Yummies Strawberry/0358-PI_EN.pdf"),
    folder_path=Path("/products/Kids/0358 Yummies Strawberry"),
)

FACTS = SupplementFacts(
    servings="2 gummies",
    servings_per_container="30",
    nutrients=[
        Nutrient(name="Vitamin C", amount="100 mg", daily_value_percent_adult="111", position=0),
        Nutrient(name="Biotin", amount=None, position=1),
        Nutrient(name="Vitamin A", amount="500 mcg RAE", position=2),
    ],
)

RECORD = ProductExtraction(
    product_name="Yummies Strawberry",
    product_description="Vitamin gummies.",
    directions="Take two daily.",
    supplement_facts=FACTS,
    ingredients=[Ingredient(name="Sugar"), Ingredient(name="Pectin", is_organic=True)],
    dietary_attributes=["Vegan"],
)


def _outcome(status: ExtractionState = ExtractionState.SUCCEEDED, **fields) -> ExtractionOutcome:
    fields.setdefault("data", RECORD)
    return ExtractionOutcome(
        item_id=ITEM.item_id,
        provider="anthropic",
        status=status,
        raw_response='{"productName": "Yummies Strawberry"}',
        strategy=Strategy.DIRECT_PARSE,
        **fields,
    )


# ---------------------------------------------------------------------------
# split_amount
# ---------------------------------------------------------------------------


def test_split_amount() -> None:
    assert split_amount("100 mg") == ("100", "mg")
    assert split_amount("500 mcg RAE") == ("500", "mcg RAE")
    assert split_amount("<1 g") == ("<1", "g")
    assert split_amount("trace") == ("trace", None)
    assert split_amount(None) == (None, None)


# ---------------------------------------------------------------------------
# SqlResultStore
# ---------------------------------------------------------------------------


async def test_save_product_persists_children(session_factory: async_sessionmaker[AsyncSession]) -> None:
    store = SqlResultStore(session_factory)

    product_id = await store.save_product(ITEM, RECORD, _outcome(), completeness=70)

    product = await store.get_product("0358")
    assert product is not None
    assert product.id == product_id
    assert product.status is ExtractionStatus.COMPLETED
    assert product.subbrand == "Kids"
    assert product.provider == "anthropic"
    assert product.strategy == "direct_parse"
    assert product.dietary_attributes == ["Vegan"]
    nutrients = product.supplement_facts.nutrients
    assert [(n.name, n.amount, n.unit, n.position) for n in nutrients] == [
        ("Vitamin C", "100", "mg", 0),
        ("Biotin", None, None, 1),
        ("Vitamin A", "500", "mcg RAE", 2),
    ]
    assert [(i.name, i.is_organic) for i in product.ingredients] == [("Sugar", False), ("Pectin", True)]
    assert await store.is_already_processed("0358")


async def test_save_product_replaces_previous_rows(session_factory: async_sessionmaker[AsyncSession]) -> None:
    store = SqlResultStore(session_factory)
    first_id = await store.save_product(ITEM, RECORD, _outcome())

    smaller = RECORD.model_copy(
        update={"supplement_facts": FACTS.model_copy(update={"nutrients": FACTS.nutrients[:1]}), "ingredients": []}
    )
    second_id = await store.save_product(ITEM, smaller, _outcome(ExtractionState.SALVAGED, data=smaller))

    assert first_id == second_id
    product = await store.get_product("0358")
    assert product.status is ExtractionStatus.SALVAGED
    assert len(product.supplement_facts.nutrients) == 1
    assert product.ingredients == []


async def test_mark_failed_then_list_failed(session_factory: async_sessionmaker[AsyncSession]) -> None:
    store = SqlResultStore(session_factory)

    await store.mark_failed(ITEM, "Could not parse full_extraction JSON", raw_response="garbage")

    failed = await store.list_failed()
    assert failed == [ITEM]
    assert not await store.is_already_processed("0358")
    product = await store.get_product("0358")
    assert product.error_message == "Could not parse full_extraction JSON"
    assert product.raw_response == "garbage"

    stats = await store.statistics()
    assert (stats.total, stats.failed, stats.success_rate) == (1, 1, 0.0)


async def test_warnings_and_discrepancies_are_replaced(session_factory: async_sessionmaker[AsyncSession]) -> None:
    store = SqlResultStore(session_factory)
    other = FACTS.model_copy(update={"nutrients": [FACTS.nutrients[0].model_copy(update={"amount": "200 mg"})]})
    comparison = compare(FACTS, other)

    await store.save_warnings("0358", [ValidationWarning("directions", "Field required", Severity.LOW)], "anthropic")
    await store.save_warnings("0358", [ValidationWarning("supplementFacts.servings", "Field required", Severity.MEDIUM)])
    await store.save_discrepancies("0358", comparison.discrepancies)

    warnings = await store.warnings_for("0358")
    assert [(w.field_path, w.severity, w.source) for w in warnings] == [("supplementFacts.servings", "medium", None)]

    discrepancies = await store.discrepancies_for("0358")
    assert [d.severity for d in discrepancies] == ["high", "high", "high"]
    assert discrepancies[0].field_path == "supplementFacts.nutrients[0].amount"


async def test_statistics(session_factory: async_sessionmaker[AsyncSession]) -> None:
    store = SqlResultStore(session_factory)
    other_item = ProductFile("0412", "Omega", None, Path("/p/0412-PI_EN.pdf"), Path("/p"))
    comparison = compare(FACTS, FACTS)

    await store.save_product(ITEM, RECORD, _outcome(), comparison=comparison)
    await store.mark_failed(other_item, "timeout")
    await store.log_processing("0358", "extract", "success", elapsed=1.5, pdf_path=str(ITEM.pdf_path))

    stats = await store.statistics()
    assert (stats.total, stats.completed, stats.failed) == (2, 1, 1)
    assert stats.success_rate == 50.0
    assert await store.processed_ids() == {"0358"}

    verification = await store.verification_statistics()
    assert verification.total_compared == 1
    assert verification.average_similarity == 100.0
    assert verification.high_discrepancy_items == 0

    async with session_factory() as session:
        elapsed = (await session.execute(select(ProcessingLog.elapsed_ms))).scalar_one()
        assert elapsed == 1500


# ---------------------------------------------------------------------------
# ReviewPrioritizer
# ---------------------------------------------------------------------------


async def test_enqueue_upserts_one_entry_per_item(session_factory: async_sessionmaker[AsyncSession]) -> None:
    prioritizer = ReviewPrioritizer(session_factory)
    high = ValidationWarning("supplementFacts.nutrients[0].amount", "bad", Severity.HIGH)

    await prioritizer.enqueue("0358", [high])
    entry = await prioritizer.enqueue("0358", [high, high])

    assert entry.priority == 6
    assert entry.high_count == 2
    assert entry.status is ReviewStatus.PENDING
    assert len(await prioritizer.list_queue()) == 1


async def test_resolved_entry_stays_resolved_unless_reopened(
    session_factory: async_sessionmaker[AsyncSession],
) -> None:
    prioritizer = ReviewPrioritizer(session_factory)
    high = ValidationWarning("supplementFacts.nutrients[0].amount", "bad", Severity.HIGH)
    await prioritizer.enqueue("0358", [high])

    resolved = await prioritizer.resolve("0358", "checked against label")
    assert resolved.status is ReviewStatus.RESOLVED
    assert resolved.reviewed_at is not None

    entry = await prioritizer.enqueue("0358", [high, high])
    assert entry.status is ReviewStatus.RESOLVED
    assert entry.priority == 6

    entry = await prioritizer.enqueue("0358", [high], reopen=True)
    assert entry.status is ReviewStatus.PENDING
    assert entry.reviewed_at is None


async def test_resolve_unknown_item_returns_none(session_factory: async_sessionmaker[AsyncSession]) -> None:
    assert await ReviewPrioritizer(session_factory).resolve("9999") is None


async def test_queue_is_ordered_by_priority(session_factory: async_sessionmaker[AsyncSession]) -> None:
    prioritizer = ReviewPrioritizer(session_factory)
    medium = ValidationWarning("supplementFacts.servings", "bad", Severity.MEDIUM)
    high = ValidationWarning("supplementFacts.nutrients[0].amount", "bad", Severity.HIGH)

    await prioritizer.enqueue("0001", [medium])
    await prioritizer.enqueue("0002", [high])
    await prioritizer.enqueue("0003", [medium])
    await prioritizer.resolve("0003", status=ReviewStatus.DISMISSED)

    assert [e.item_id for e in await prioritizer.list_queue()] == ["0002", "0001", "0003"]
    assert [e.item_id for e in await prioritizer.list_queue(ReviewStatus.PENDING)] == ["0002", "0001"]


# ---------------------------------------------------------------------------
# Orchestrator against the real store
# ---------------------------------------------------------------------------


class ScriptedClient:
    provider = "anthropic"

    def __init__(self, outcome: ExtractionOutcome) -> None:
        self.outcome = outcome

    async def extract(self, request: ExtractionRequest) -> ExtractionOutcome:
        return self.outcome

    async def extract_supplement_facts(self, request: ExtractionRequest) -> ExtractionOutcome:
        return self.outcome


async def test_orchestrator_writes_everything(session_factory: async_sessionmaker[AsyncSession]) -> None:
    store = SqlResultStore(session_factory)
    prioritizer = ReviewPrioritizer(session_factory)
    other = FACTS.model_copy(update={"nutrients": FACTS.nutrients[:2]})
    verifier = ScriptedClient(
        ExtractionOutcome(item_id="0358", provider="openai", status=ExtractionState.SUCCEEDED, data=other)
    )
    orchestrator = BatchOrchestrator(ScriptedClient(_outcome()), store, verifier=verifier, review_queue=prioritizer)

    summary = await orchestrator.run_all([ITEM], concurrency=1)

    assert summary.success_count == 1
    product = await store.get_product("0358")
    assert product.verification_provider == "openai"
    # Vitamin A missing from the verifier: one high discrepancy over 13 fields
    assert product.similarity_score == 92.3
    assert [d.kind for d in await store.discrepancies_for("0358")] == ["missing"]
    entry = await prioritizer.get("0358")
    assert entry.priority == 2

    async with session_factory() as session:
        logs = (await session.execute(select(func.count()).select_from(ProcessingLog))).scalar_one()
        assert logs == 1

    assert (await orchestrator.run_all([ITEM], concurrency=1)).skipped_count == 1
