"""Unit tests for the extraction client state machine.

Provider calls go through a scripted fake invoker; no network, no PDFs.
"""

from __future__ import annotations

import json
from typing import Any

from suppfacts.modules.extraction.client import (
    ExtractionClient,
    ExtractionRequest,
    ExtractionState,
)
from suppfacts.modules.extraction.rate_limiter import SlidingWindowRateLimiter
from suppfacts.modules.extraction.recovery import Anomaly, Strategy
from suppfacts.modules.extraction.retry import RetryPolicy
from suppfacts.modules.extraction.schemas import ProductExtraction, Severity, SupplementFacts

# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeInvoker:
    """Returns (or raises) the scripted responses in order."""

    name = "fake"
    model = "fake-vision-1"

    def __init__(self, *responses: str | Exception) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[str, str, Any]] = []

    async def invoke(self, system_prompt: str, user_prompt: str, payload: Any) -> str:
        self.calls.append((system_prompt, user_prompt, payload))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


class RecordingSink:
    def __init__(self) -> None:
        self.records: list[tuple[str, str, list[Anomaly] | None]] = []

    async def record(self, item_id: str, raw_text: str, anomalies: list[Anomaly] | None = None) -> None:
        self.records.append((item_id, raw_text, anomalies))


class FakePayload:
    def __init__(self, text: str) -> None:
        self._text = text

    def text(self) -> str:
        return self._text


async def _no_sleep(seconds: float) -> None:
    return None


def _client(invoker: FakeInvoker, sink: RecordingSink | None = None) -> ExtractionClient:
    return ExtractionClient(
        invoker,
        SlidingWindowRateLimiter(100, name=invoker.name),
        retry_policy=RetryPolicy(jitter=0.0),
        diagnostics=sink,
        sleep=_no_sleep,
    )


REQUEST = ExtractionRequest(item_id="0358", payload=None, product_name="Yummies", subbrand="Kids")

FACTS: dict[str, Any] = {
    "servings": "2 gummies",
    "servingsPerContainer": "30",
    "nutrients": [
        {"name": "Vitamin C", "amount": "100 mg", "dailyValuePercentAdult": "111"},
        {"name": "Zinc", "amount": "5 mg", "dailyValuePercentAdult": "45"},
    ],
}

RECORD: dict[str, Any] = {
    "productName": "Yummies",
    "productDescription": "Vitamin gummies for kids.",
    "directions": "Take two daily.",
    "supplementFacts": FACTS,
    "ingredients": [{"name": "Sugar"}],
}


# ---------------------------------------------------------------------------
# Full extraction
# ---------------------------------------------------------------------------


async def test_successful_extraction_walks_every_state() -> None:
    invoker = FakeInvoker(json.dumps(RECORD))
    outcome = await _client(invoker).extract(REQUEST)

    assert outcome.status is ExtractionState.SUCCEEDED
    assert outcome.success
    assert outcome.provider == "fake"
    assert outcome.strategy is Strategy.DIRECT_PARSE
    assert outcome.retry_count == 0
    assert outcome.transitions == (
        ExtractionState.NOT_STARTED,
        ExtractionState.RATE_LIMITED,
        ExtractionState.CALLING,
        ExtractionState.PARSING,
        ExtractionState.VALIDATING,
        ExtractionState.SUCCEEDED,
    )
    assert isinstance(outcome.data, ProductExtraction)
    assert outcome.supplement_facts.nutrients[1].position == 1
    assert "0358" in invoker.calls[0][1]


async def test_transient_error_is_retried_through_the_limiter() -> None:
    invoker = FakeInvoker(RuntimeError("429 rate limit exceeded"), json.dumps(RECORD))
    outcome = await _client(invoker).extract(REQUEST)

    assert outcome.status is ExtractionState.SUCCEEDED
    assert outcome.retry_count == 1
    assert outcome.transitions.count(ExtractionState.RATE_LIMITED) == 2
    assert len(invoker.calls) == 2


async def test_non_retryable_error_fails_without_raw_response() -> None:
    invoker = FakeInvoker(ValueError("Invalid PDF 0358-PI_EN.pdf: no pages"))
    outcome = await _client(invoker).extract(REQUEST)

    assert outcome.status is ExtractionState.FAILED
    assert not outcome.success
    assert "INVALID_INPUT" in outcome.error
    assert outcome.raw_response is None
    assert len(invoker.calls) == 1


async def test_unparsable_response_is_kept_and_recorded() -> None:
    sink = RecordingSink()
    client = _client(FakeInvoker("Sorry, I cannot read this label."), sink)

    outcome = await client.extract(REQUEST)
    await client.aclose()

    assert outcome.status is ExtractionState.FAILED
    assert outcome.error.startswith("Could not parse full_extraction JSON")
    assert outcome.raw_response == "Sorry, I cannot read this label."
    assert [(item_id, raw) for item_id, raw, _ in sink.records] == [("0358", "Sorry, I cannot read this label.")]


async def test_invalid_amount_is_salvaged_with_warnings() -> None:
    facts = {**FACTS, "nutrients": [{"name": "Vitamin C", "amount": "100"}, FACTS["nutrients"][1]]}
    outcome = await _client(FakeInvoker(json.dumps({**RECORD, "supplementFacts": facts}))).extract(REQUEST)

    assert outcome.status is ExtractionState.SALVAGED
    assert outcome.success
    assert [(w.field_path, w.severity) for w in outcome.warnings] == [
        ("supplementFacts.nutrients[0].amount", Severity.HIGH)
    ]
    nutrients = outcome.supplement_facts.nutrients
    assert [(n.name, n.amount) for n in nutrients] == [("Vitamin C", None), ("Zinc", "5 mg")]


async def test_salvaged_record_is_normalized() -> None:
    facts = {**FACTS, "nutrients": [{"name": "Vitamin C", "amount": "100"}]}
    record = {
        **RECORD,
        "supplementFacts": facts,
        "directions": "Take two daily",
        "ingredients": [{"name": "Organic Cane Sugar"}],
        "dietaryAttributes": ["vegan", "gluten free"],
        "references": "x" * 8000,
    }
    outcome = await _client(FakeInvoker(json.dumps(record))).extract(REQUEST)

    assert outcome.status is ExtractionState.SALVAGED
    data = outcome.data
    assert data.directions == "Take two daily."
    assert [(i.name, i.is_organic) for i in data.ingredients] == [("Cane Sugar", True)]
    assert data.dietary_attributes == ["Vegan", "Gluten-Free"]
    assert len(data.references) == 5000
    assert data.references.endswith("...")


async def test_nothing_to_salvage_fails_with_warnings() -> None:
    outcome = await _client(FakeInvoker('{"ingredients": [5]}')).extract(REQUEST)

    assert outcome.status is ExtractionState.FAILED
    assert outcome.error.startswith("Validation failed")
    assert outcome.warnings
    assert outcome.raw_response == '{"ingredients": [5]}'


# ---------------------------------------------------------------------------
# Supplement facts only
# ---------------------------------------------------------------------------


async def test_supplement_facts_extraction() -> None:
    raw = "```json\n" + json.dumps({"supplementFacts": FACTS}) + "\n```"
    outcome = await _client(FakeInvoker(raw)).extract_supplement_facts(REQUEST)

    assert outcome.status is ExtractionState.SUCCEEDED
    assert isinstance(outcome.data, SupplementFacts)
    assert outcome.supplement_facts is outcome.data
    assert outcome.data.servings == "2 gummies"


async def test_supplement_facts_warnings_carry_the_block_prefix() -> None:
    facts = {**FACTS, "nutrients": [{"name": "Zinc", "amount": "5 mg", "dailyValuePercentAdult": "45%"}]}
    outcome = await _client(FakeInvoker(json.dumps({"supplementFacts": facts}))).extract_supplement_facts(REQUEST)

    assert outcome.status is ExtractionState.SALVAGED
    assert outcome.warnings[0].field_path == "supplementFacts.nutrients[0].dailyValuePercentAdult"
    assert outcome.supplement_facts.nutrients[0].daily_value_percent_adult == "45"


# ---------------------------------------------------------------------------
# Hybrid
# ---------------------------------------------------------------------------


async def test_hybrid_combines_three_calls() -> None:
    invoker = FakeInvoker(
        json.dumps({"supplementFacts": FACTS}),
        json.dumps(
            {
                "productDescription": "Vitamin gummies.",
                "ingredients": [{"name": "Sugar"}],
                "directions": "Take two daily.",
                "caution": None,
            }
        ),
        json.dumps({"productName": "Yummies", "productSlogan": None, "subbrand": "Kids"}),
    )
    payload = FakePayload("INGREDIENTS: Sugar\nDIRECTIONS: Take two daily.")
    request = ExtractionRequest(item_id="0358", payload=payload)  # type: ignore[arg-type]

    outcome = await _client(invoker).extract_hybrid(request)

    assert outcome.status is ExtractionState.SUCCEEDED
    record = outcome.data
    assert isinstance(record, ProductExtraction)
    assert record.product_name == "Yummies"
    assert record.subbrand == "Kids"
    assert [i.name for i in record.ingredients] == ["Sugar"]
    assert len(record.supplement_facts.nutrients) == 2
    assert len(invoker.calls) == 3
    # text structuring works from page text only
    assert invoker.calls[1][2] is None
    assert "Take two daily." in invoker.calls[1][1]


async def test_hybrid_needs_a_payload() -> None:
    invoker = FakeInvoker(json.dumps({"supplementFacts": FACTS}))
    outcome = await _client(invoker).extract_hybrid(REQUEST)

    assert outcome.status is ExtractionState.FAILED
    assert "needs a document payload" in outcome.error
