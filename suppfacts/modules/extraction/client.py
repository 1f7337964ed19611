"""Extraction client: rate limit -> call -> recover -> validate -> salvage.

One client per provider.  Each extraction walks the state machine

    NOT_STARTED -> RATE_LIMITED -> CALLING -> PARSING -> VALIDATING
                -> SUCCEEDED | SALVAGED | FAILED

and ends in a frozen ``ExtractionOutcome``.  Provider errors are retried by
the retry layer; the limiter is acquired again for every attempt so retries
count against the provider's window too.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog
from pydantic import BaseModel

from suppfacts.modules.extraction import prompts
from suppfacts.modules.extraction.diagnostics import DiagnosticSink, NullDiagnosticSink
from suppfacts.modules.extraction.documents import DocumentPayload, extract_text_sections
from suppfacts.modules.extraction.normalizer import normalize_extraction, normalize_supplement_facts
from suppfacts.modules.extraction.providers import ProviderInvoker
from suppfacts.modules.extraction.rate_limiter import SlidingWindowRateLimiter
from suppfacts.modules.extraction.recovery import (
    DEGRADED_STRATEGIES,
    RecoveryError,
    Strategy,
    recover,
)
from suppfacts.modules.extraction.retry import ProviderCallError, RetryPolicy, with_retry
from suppfacts.modules.extraction.schemas import ProductExtraction, Severity, SupplementFacts, ValidationWarning
from suppfacts.modules.extraction.shapes import (
    FULL_EXTRACTION,
    METADATA_ONLY,
    SUPPLEMENT_FACTS,
    TEXT_STRUCTURING,
    ShapeValidator,
)
from suppfacts.modules.extraction.validation import (
    SalvageFailure,
    StrictValidationFailure,
    salvage,
    salvage_facts_only,
    validate_strict,
    validate_supplement_facts,
    warnings_from_errors,
)

logger = structlog.get_logger()


class ExtractionState(str, Enum):
    NOT_STARTED = "not_started"
    RATE_LIMITED = "rate_limited"
    CALLING = "calling"
    PARSING = "parsing"
    VALIDATING = "validating"
    SUCCEEDED = "succeeded"
    SALVAGED = "salvaged"
    FAILED = "failed"


@dataclass(frozen=True)
class ExtractionRequest:
    """One source item for one orchestration cycle."""

    item_id: str
    payload: DocumentPayload | None
    product_name: str | None = None
    subbrand: str | None = None


@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of one (item, provider) extraction."""

    item_id: str
    provider: str
    status: ExtractionState
    data: ProductExtraction | SupplementFacts | None = None
    raw_response: str | None = None
    error: str | None = None
    elapsed: float = 0.0
    retry_count: int = 0
    warnings: tuple[ValidationWarning, ...] = ()
    strategy: Strategy | None = None
    transitions: tuple[ExtractionState, ...] = ()

    @property
    def success(self) -> bool:
        return self.status in (ExtractionState.SUCCEEDED, ExtractionState.SALVAGED)

    @property
    def supplement_facts(self) -> SupplementFacts | None:
        if isinstance(self.data, SupplementFacts):
            return self.data
        if isinstance(self.data, ProductExtraction):
            return self.data.supplement_facts
        return None


@dataclass(frozen=True)
class _Mode:
    """How a recovered value is validated, salvaged and normalized."""

    name: str
    shape: ShapeValidator
    validate: Callable[[Any], BaseModel]
    salvage: Callable[[Any], BaseModel]
    normalize: Callable[[Any], BaseModel]
    error_prefix: tuple[str, ...] = ()


class _StageFailed(Exception):
    def __init__(self, message: str, raw_response: str | None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


@dataclass
class _Run:
    """Mutable bookkeeping for one extraction; frozen into the outcome."""

    item_id: str
    started: float
    transitions: list[ExtractionState] = field(default_factory=lambda: [ExtractionState.NOT_STARTED])
    retry_count: int = 0

    def enter(self, state: ExtractionState) -> None:
        self.transitions.append(state)


class ExtractionClient:
    """Per-provider extraction adapter.

    The rate limiter is passed in explicitly so that every client talking
    to the same provider shares one admission window.
    """

    def __init__(
        self,
        invoker: ProviderInvoker,
        limiter: SlidingWindowRateLimiter,
        *,
        retry_policy: RetryPolicy | None = None,
        diagnostics: DiagnosticSink | None = None,
        strict_normalization: bool = False,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.invoker = invoker
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.diagnostics = diagnostics or NullDiagnosticSink()
        self._sleep = sleep
        self._clock = clock
        self._pending_diagnostics: set[asyncio.Task[None]] = set()

        self._full = _Mode(
            name="full",
            shape=FULL_EXTRACTION,
            validate=validate_strict,
            salvage=salvage,
            normalize=lambda data: normalize_extraction(data, strict=strict_normalization),
        )
        self._facts = _Mode(
            name="supplement_facts",
            shape=SUPPLEMENT_FACTS,
            validate=validate_supplement_facts,
            salvage=salvage_facts_only,
            normalize=normalize_supplement_facts,
            error_prefix=("supplementFacts",),
        )

    @property
    def provider(self) -> str:
        return self.invoker.name

    # --- Public operations ---------------------------------------------------

    async def extract(self, request: ExtractionRequest) -> ExtractionOutcome:
        """Full product extraction from the document."""
        context = prompts.item_context(request.item_id, request.product_name, request.subbrand)
        run = self._start(request)
        try:
            value, raw, strategy = await self._call_and_recover(
                run, prompts.FULL_EXTRACTION_SYSTEM, prompts.full_extraction_user(context),
                request.payload, FULL_EXTRACTION,
            )
        except _StageFailed as exc:
            return self._failed(run, str(exc), exc.raw_response)
        return self._validate(run, self._full, value, raw, strategy)

    async def extract_supplement_facts(self, request: ExtractionRequest) -> ExtractionOutcome:
        """Supplement-facts-only extraction used for cross-model verification."""
        context = prompts.item_context(request.item_id, request.product_name, request.subbrand)
        run = self._start(request)
        try:
            value, raw, strategy = await self._call_and_recover(
                run, prompts.SUPPLEMENT_FACTS_SYSTEM, prompts.supplement_facts_user(context),
                request.payload, SUPPLEMENT_FACTS,
            )
        except _StageFailed as exc:
            return self._failed(run, str(exc), exc.raw_response)
        return self._validate(run, self._facts, value, raw, strategy)

    async def extract_hybrid(self, request: ExtractionRequest) -> ExtractionOutcome:
        """Three focused calls combined into one record.

        1. supplement facts from the rendered document (vision)
        2. ingredients, directions, caution... structured from page text
        3. product name, slogan and subbrand from the document
        """
        context = prompts.item_context(request.item_id, request.product_name, request.subbrand)
        run = self._start(request)
        raws: list[str] = []
        try:
            facts, raw, _ = await self._call_and_recover(
                run, prompts.SUPPLEMENT_FACTS_SYSTEM, prompts.supplement_facts_user(context),
                request.payload, SUPPLEMENT_FACTS,
            )
            raws.append(raw)

            if request.payload is None:
                raise _StageFailed("Hybrid extraction needs a document payload", None)
            try:
                page_text = await asyncio.to_thread(request.payload.text)
            except ValueError as exc:
                raise _StageFailed(str(exc), "\n\n".join(raws)) from exc
            sections = extract_text_sections(page_text)

            structured, raw, _ = await self._call_and_recover(
                run, prompts.TEXT_STRUCTURING_SYSTEM, prompts.text_structuring_user(context, sections),
                None, TEXT_STRUCTURING,
            )
            raws.append(raw)

            metadata, raw, _ = await self._call_and_recover(
                run, prompts.METADATA_SYSTEM, prompts.metadata_user(context),
                request.payload, METADATA_ONLY,
            )
            raws.append(raw)
        except _StageFailed as exc:
            return self._failed(run, str(exc), exc.raw_response or ("\n\n".join(raws) or None))

        combined: dict[str, Any] = {k: v for k, v in structured.items() if v is not None}
        combined.update({k: v for k, v in metadata.items() if v is not None})
        combined["supplementFacts"] = facts.get("supplementFacts")
        logger.info("Hybrid extraction combined", item_id=run.item_id, fields=sorted(combined))
        return self._validate(run, self._full, combined, "\n\n".join(raws), None)

    async def aclose(self) -> None:
        """Wait for diagnostic writes still in flight."""
        if self._pending_diagnostics:
            await asyncio.gather(*self._pending_diagnostics, return_exceptions=True)

    # --- Stages --------------------------------------------------------------

    def _start(self, request: ExtractionRequest) -> _Run:
        return _Run(item_id=request.item_id, started=self._clock())

    async def _call_and_recover(
        self,
        run: _Run,
        system_prompt: str,
        user_prompt: str,
        payload: DocumentPayload | None,
        shape: ShapeValidator,
    ) -> tuple[Any, str, Strategy]:
        async def attempt() -> str:
            run.enter(ExtractionState.RATE_LIMITED)
            await self.limiter.acquire()
            run.enter(ExtractionState.CALLING)
            return await self.invoker.invoke(system_prompt, user_prompt, payload)

        try:
            retried = await with_retry(
                attempt,
                context=f"{self.provider}:{run.item_id}",
                policy=self.retry_policy,
                sleep=self._sleep,
            )
        except ProviderCallError as exc:
            run.retry_count += max(exc.attempts - 1, 0)
            raise _StageFailed(str(exc), None) from exc
        run.retry_count += retried.retry_count
        raw = retried.value

        run.enter(ExtractionState.PARSING)
        try:
            recovered = recover(raw, shape)
        except RecoveryError as exc:
            logger.error(
                "All JSON recovery strategies failed",
                item_id=run.item_id,
                provider=self.provider,
                shape=shape.name,
                response_length=len(raw),
                preview=exc.preview,
                anomalies=[f"{a.kind}@{a.position}" for a in exc.anomalies],
            )
            self._record_diagnostic(run.item_id, raw, exc)
            raise _StageFailed(
                f"Could not parse {shape.name} JSON from response: {exc}", raw
            ) from exc

        if recovered.strategy in DEGRADED_STRATEGIES:
            logger.warning(
                "JSON recovered by fallback strategy, check prompt output",
                item_id=run.item_id,
                provider=self.provider,
                strategy=recovered.strategy.value,
            )
        elif recovered.strategy is not Strategy.DIRECT_PARSE:
            logger.info("JSON recovered", item_id=run.item_id, strategy=recovered.strategy.value)
        return recovered.value, raw, recovered.strategy

    def _validate(
        self,
        run: _Run,
        mode: _Mode,
        value: Any,
        raw: str,
        strategy: Strategy | None,
    ) -> ExtractionOutcome:
        run.enter(ExtractionState.VALIDATING)
        try:
            data = mode.normalize(mode.validate(value))
        except StrictValidationFailure as exc:
            warnings = tuple(warnings_from_errors(exc.errors, mode.error_prefix))
            try:
                salvaged = mode.normalize(mode.salvage(value))
            except SalvageFailure as salvage_exc:
                logger.error(
                    "Validation failed and salvage found nothing usable",
                    item_id=run.item_id,
                    provider=self.provider,
                    errors=len(warnings),
                )
                return self._failed(
                    run, f"Validation failed: {salvage_exc}", raw, warnings=warnings, strategy=strategy
                )
            logger.warning(
                "Partial extraction salvaged",
                item_id=run.item_id,
                provider=self.provider,
                mode=mode.name,
                warnings=len(warnings),
                high=sum(1 for w in warnings if w.severity is Severity.HIGH),
            )
            return self._finish(run, ExtractionState.SALVAGED, data=salvaged, raw_response=raw,
                                warnings=warnings, strategy=strategy)

        return self._finish(run, ExtractionState.SUCCEEDED, data=data, raw_response=raw, strategy=strategy)

    # --- Outcome helpers -----------------------------------------------------

    def _finish(self, run: _Run, status: ExtractionState, **fields: Any) -> ExtractionOutcome:
        run.enter(status)
        outcome = ExtractionOutcome(
            item_id=run.item_id,
            provider=self.provider,
            status=status,
            elapsed=self._clock() - run.started,
            retry_count=run.retry_count,
            transitions=tuple(run.transitions),
            **fields,
        )
        logger.info(
            "Extraction finished",
            item_id=run.item_id,
            provider=self.provider,
            status=status.value,
            elapsed=round(outcome.elapsed, 2),
            retries=run.retry_count,
        )
        return outcome

    def _failed(self, run: _Run, error: str, raw_response: str | None, **fields: Any) -> ExtractionOutcome:
        return self._finish(run, ExtractionState.FAILED, error=error, raw_response=raw_response, **fields)

    def _record_diagnostic(self, item_id: str, raw: str, exc: RecoveryError) -> None:
        task = asyncio.create_task(self.diagnostics.record(item_id, raw, exc.anomalies))
        self._pending_diagnostics.add(task)
        task.add_done_callback(self._pending_diagnostics.discard)
