"""Unit tests for review priority and the needs-review decision."""

from __future__ import annotations

from suppfacts.modules.extraction.schemas import Severity, ValidationWarning
from suppfacts.modules.verification.comparison import (
    ComparisonResult,
    Discrepancy,
    DiscrepancyKind,
    FieldCounts,
)
from suppfacts.modules.verification.review import compute_priority, needs_review


def _warning(severity: Severity) -> ValidationWarning:
    return ValidationWarning("supplementFacts.nutrients[0].amount", "bad", severity)


def _discrepancy(severity: Severity) -> Discrepancy:
    return Discrepancy(
        field_path="supplementFacts.nutrients[0].amount",
        value_a="100 mg",
        value_b="200 mg",
        kind=DiscrepancyKind.DIFFERENT,
        severity=severity,
        confidence_score=60,
        description="Amount mismatch",
    )


def _comparison(recommends_review: bool) -> ComparisonResult:
    return ComparisonResult(
        discrepancies=(),
        similarity_score=80.0 if recommends_review else 100.0,
        recommends_review=recommends_review,
        field_counts=FieldCounts(total=4, matching=4, different=0, missing=0),
    )


def test_high_warning_weighs_three() -> None:
    assert compute_priority([_warning(Severity.HIGH)], []) == 3


def test_high_discrepancies_weigh_two_and_mediums_one() -> None:
    discrepancies = [_discrepancy(Severity.HIGH), _discrepancy(Severity.HIGH), _discrepancy(Severity.MEDIUM)]
    assert compute_priority([], discrepancies) == 5


def test_priority_mixes_warnings_and_discrepancies() -> None:
    warnings = [_warning(Severity.HIGH), _warning(Severity.MEDIUM), _warning(Severity.MEDIUM), _warning(Severity.LOW)]
    assert compute_priority(warnings, [_discrepancy(Severity.HIGH), _discrepancy(Severity.LOW)]) == 7


def test_needs_review_rules() -> None:
    assert not needs_review([])
    assert not needs_review([_warning(Severity.LOW)] * 5)
    assert not needs_review([_warning(Severity.MEDIUM)] * 2)
    assert needs_review([_warning(Severity.MEDIUM)] * 3)
    assert needs_review([_warning(Severity.HIGH)])
    assert needs_review([], _comparison(recommends_review=True))
    assert not needs_review([], _comparison(recommends_review=False))
