"""Cross-model comparison of two supplement-facts extractions.

``compare(a, b)`` is pure.  ``a`` is the reference side: its nutrient
count sizes the score denominator and its amounts set the tolerance.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from enum import Enum

import structlog

from suppfacts.modules.extraction.schemas import Nutrient, Severity, SupplementFacts

logger = structlog.get_logger()

REVIEW_SIMILARITY_THRESHOLD = 85.0
AMOUNT_TOLERANCE = 0.01  # relative to the reference value
PERCENT_TOLERANCE = 1.0  # absolute percentage points
MAX_MEDIUM_BEFORE_REVIEW = 2

SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.HIGH: 1.0,
    Severity.MEDIUM: 0.5,
    Severity.LOW: 0.25,
}

# Only micro-gram spellings are equated; IU and mass units are never converted
UNIT_CLASSES: dict[str, str] = {
    "mcg": "ug",
    "μg": "ug",  # Greek mu
    "µg": "ug",  # micro sign
}

# (attribute, wire name) of the fixed scalar fields
TEXT_FIELDS: tuple[tuple[str, str], ...] = (
    ("servings", "servings"),
    ("servings_per_container", "servingsPerContainer"),
    ("calories", "calories"),
    ("protein", "protein"),
)

_AMOUNT = re.compile(r"^<?(\d+(?:\.\d+)?)\s*([a-zA-Zα-ωµμ]+)")
_NOT_UNIT_CHAR = re.compile(r"[^a-zα-ωµμ]")
_PARENTHETICAL = re.compile(r"\(.*?\)")
_NOT_ALNUM = re.compile(r"[^a-z0-9]")
_NOT_NUMERIC = re.compile(r"[^0-9.]")


class DiscrepancyKind(str, Enum):
    MISSING = "missing"
    DIFFERENT = "different"
    EXTRA = "extra"


@dataclass(frozen=True)
class Discrepancy:
    field_path: str
    value_a: str | None
    value_b: str | None
    kind: DiscrepancyKind
    severity: Severity
    confidence_score: int
    description: str


@dataclass(frozen=True)
class FieldCounts:
    total: int
    matching: int
    different: int
    missing: int


@dataclass(frozen=True)
class ComparisonResult:
    discrepancies: tuple[Discrepancy, ...]
    similarity_score: float
    recommends_review: bool
    field_counts: FieldCounts

    @property
    def has_discrepancies(self) -> bool:
        return bool(self.discrepancies)

    def count(self, severity: Severity) -> int:
        return sum(1 for d in self.discrepancies if d.severity is severity)


# ---------------------------------------------------------------------------
# Value matching
# ---------------------------------------------------------------------------


def normalize_nutrient_name(name: str) -> str:
    """``"Vitamin B12 (as Methylcobalamin)"`` -> ``"vitb12"``."""
    text = _PARENTHETICAL.sub("", name.lower())
    text = _NOT_ALNUM.sub("", text)
    return text.replace("vitamin", "vit")


def parse_amount(amount: str) -> tuple[float, str] | None:
    match = _AMOUNT.match(amount.strip())
    if match is None:
        return None
    return float(match.group(1)), match.group(2).lower()


def normalize_unit(unit: str) -> str:
    cleaned = _NOT_UNIT_CHAR.sub("", unit.lower())
    return UNIT_CLASSES.get(cleaned, cleaned)


def amounts_match(a: str | None, b: str | None) -> bool:
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    parsed_a, parsed_b = parse_amount(a), parse_amount(b)
    if parsed_a is None or parsed_b is None:
        return False
    (value_a, unit_a), (value_b, unit_b) = parsed_a, parsed_b
    if normalize_unit(unit_a) != normalize_unit(unit_b):
        return False
    return abs(value_a - value_b) <= value_a * AMOUNT_TOLERANCE


def _percent_value(percent: str) -> float | None:
    try:
        return float(_NOT_NUMERIC.sub("", percent))
    except ValueError:
        return None


def percentages_match(a: str | None, b: str | None) -> bool:
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    value_a, value_b = _percent_value(a), _percent_value(b)
    if value_a is None or value_b is None:
        return False
    return abs(value_a - value_b) <= PERCENT_TOLERANCE


def _normalize_text(value: str | None) -> str | None:
    if value is None:
        return None
    return " ".join(value.lower().split())


def texts_match(a: str | None, b: str | None) -> bool:
    return _normalize_text(a) == _normalize_text(b)


# ---------------------------------------------------------------------------
# Field comparison
# ---------------------------------------------------------------------------


def _compare_text_fields(a: SupplementFacts, b: SupplementFacts) -> list[Discrepancy]:
    discrepancies = []
    for attr, wire in TEXT_FIELDS:
        value_a, value_b = getattr(a, attr), getattr(b, attr)
        if texts_match(value_a, value_b):
            continue
        discrepancies.append(
            Discrepancy(
                field_path=f"supplementFacts.{wire}",
                value_a=value_a,
                value_b=value_b,
                kind=DiscrepancyKind.DIFFERENT,
                severity=Severity.LOW,
                confidence_score=75,
                description=f'Text field mismatch: "{value_a}" vs "{value_b}"',
            )
        )
    return discrepancies


def _pair_by_name(a: list[Nutrient], b: list[Nutrient]) -> list[tuple[int, Nutrient, Nutrient | None]]:
    """Pair every reference row with a verifier row of the same normalized name.

    Repeated names pair in order of appearance; when the verifier has fewer
    rows for a name, its last row is reused.
    """
    by_name: dict[str, list[Nutrient]] = {}
    for nutrient in b:
        by_name.setdefault(normalize_nutrient_name(nutrient.name), []).append(nutrient)

    seen: dict[str, int] = {}
    pairs: list[tuple[int, Nutrient, Nutrient | None]] = []
    for index, nutrient in enumerate(a):
        key = normalize_nutrient_name(nutrient.name)
        candidates = by_name.get(key)
        if not candidates:
            pairs.append((index, nutrient, None))
            continue
        occurrence = seen.get(key, 0)
        seen[key] = occurrence + 1
        pairs.append((index, nutrient, candidates[min(occurrence, len(candidates) - 1)]))
    return pairs


def _compare_nutrients(a: list[Nutrient], b: list[Nutrient]) -> list[Discrepancy]:
    discrepancies: list[Discrepancy] = []
    for index, nutrient, other in _pair_by_name(a, b):
        path = f"supplementFacts.nutrients[{index}]"
        if other is None:
            discrepancies.append(
                Discrepancy(
                    field_path=path,
                    value_a=nutrient.name,
                    value_b=None,
                    kind=DiscrepancyKind.MISSING,
                    severity=Severity.HIGH,
                    confidence_score=50,
                    description=f'Nutrient "{nutrient.name}" found by the primary model only',
                )
            )
            continue

        if not amounts_match(nutrient.amount, other.amount):
            discrepancies.append(
                Discrepancy(
                    field_path=f"{path}.amount",
                    value_a=nutrient.amount,
                    value_b=other.amount,
                    kind=DiscrepancyKind.DIFFERENT,
                    severity=Severity.HIGH,
                    confidence_score=60,
                    description=f'Amount mismatch for {nutrient.name}: "{nutrient.amount}" vs "{other.amount}"',
                )
            )
        for attr, wire, label in (
            ("daily_value_percent_adult", "dailyValuePercentAdult", "adult"),
            ("daily_value_percent_children", "dailyValuePercentChildren", "children"),
        ):
            value_a, value_b = getattr(nutrient, attr), getattr(other, attr)
            if not percentages_match(value_a, value_b):
                discrepancies.append(
                    Discrepancy(
                        field_path=f"{path}.{wire}",
                        value_a=value_a,
                        value_b=value_b,
                        kind=DiscrepancyKind.DIFFERENT,
                        severity=Severity.MEDIUM,
                        confidence_score=70,
                        description=f"Daily value % ({label}) mismatch for {nutrient.name}",
                    )
                )

    names_a = {normalize_nutrient_name(n.name) for n in a}
    for index, nutrient in enumerate(b):
        if normalize_nutrient_name(nutrient.name) not in names_a:
            discrepancies.append(
                Discrepancy(
                    field_path=f"supplementFacts.nutrients[verifier-{index}]",
                    value_a=None,
                    value_b=nutrient.name,
                    kind=DiscrepancyKind.EXTRA,
                    severity=Severity.HIGH,
                    confidence_score=50,
                    description=f'Nutrient "{nutrient.name}" found by the verifier model only',
                )
            )
    return discrepancies


def _count_matching(a: SupplementFacts, b: SupplementFacts) -> int:
    matching = sum(1 for attr, _ in TEXT_FIELDS if texts_match(getattr(a, attr), getattr(b, attr)))
    for _, nutrient, other in _pair_by_name(a.nutrients, b.nutrients):
        if other is None:
            continue
        matching += 1
        matching += amounts_match(nutrient.amount, other.amount)
        matching += percentages_match(nutrient.daily_value_percent_adult, other.daily_value_percent_adult)
    return matching


def total_field_count(reference: SupplementFacts) -> int:
    return len(TEXT_FIELDS) + 3 * len(reference.nutrients)


def similarity_score(discrepancies: list[Discrepancy], total_fields: int) -> float:
    if total_fields == 0:
        return 100.0
    weighted = sum(SEVERITY_WEIGHTS[d.severity] for d in discrepancies)
    score = max(0.0, min(100.0, 100.0 - weighted / total_fields * 100.0))
    return math.floor(score * 10 + 0.5) / 10


def compare(
    a: SupplementFacts,
    b: SupplementFacts,
    *,
    review_threshold: float = REVIEW_SIMILARITY_THRESHOLD,
) -> ComparisonResult:
    """Field-by-field diff of two supplement-facts extractions."""
    discrepancies = _compare_text_fields(a, b) + _compare_nutrients(a.nutrients, b.nutrients)
    total = total_field_count(a)
    score = similarity_score(discrepancies, total)

    high = sum(1 for d in discrepancies if d.severity is Severity.HIGH)
    medium = sum(1 for d in discrepancies if d.severity is Severity.MEDIUM)
    recommends_review = high > 0 or medium > MAX_MEDIUM_BEFORE_REVIEW or score < review_threshold

    logger.debug("Comparison completed", discrepancies=len(discrepancies), similarity=score)

    return ComparisonResult(
        discrepancies=tuple(discrepancies),
        similarity_score=score,
        recommends_review=recommends_review,
        field_counts=FieldCounts(
            total=total,
            matching=_count_matching(a, b),
            different=sum(1 for d in discrepancies if d.kind is DiscrepancyKind.DIFFERENT),
            missing=sum(1 for d in discrepancies if d.kind is DiscrepancyKind.MISSING),
        ),
    )


def generate_comparison_report(result: ComparisonResult, item_id: str | None = None) -> str:
    """Plain-text report of one comparison."""
    lines = ["=" * 80, f"COMPARISON REPORT{f' - {item_id}' if item_id else ''}", "=" * 80]
    lines.append(f"Similarity score:   {result.similarity_score:.1f}%")
    lines.append(f"Needs review:       {'YES' if result.recommends_review else 'no'}")
    counts = result.field_counts
    lines.append(
        f"Fields:             {counts.matching}/{counts.total} matching, "
        f"{counts.different} different, {counts.missing} missing"
    )
    if not result.discrepancies:
        lines.append("No discrepancies.")
        return "\n".join(lines)

    lines.append("-" * 80)
    for severity in (Severity.HIGH, Severity.MEDIUM, Severity.LOW):
        group = [d for d in result.discrepancies if d.severity is severity]
        if not group:
            continue
        lines.append(f"{severity.value.upper()} ({len(group)})")
        for d in group:
            lines.append(f"  [{d.kind.value}] {d.field_path}: {d.description}")
    return "\n".join(lines)
