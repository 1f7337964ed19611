"""Strict validation, salvage parsing and validation-warning severities.

When strict validation fails the record is not thrown away: ``salvage``
rebuilds it field by field, keeping every valid part of the nested
supplement facts, and the pydantic errors become ``ValidationWarning``
entries with a fixed severity.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

import structlog
from pydantic import ValidationError

from suppfacts.modules.extraction.normalizer import (
    collapse_whitespace,
    normalize_daily_value,
    valid_amount,
)
from suppfacts.modules.extraction.schemas import (
    Ingredient,
    Nutrient,
    ProductExtraction,
    Severity,
    SupplementFacts,
    ValidationWarning,
)

logger = structlog.get_logger()

SALVAGE_DEFAULTS: dict[str, str] = {
    "productName": "Unknown",
    "productDescription": "No description available",
    "directions": "No directions provided",
    "servings": "1",
    "servingsPerContainer": "1",
}


class StrictValidationFailure(ValueError):
    """Strict schema validation rejected the recovered value."""

    def __init__(self, errors: ValidationError) -> None:
        super().__init__(str(errors))
        self.errors = errors


class SalvageFailure(ValueError):
    """Nothing usable survived salvage."""


# ---------------------------------------------------------------------------
# Severity rules: first matching rule wins, default low.
# Each rule gets the lower-cased field path and message.
# ---------------------------------------------------------------------------

SEVERITY_RULES: tuple[tuple[Severity, Callable[[str, str], bool]], ...] = (
    (Severity.HIGH, lambda path, msg: "nutrients" in path and "amount" in path),
    (Severity.HIGH, lambda path, msg: "amount must include" in msg or "invalid amount" in msg),
    (Severity.MEDIUM, lambda path, msg: "dailyvalue" in path or "daily_value" in path),
    (Severity.MEDIUM, lambda path, msg: "serving" in path),
)


def classify_severity(field_path: str, message: str) -> Severity:
    path, msg = field_path.lower(), message.lower()
    for severity, rule in SEVERITY_RULES:
        if rule(path, msg):
            return severity
    return Severity.LOW


def format_loc(loc: tuple[Any, ...]) -> str:
    """``("supplementFacts", "nutrients", 0, "amount")`` -> ``supplementFacts.nutrients[0].amount``."""
    path = ""
    for part in loc:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "unknown"


def warnings_from_errors(errors: ValidationError, prefix: tuple[str, ...] = ()) -> list[ValidationWarning]:
    warnings = []
    for error in errors.errors():
        path = format_loc(prefix + tuple(error["loc"]))
        message = error["msg"]
        warnings.append(ValidationWarning(path, message, classify_severity(path, message)))
    return warnings


_LINE_SPLIT = re.compile(r"[;\n]")


def parse_validation_warnings(text: str) -> list[ValidationWarning]:
    """Parse ``"path: message; path: message"`` text into warnings.

    A segment counts as ``path: message`` only when the path looks like a
    field path (contains ``.`` or ``[``); otherwise the path is "unknown".
    Summary lines starting with "partial extraction" are skipped.
    """
    warnings = []
    for segment in _LINE_SPLIT.split(text):
        segment = segment.strip()
        if not segment or segment.lower().startswith("partial extraction"):
            continue
        path, sep, message = segment.partition(":")
        if sep and ("." in path or "[" in path):
            path, message = path.strip(), message.strip()
        else:
            path, message = "unknown", segment
        warnings.append(ValidationWarning(path, message, classify_severity(path, message)))
    return warnings


# ---------------------------------------------------------------------------
# Strict validation and salvage
# ---------------------------------------------------------------------------


def validate_strict(value: Any) -> ProductExtraction:
    try:
        return ProductExtraction.model_validate(value)
    except ValidationError as exc:
        raise StrictValidationFailure(exc) from exc


def validate_supplement_facts(value: Any) -> SupplementFacts:
    """Strict validation of a ``{"supplementFacts": {...}}`` verification result."""
    try:
        return SupplementFacts.model_validate(value.get("supplementFacts") if isinstance(value, dict) else value)
    except ValidationError as exc:
        raise StrictValidationFailure(exc) from exc


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    return collapse_whitespace(str(value))


def _salvage_nutrient(raw: Any, position: int) -> Nutrient | None:
    if not isinstance(raw, dict):
        return None
    name = _text(raw.get("name"))
    if not name:
        return None
    return Nutrient(
        name=name,
        amount=valid_amount(_text(raw.get("amount"))),
        daily_value_percent_adult=normalize_daily_value(
            _text(raw.get("dailyValuePercentAdult")) or _text(raw.get("dailyValuePercent"))
        ),
        daily_value_percent_children=normalize_daily_value(_text(raw.get("dailyValuePercentChildren"))),
        position=position,
    )


def salvage_supplement_facts(raw: Any) -> SupplementFacts | None:
    """Rebuild supplement facts field by field; ``None`` if there is no block."""
    if not isinstance(raw, dict):
        return None
    raw_nutrients = raw.get("nutrients") if isinstance(raw.get("nutrients"), list) else []
    nutrients = []
    for raw_nutrient in raw_nutrients:
        nutrient = _salvage_nutrient(raw_nutrient, len(nutrients))
        if nutrient is not None:
            nutrients.append(nutrient)
    return SupplementFacts(
        servings=_text(raw.get("servings")) or SALVAGE_DEFAULTS["servings"],
        servings_per_container=_text(raw.get("servingsPerContainer")) or SALVAGE_DEFAULTS["servingsPerContainer"],
        calories=_text(raw.get("calories")),
        protein=_text(raw.get("protein")),
        nutrients=nutrients,
    )


def _salvage_ingredients(raw: Any) -> list[Ingredient]:
    if not isinstance(raw, list):
        return []
    ingredients = []
    for item in raw:
        if isinstance(item, str):
            name, organic = _text(item), False
        elif isinstance(item, dict):
            name, organic = _text(item.get("name")), item.get("isOrganic") is True
        else:
            continue
        if name:
            ingredients.append(Ingredient(name=name, is_organic=organic))
    return ingredients


def salvage_facts_only(value: Any) -> SupplementFacts:
    facts = salvage_supplement_facts(value.get("supplementFacts") if isinstance(value, dict) else None)
    if facts is None:
        raise SalvageFailure("no supplement facts block to salvage")
    return facts


def salvage(value: Any) -> ProductExtraction:
    """Best-effort record from a value that failed strict validation.

    Raises:
        SalvageFailure: the value is not an object, or it has no product
            name, no supplement facts and no ingredients.
    """
    if not isinstance(value, dict):
        raise SalvageFailure(f"cannot salvage a {type(value).__name__}")

    facts = salvage_supplement_facts(value.get("supplementFacts"))
    ingredients = _salvage_ingredients(value.get("ingredients"))
    name = _text(value.get("productName"))
    if not name and facts is None and not ingredients:
        raise SalvageFailure("no product name, supplement facts or ingredients survived")

    attributes = value.get("dietaryAttributes")
    record = ProductExtraction(
        product_name=name or SALVAGE_DEFAULTS["productName"],
        product_slogan=_text(value.get("productSlogan")),
        product_description=_text(value.get("productDescription")) or SALVAGE_DEFAULTS["productDescription"],
        subbrand=_text(value.get("subbrand")),
        supplement_facts=facts,
        ingredients=ingredients,
        directions=_text(value.get("directions")) or SALVAGE_DEFAULTS["directions"],
        caution=_text(value.get("caution")),
        dietary_attributes=[a for a in (_text(x) for x in attributes) if a] if isinstance(attributes, list) else [],
        references=_text(value.get("references")),
    )
    logger.info(
        "Salvaged partial extraction",
        product_name=record.product_name,
        nutrients=len(facts.nutrients) if facts else 0,
        ingredients=len(ingredients),
    )
    return record
