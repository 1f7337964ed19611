"""Normalization of validated extractions and a completeness check.

Absent or sentinel values ("0", "unknown", "N/A", ...) become ``None``;
nothing is ever invented in their place.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import structlog

from suppfacts.modules.extraction.schemas import (
    AMOUNT_PATTERN,
    DAILY_VALUE_PATTERN,
    Ingredient,
    Nutrient,
    ProductExtraction,
    SupplementFacts,
)

logger = structlog.get_logger()

MAX_REFERENCES_LENGTH = 5000

AMOUNT_SENTINELS = frozenset({"0", "unknown", "N/A", "n/a", "-"})
DAILY_VALUE_SENTINELS = AMOUNT_SENTINELS | {"*", "†"}

DIETARY_ATTRIBUTE_NAMES: dict[str, str] = {
    "vegan": "Vegan",
    "vegetarian": "Vegetarian",
    "gluten-free": "Gluten-Free",
    "gluten free": "Gluten-Free",
    "dairy-free": "Dairy-Free",
    "dairy free": "Dairy-Free",
    "non-gmo": "Non-GMO",
    "non gmo": "Non-GMO",
    "organic": "Organic",
    "kosher": "Kosher",
    "halal": "Halal",
    "sugar-free": "Sugar-Free",
    "sugar free": "Sugar-Free",
    "soy-free": "Soy-Free",
    "soy free": "Soy-Free",
}

_ORGANIC_WORD = re.compile(r"\b(organic|bio)\b", re.IGNORECASE)
_ORGANIC_PREFIX = re.compile(r"^\s*(organic|bio)\s+", re.IGNORECASE)
_NUMBER_THEN_LETTER = re.compile(r"(\d)([a-zA-Z])")


# ---------------------------------------------------------------------------
# Field-level helpers
# ---------------------------------------------------------------------------


def collapse_whitespace(text: str | None) -> str | None:
    if not text:
        return None
    collapsed = " ".join(text.split())
    return collapsed or None


def bound_references(references: str | None) -> str | None:
    text = collapse_whitespace(references)
    if text and len(text) > MAX_REFERENCES_LENGTH:
        logger.warning(
            "References field truncated",
            original_length=len(text),
            max_length=MAX_REFERENCES_LENGTH,
        )
        text = text[: MAX_REFERENCES_LENGTH - 3] + "..."
    return text


def with_terminal_punctuation(text: str | None, default: str) -> str:
    normalized = collapse_whitespace(text) or default
    if normalized[-1] not in ".!?":
        normalized += "."
    return normalized


def normalize_amount(amount: str | None) -> str | None:
    """``"100mg"`` -> ``"100 mg"``; sentinels -> ``None``."""
    normalized = collapse_whitespace(amount)
    if normalized is None or normalized in AMOUNT_SENTINELS:
        return None
    return _NUMBER_THEN_LETTER.sub(r"\1 \2", normalized)


def valid_amount(amount: str | None) -> str | None:
    """Normalized amount, or ``None`` when it still lacks number and unit."""
    normalized = normalize_amount(amount)
    if normalized is not None and not AMOUNT_PATTERN.match(normalized):
        return None
    return normalized


def normalize_daily_value(percent: str | None) -> str | None:
    """``"100%"`` -> ``"100"``; sentinels and non-numeric text -> ``None``."""
    normalized = collapse_whitespace(percent)
    if normalized is None:
        return None
    cleaned = normalized.replace("%", "").strip()
    if cleaned in DAILY_VALUE_SENTINELS or not DAILY_VALUE_PATTERN.match(cleaned):
        return None
    return cleaned


def parse_organic_flag(name: str) -> tuple[str, bool]:
    is_organic = bool(_ORGANIC_WORD.search(name))
    clean = collapse_whitespace(_ORGANIC_PREFIX.sub("", name)) or name
    return clean, is_organic


def normalize_dietary_attributes(attributes: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for attr in attributes:
        key = attr.strip()
        if key:
            seen.setdefault(DIETARY_ATTRIBUTE_NAMES.get(key.lower(), key), None)
    return list(seen)


# ---------------------------------------------------------------------------
# Record-level normalization
# ---------------------------------------------------------------------------


def _normalize_nutrients(nutrients: list[Nutrient]) -> list[Nutrient]:
    return [
        Nutrient(
            name=collapse_whitespace(n.name) or "Unknown",
            amount=normalize_amount(n.amount),
            daily_value_percent_adult=normalize_daily_value(
                n.daily_value_percent_adult or n.daily_value_percent
            ),
            daily_value_percent_children=normalize_daily_value(n.daily_value_percent_children),
            position=index,
        )
        for index, n in enumerate(nutrients)
    ]


def normalize_supplement_facts(facts: SupplementFacts) -> SupplementFacts:
    return SupplementFacts(
        servings=collapse_whitespace(facts.servings) or "Not specified",
        servings_per_container=collapse_whitespace(facts.servings_per_container) or "Not specified",
        calories=collapse_whitespace(facts.calories),
        protein=collapse_whitespace(facts.protein),
        nutrients=_normalize_nutrients(facts.nutrients),
    )


def _strict_copy(data: ProductExtraction) -> ProductExtraction:
    """Trim only; keep the source wording."""
    facts = data.supplement_facts
    return ProductExtraction(
        product_name=data.product_name.strip() or data.product_name,
        product_slogan=(data.product_slogan or "").strip() or None,
        product_description=data.product_description.strip() or data.product_description,
        subbrand=(data.subbrand or "").strip() or None,
        supplement_facts=(
            facts.model_copy(
                update={
                    "servings": facts.servings.strip() or facts.servings,
                    "servings_per_container": facts.servings_per_container.strip() or facts.servings_per_container,
                    "nutrients": [
                        n.model_copy(update={"position": i}) for i, n in enumerate(facts.nutrients)
                    ],
                }
            )
            if facts
            else None
        ),
        ingredients=[Ingredient(name=i.name.strip() or i.name, is_organic=i.is_organic) for i in data.ingredients],
        directions=data.directions.strip() or data.directions,
        caution=(data.caution or "").strip() or None,
        dietary_attributes=list(data.dietary_attributes),
        references=bound_references(data.references),
    )


def normalize_extraction(data: ProductExtraction, *, strict: bool = False) -> ProductExtraction:
    """Return a normalized copy of ``data``.

    Nutrients keep their source order and get an explicit ``position``.
    Nutrients without a usable amount are kept with ``amount=None``.
    """
    if strict:
        return _strict_copy(data)

    ingredients = []
    for ingredient in data.ingredients:
        name, organic = parse_organic_flag(ingredient.name)
        ingredients.append(Ingredient(name=name, is_organic=ingredient.is_organic or organic))

    return ProductExtraction(
        product_name=collapse_whitespace(data.product_name) or "Unknown Product",
        product_slogan=collapse_whitespace(data.product_slogan),
        product_description=with_terminal_punctuation(data.product_description, "No description available"),
        subbrand=collapse_whitespace(data.subbrand),
        supplement_facts=normalize_supplement_facts(data.supplement_facts) if data.supplement_facts else None,
        ingredients=ingredients,
        directions=with_terminal_punctuation(data.directions, "No directions provided"),
        caution=collapse_whitespace(data.caution),
        dietary_attributes=normalize_dietary_attributes(data.dietary_attributes),
        references=bound_references(data.references),
    )


# ---------------------------------------------------------------------------
# Completeness
# ---------------------------------------------------------------------------

REQUIRED_FIELDS = ("product_name", "product_description", "directions")
OPTIONAL_FIELDS = (
    "product_slogan",
    "subbrand",
    "caution",
    "references",
    "supplement_facts",
    "ingredients",
    "dietary_attributes",
)


@dataclass(frozen=True)
class CompletenessReport:
    is_complete: bool
    missing_fields: list[str]
    completeness_percent: int


def _present(value: object) -> bool:
    if isinstance(value, str):
        return bool(value.strip())
    return bool(value)


def check_completeness(data: ProductExtraction) -> CompletenessReport:
    missing = [name for name in REQUIRED_FIELDS if not _present(getattr(data, name))]
    optional_present = sum(1 for name in OPTIONAL_FIELDS if _present(getattr(data, name)))
    total = len(REQUIRED_FIELDS) + len(OPTIONAL_FIELDS)
    present = len(REQUIRED_FIELDS) - len(missing) + optional_present
    return CompletenessReport(
        is_complete=not missing and optional_present >= 3,
        missing_fields=missing,
        completeness_percent=int(present / total * 100 + 0.5),
    )
