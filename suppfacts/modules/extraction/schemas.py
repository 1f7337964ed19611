"""Extraction schemas: the structured product record read from a product sheet.

Field names are snake_case in Python and camelCase on the wire, matching
the JSON the vision models are prompted to return.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic.alias_generators import to_camel

# "100 mg", "2.5 g", "<1 mg", "400 mcg DFE"
AMOUNT_PATTERN = re.compile(r"^<?[\d.]+\s*[a-zA-Z]+")
# "100", "<1", "2.5" (no % sign)
DAILY_VALUE_PATTERN = re.compile(r"^<?[\d.]+$")

AMOUNT_ERROR = "Amount must include number and unit (e.g., '100 mg', '<1 g')"
DAILY_VALUE_ERROR = "Daily value must be numeric without '%' (e.g., '100', '<1')"


class _WireModel(BaseModel):
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "coerce_numbers_to_str": True,
    }


# ---------------------------------------------------------------------------
# Supplement facts
# ---------------------------------------------------------------------------


class Nutrient(_WireModel):
    """One row of the supplement facts table."""

    name: str = Field(..., min_length=1, description="Full name incl. form, e.g. 'Vitamin B12 (as Methylcobalamin)'")
    amount: str | None = Field(None, description="Number and unit, e.g. '100 mg'; null when not stated")
    daily_value_percent_adult: str | None = None
    daily_value_percent_children: str | None = None
    daily_value_percent: str | None = Field(None, description="Legacy single percentage")
    position: int | None = Field(None, description="0-based row index in the source table")

    @field_validator("amount")
    @classmethod
    def _amount_has_unit(cls, value: str | None) -> str | None:
        if value is not None and not AMOUNT_PATTERN.match(value.strip()):
            raise ValueError(AMOUNT_ERROR)
        return value

    @field_validator("daily_value_percent_adult", "daily_value_percent_children", "daily_value_percent")
    @classmethod
    def _daily_value_numeric(cls, value: str | None) -> str | None:
        if value is not None and not DAILY_VALUE_PATTERN.match(value.strip()):
            raise ValueError(DAILY_VALUE_ERROR)
        return value


class SupplementFacts(_WireModel):
    servings: str = Field(..., min_length=1, description="Serving size, e.g. '2 gummy bears'")
    servings_per_container: str = Field(..., min_length=1)
    calories: str | None = None
    protein: str | None = None
    nutrients: list[Nutrient] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Product record
# ---------------------------------------------------------------------------


class Ingredient(_WireModel):
    name: str = Field(..., min_length=1)
    is_organic: bool = False


class ProductExtraction(_WireModel):
    """Complete structured record for one product sheet."""

    product_name: str = Field(..., min_length=1)
    product_slogan: str | None = None
    product_description: str = Field(..., min_length=1)
    subbrand: str | None = None
    supplement_facts: SupplementFacts | None = None
    ingredients: list[Ingredient] = Field(default_factory=list)
    directions: str = Field(..., min_length=1)
    caution: str | None = None
    dietary_attributes: list[str] = Field(default_factory=list)
    references: str | None = None

    def to_wire(self) -> dict:
        """camelCase dict, the same shape the models return."""
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Validation warnings
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class ValidationWarning:
    field_path: str
    message: str
    severity: Severity
