"""Shape validators: cheap structural checks on a recovered JSON value.

A shape validator answers "does this plausibly look like X?" before the
value is handed to strict pydantic validation.  Each validator is declared
as data: fields that must be present with a given kind, and groups of
fields of which at least one must be present.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

Check = Callable[[Any], bool]


def _present(value: Any) -> bool:
    return value is not None


def _is_str(value: Any) -> bool:
    return isinstance(value, str)


def _is_list(value: Any) -> bool:
    return isinstance(value, list)


def _is_dict(value: Any) -> bool:
    return isinstance(value, dict)


@dataclass(frozen=True)
class ShapeValidator:
    """Declarative predicate over a decoded JSON object.

    ``required`` fields must all satisfy their check.  ``expected_any`` is a
    list of field groups; the value must satisfy at least one field check in
    every group.  ``scope`` descends into a nested object before checking
    ``expected_any``.
    """

    name: str
    required: Mapping[str, Check] = field(default_factory=dict)
    expected_any: tuple[Mapping[str, Check], ...] = ()
    scope: str | None = None

    def __call__(self, value: Any) -> bool:
        if not isinstance(value, dict):
            return False
        for key, check in self.required.items():
            if key not in value or not check(value[key]):
                return False
        target = value.get(self.scope) if self.scope else value
        if not isinstance(target, dict):
            return False
        for group in self.expected_any:
            if not any(key in target and check(target[key]) for key, check in group.items()):
                return False
        return True


FULL_EXTRACTION = ShapeValidator(
    name="full_extraction",
    expected_any=(
        {"productName": _is_str, "supplementFacts": _is_dict, "ingredients": _is_list},
    ),
)

SUPPLEMENT_FACTS = ShapeValidator(
    name="supplement_facts",
    required={"supplementFacts": _is_dict},
    expected_any=({"servings": _present, "nutrients": _is_list},),
    scope="supplementFacts",
)

TEXT_STRUCTURING = ShapeValidator(
    name="text_structuring",
    expected_any=(
        {
            "ingredients": _is_list,
            "directions": _is_str,
            "caution": _is_str,
            "dietaryAttributes": _is_list,
        },
    ),
)

METADATA_ONLY = ShapeValidator(
    name="metadata_only",
    required={"productName": _is_str},
)

ANY_OBJECT = ShapeValidator(name="any_object")
