"""Prompt templates for the extraction modes."""

from __future__ import annotations

_JSON_RULES = """\
CRITICAL: Return ONLY the JSON object. No explanations, no preamble, no postamble.
Start your response with { and end with }.

JSON formatting rules:
- Escape special characters in strings: \\n for newlines, \\" for quotes, \\\\ for backslashes
- Never put literal newline characters inside string values
- Keep every string value under 1000 characters; truncate long citation lists with "..."
- Never leave a string unterminated
"""

_FACTS_RULES = """\
Supplement facts rules:
- amount MUST include number and unit (e.g. "100 mg", "2.5 g", "<1 mg"); use null if missing or marked "*", "†", "-"
- NEVER use "0" for a missing amount
- dailyValuePercentAdult / dailyValuePercentChildren: numeric only without "%" (e.g. "100"), null if missing
- If only one percentage is shown, it is the adult value
- Keep complete nutrient names including forms (e.g. "Vitamin B12 (as Methylcobalamin)")
- List nutrients in the order they appear in the table
"""

_FACTS_SHAPE = """\
  "supplementFacts": {
    "servings": "string (e.g. '2 gummy bears')",
    "servingsPerContainer": "string (e.g. '30')",
    "calories": "string or null",
    "protein": "string or null",
    "nutrients": [
      {"name": "string", "amount": "string or null", "dailyValuePercentAdult": "string or null", "dailyValuePercentChildren": "string or null"}
    ]
  }"""

FULL_EXTRACTION_SYSTEM = f"""\
You are a precise data extraction specialist. Extract product information from
the product information sheet exactly as it appears. Never infer or fabricate data.

{_JSON_RULES}
Return JSON with this structure:
{{
  "productName": "string",
  "productSlogan": "string or null",
  "productDescription": "string",
  "subbrand": "string or null",
{_FACTS_SHAPE},
  "ingredients": [{{"name": "string", "isOrganic": false}}],
  "directions": "string",
  "caution": "string or null",
  "dietaryAttributes": ["vegan", "gluten-free", "..."],
  "references": "string or null"
}}

Subbrand is a product-line name from the logo area (e.g. "Solis", "Be Sports Nutrition").
Product slogan is the marketing tagline right after the product name.

{_FACTS_RULES}"""

SUPPLEMENT_FACTS_SYSTEM = f"""\
You are verifying a supplement facts table. Extract ONLY the supplement facts
panel from the document, exactly as printed.

{_JSON_RULES}
Return JSON with this structure:
{{
{_FACTS_SHAPE}
}}

{_FACTS_RULES}"""

TEXT_STRUCTURING_SYSTEM = f"""\
You structure text sections already extracted from a product sheet.
Use only the text provided. Set fields to null or [] when the text is missing.

{_JSON_RULES}
Return JSON with this structure:
{{
  "productDescription": "string or null",
  "ingredients": [{{"name": "string", "isOrganic": false}}],
  "directions": "string or null",
  "caution": "string or null",
  "dietaryAttributes": ["string"],
  "references": "string or null"
}}
"""

METADATA_SYSTEM = f"""\
Extract the product identity from the first page of a product information sheet.

{_JSON_RULES}
Return JSON with this structure:
{{
  "productName": "string",
  "productSlogan": "string or null",
  "subbrand": "string or null"
}}
"""


def item_context(item_id: str, product_name: str | None = None, subbrand: str | None = None) -> str:
    lines = [f"Product Code: {item_id}"]
    if product_name:
        lines.append(f"Expected Product Name: {product_name}")
    if subbrand:
        lines.append(f"Subbrand: {subbrand}")
    return "\n".join(lines)


def full_extraction_user(context: str) -> str:
    return (
        "Extract all product information from this product information sheet.\n\n"
        f"{context}\n\n"
        "Return the data as JSON matching the structure in the system prompt."
    )


def supplement_facts_user(context: str) -> str:
    return f"Extract the supplement facts table from this document.\n\n{context}"


def metadata_user(context: str) -> str:
    return f"Extract the product name, slogan and subbrand.\n\n{context}"


def text_structuring_user(context: str, sections: dict) -> str:
    parts = [f"Structure these text sections.\n\n{context}\n"]
    for name, text in sections.items():
        if name == "dietary_attributes":
            text = ", ".join(text) if text else None
        parts.append(f"## {name}\n{text or '(not found)'}")
    return "\n\n".join(parts)
