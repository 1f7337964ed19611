"""Document payloads: PDF bytes, page renders and text via PyMuPDF."""

from __future__ import annotations

import base64
import re
from dataclasses import dataclass, field
from pathlib import Path

import fitz  # PyMuPDF
import structlog

logger = structlog.get_logger()

RENDER_DPI = 150
LARGE_FILE_BYTES = 10 * 1024 * 1024


@dataclass
class DocumentPayload:
    """Provider input for one product sheet, loaded lazily and cached.

    Providers that accept PDFs directly use ``pdf_base64``; image-only
    providers use ``page_images``; text structuring uses ``text``.
    """

    path: Path
    _bytes: bytes | None = field(default=None, init=False, repr=False)
    _images: list[str] | None = field(default=None, init=False, repr=False)
    _text: str | None = field(default=None, init=False, repr=False)

    def read_bytes(self) -> bytes:
        if self._bytes is None:
            data = self.path.read_bytes()
            if len(data) > LARGE_FILE_BYTES:
                logger.warning("PDF is large, may exceed provider limits", path=str(self.path), bytes=len(data))
            self._bytes = data
        return self._bytes

    def _open(self) -> fitz.Document:
        try:
            doc = fitz.open(stream=self.read_bytes(), filetype="pdf")
        except (fitz.FileDataError, RuntimeError) as exc:
            raise ValueError(f"Invalid PDF {self.path.name}: {exc}") from exc
        if doc.page_count == 0:
            doc.close()
            raise ValueError(f"Invalid PDF {self.path.name}: no pages")
        return doc

    def pdf_base64(self) -> str:
        self._open().close()
        return base64.standard_b64encode(self.read_bytes()).decode("ascii")

    def page_images(self, dpi: int = RENDER_DPI) -> list[str]:
        """Base64 PNG per page (no data-URI prefix)."""
        if self._images is None:
            doc = self._open()
            try:
                self._images = [
                    base64.standard_b64encode(page.get_pixmap(dpi=dpi).tobytes("png")).decode("ascii")
                    for page in doc
                ]
            finally:
                doc.close()
            logger.debug("PDF rendered to images", path=str(self.path), pages=len(self._images))
        return self._images

    def text(self) -> str:
        if self._text is None:
            doc = self._open()
            try:
                self._text = "\n".join(page.get_text("text") or "" for page in doc)
            finally:
                doc.close()
        return self._text


# ---------------------------------------------------------------------------
# Keyword-anchored text sections (hybrid extraction input)
# ---------------------------------------------------------------------------

SECTION_MARKERS: dict[str, list[str]] = {
    "ingredients": ["INGREDIENTS:", "Ingredients:", "INGREDIENT LIST:", "Other Ingredients:"],
    "directions": ["DIRECTIONS:", "Directions:", "HOW TO USE:", "SUGGESTED USE:", "Suggested Use:"],
    "caution": ["CAUTION:", "WARNING:", "WARNINGS:", "Caution:", "Warning:", "Warnings:"],
    "supplement_facts": ["SUPPLEMENT FACTS", "NUTRITIONAL INFORMATION", "Supplement Facts", "NUTRITION FACTS"],
    "description": ["PRODUCT DESCRIPTION", "Description:", "DESCRIPTION:", "About this product", "ABOUT THIS PRODUCT"],
    "references": ["REFERENCES", "References:", "Citations:", "CITATIONS:", "*These statements", "† These statements"],
}

_TRAILER_MARKERS = [
    "MADE IN", "Made in", "DISTRIBUTED BY", "Distributed by",
    "STORE", "Store", "Questions?", "QUESTIONS?", "For more information",
]

_SECTION_ENDS: dict[str, list[str]] = {
    "ingredients": SECTION_MARKERS["directions"] + SECTION_MARKERS["caution"]
    + SECTION_MARKERS["supplement_facts"] + _TRAILER_MARKERS,
    "directions": SECTION_MARKERS["ingredients"] + SECTION_MARKERS["caution"] + _TRAILER_MARKERS,
    "caution": SECTION_MARKERS["directions"] + SECTION_MARKERS["ingredients"]
    + _TRAILER_MARKERS + ["KEEP OUT OF REACH", "Keep out of reach"],
    "description": SECTION_MARKERS["supplement_facts"] + SECTION_MARKERS["ingredients"]
    + SECTION_MARKERS["directions"] + SECTION_MARKERS["caution"] + ["BENEFITS", "Benefits:"],
    "references": ["MADE IN", "Made in", "DISTRIBUTED BY", "Distributed by", "©", "Copyright"],
}

DIETARY_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\bvegan\b", re.I), "vegan"),
    (re.compile(r"\bvegetarian\b", re.I), "vegetarian"),
    (re.compile(r"\bgluten[- ]?free\b", re.I), "gluten-free"),
    (re.compile(r"\bdairy[- ]?free\b", re.I), "dairy-free"),
    (re.compile(r"\bnon[- ]?gmo\b", re.I), "non-GMO"),
    (re.compile(r"\bkosher\b", re.I), "kosher"),
    (re.compile(r"\bhalal\b", re.I), "halal"),
    (re.compile(r"\bsoy[- ]?free\b", re.I), "soy-free"),
    (re.compile(r"\bsugar[- ]?free\b", re.I), "sugar-free"),
    (re.compile(r"\borganic\b", re.I), "organic"),
]


def extract_section(text: str, start_keywords: list[str], end_keywords: list[str]) -> str | None:
    """Text after the first start keyword up to the nearest end keyword."""
    start = -1
    for keyword in start_keywords:
        pos = text.find(keyword)
        if pos != -1:
            start = pos + len(keyword)
            break
    if start == -1:
        return None

    end = len(text)
    for keyword in end_keywords:
        pos = text.find(keyword, start)
        if pos != -1 and pos < end:
            end = pos
    section = text[start:end].strip()
    return section or None


def extract_text_sections(text: str) -> dict[str, str | list[str] | None]:
    """Slice the known product-sheet sections out of raw page text."""
    sections: dict[str, str | list[str] | None] = {
        name: extract_section(text, SECTION_MARKERS[name], ends) for name, ends in _SECTION_ENDS.items()
    }
    references = sections["references"]
    if isinstance(references, str):
        sections["references"] = references[:1000] if len(references) > 10 else None
    sections["dietary_attributes"] = [name for pattern, name in DIETARY_PATTERNS if pattern.search(text)]
    return sections
