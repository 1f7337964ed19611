"""Unit tests for document payloads and keyword-anchored text sections."""

from __future__ import annotations

import base64
from pathlib import Path

import fitz
import pytest

from suppfacts.modules.extraction.documents import DocumentPayload, extract_section, extract_text_sections

SHEET_TEXT = (
    "PRODUCT DESCRIPTION Tasty vitamin gummies for the whole family.\n"
    "Supplement Facts Serving Size 2 gummies\n"
    "INGREDIENTS: Sugar, Pectin, Citric Acid\n"
    "DIRECTIONS: Take two daily.\n"
    "CAUTION: Keep out of heat.\n"
    "MADE IN USA\n"
    "Vegan and gluten-free."
)


def test_extract_text_sections() -> None:
    sections = extract_text_sections(SHEET_TEXT)

    assert sections["description"] == "Tasty vitamin gummies for the whole family."
    assert sections["ingredients"] == "Sugar, Pectin, Citric Acid"
    assert sections["directions"] == "Take two daily."
    assert sections["caution"] == "Keep out of heat."
    assert sections["references"] is None
    assert sections["dietary_attributes"] == ["vegan", "gluten-free"]


def test_extract_section_missing_start() -> None:
    assert extract_section("nothing here", ["INGREDIENTS:"], ["DIRECTIONS:"]) is None


def _write_pdf(path: Path, text: str) -> Path:
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), text)
    path.write_bytes(doc.tobytes())
    doc.close()
    return path


def test_payload_reads_text_images_and_base64(tmp_path: Path) -> None:
    payload = DocumentPayload(_write_pdf(tmp_path / "0358-PI_EN.pdf", "DIRECTIONS: Take two daily."))

    assert "Take two daily." in payload.text()
    assert len(payload.page_images(dpi=36)) == 1
    assert base64.standard_b64decode(payload.pdf_base64()).startswith(b"%PDF")


def test_payload_rejects_invalid_pdf(tmp_path: Path) -> None:
    path = tmp_path / "0358-PI_EN.pdf"
    path.write_bytes(b"this is not a pdf")

    with pytest.raises(ValueError, match="Invalid PDF"):
        DocumentPayload(path).text()
