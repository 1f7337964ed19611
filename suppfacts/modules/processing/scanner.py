"""Product-sheet discovery.

Layout under the products root::

    products/<Subbrand>/<0358 Yummies>/0358-PI_EN.pdf   (subbrand "Subbrand")
    products/<0358 Yummies>/0358-PI_EN.pdf              (no subbrand)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

import structlog

logger = structlog.get_logger()

PDF_GLOB = "**/*-PI_EN.pdf"
PRODUCT_CODE_PATTERN = re.compile(r"^(\d{3,6})-PI_EN\.pdf$")
_LEADING_CODE = re.compile(r"^\d{3,6}\s+")


@dataclass(frozen=True)
class ProductFile:
    item_id: str
    product_name: str
    subbrand: str | None
    pdf_path: Path
    folder_path: Path


@dataclass
class ScanResult:
    files: list[ProductFile] = field(default_factory=list)
    invalid: list[Path] = field(default_factory=list)

    @property
    def subbrands(self) -> list[str]:
        return sorted({f.subbrand for f in self.files if f.subbrand})


def extract_product_code(file_name: str) -> str | None:
    match = PRODUCT_CODE_PATTERN.match(file_name)
    return match.group(1) if match else None


def extract_product_name(folder_name: str) -> str:
    """``"0358 Yummies Strawberry"`` -> ``"Yummies Strawberry"``."""
    return _LEADING_CODE.sub("", folder_name).strip() or folder_name


def detect_subbrand(pdf_path: Path, root: Path) -> str | None:
    parts = pdf_path.relative_to(root).parts
    return parts[0] if len(parts) > 2 else None


def parse_product_file(pdf_path: Path, root: Path) -> ProductFile | None:
    code = extract_product_code(pdf_path.name)
    if code is None:
        return None
    return ProductFile(
        item_id=code,
        product_name=extract_product_name(pdf_path.parent.name),
        subbrand=detect_subbrand(pdf_path, root),
        pdf_path=pdf_path,
        folder_path=pdf_path.parent,
    )


def scan_products(root: str | Path) -> ScanResult:
    """Find every product sheet under ``root``, sorted by path."""
    root = Path(root).resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Products directory not found: {root}")

    result = ScanResult()
    for pdf_path in sorted(p for p in root.glob(PDF_GLOB) if p.is_file()):
        product = parse_product_file(pdf_path, root)
        if product is None:
            logger.warning("Skipping file with unexpected name", path=str(pdf_path))
            result.invalid.append(pdf_path)
            continue
        result.files.append(product)

    logger.info(
        "Scan complete",
        root=str(root),
        valid=len(result.files),
        invalid=len(result.invalid),
        subbrands=result.subbrands,
    )
    return result
