"""Layout fingerprints for supplier invoices.

A fingerprint is a structural signature of a known-good invoice: keywords that
identify the supplier, the table header and its column order, and a few layout
hints. Similarity against new OCR text is scored 0-100:

- keywords: 40 (required 30 + optional 10)
- structure: 35 (table marker 20 + column order 15)
- layout: 25 (date format 10, tax id position 5, line count drift 10)

All comparisons run on upper-cased, accent-stripped, whitespace-collapsed text
so spacing and OCR line breaks do not change the score.
"""

import hashlib
import re
from typing import Literal

from pydantic import BaseModel, Field

from invoicing.extraction.parsing import collapse_whitespace
from invoicing.extraction.schema import InvoiceHeader
from invoicing.matching.header import extract_tax_id

COLUMN_ALIASES: dict[str, tuple[str, ...]] = {
    "description": ("DESCRICAO", "DESIGNACAO", "ARTIGO", "PRODUTO", "DESCRIPTION", "ITEM"),
    "quantity": ("QUANTIDADE", "QTDE", "QTD", "QT", "QUANTITY", "QTY"),
    "unit": ("UNIDADE", "UND", "UN", "UOM"),
    "unit_price": ("PRECO UNIT", "P.UNITARIO", "P.UNIT", "PRECO", "UNIT PRICE", "PRICE"),
    "line_total": ("P.TOTAL", "PRECO TOTAL", "VALOR", "TOTAL", "AMOUNT"),
    "tax_rate": ("IVA", "TAXA", "VAT"),
    "reference": ("REFERENCIA", "CODIGO", "REF", "COD"),
}

TABLE_MARKERS = (
    "DESCRICAO",
    "DESIGNACAO",
    "QUANTIDADE",
    "PRECO",
    "ARTIGO",
    "PRODUTO",
    "QTD",
    "VALOR",
    "DESCRIPTION",
    "QTY",
)

_DOCUMENT_TYPES = (
    re.compile(r"FATURA\s+(?:FT|F|VD|NC)\b"),
    re.compile(r"FATURA\s+SIMPLIFICADA"),
    re.compile(r"FATURA[- ]RECIBO"),
    re.compile(r"NOTA\s+DE\s+CREDITO"),
    re.compile(r"RECIBO"),
    re.compile(r"INVOICE"),
)
_POSTAL_CITY = re.compile(r"\b\d{4}-\d{3}\s+([A-Z][A-Z ]{2,}?)(?=\s+(?:TEL|NIF|FAX|\d)|$)")
_DATE_FORMATS = (
    ("DD/MM/YYYY", re.compile(r"\b\d{2}/\d{2}/\d{4}\b")),
    ("DD-MM-YYYY", re.compile(r"\b\d{2}-\d{2}-\d{4}\b")),
    ("DD.MM.YYYY", re.compile(r"\b\d{2}\.\d{2}\.\d{4}\b")),
    ("YYYY-MM-DD", re.compile(r"\b\d{4}-\d{2}-\d{2}\b")),
)
_NINE_DIGITS = re.compile(r"(?<!\d)\d{9}(?!\d)")

# Line count drift (relative) scored in full / scored zero
LINE_DRIFT_FULL = 0.3
LINE_DRIFT_ZERO = 1.0


class LayoutFingerprint(BaseModel):
    """Structural signature of a known-good invoice layout."""

    required_keywords: list[str] = Field(default_factory=list)
    optional_keywords: list[str] = Field(default_factory=list)
    table_marker: str | None = None
    column_order: list[str] = Field(default_factory=list)
    tax_id_position: Literal["header", "footer"] | None = None
    date_format: str | None = None
    line_count: int = Field(default=0, ge=0)

    @property
    def family(self) -> str:
        """Stable key for layouts that share a table shape.

        Only one template per supplier and family is active at a time.
        """
        raw = "|".join([self.table_marker or "", ",".join(self.column_order)])
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()[:16]


class SimilarityScore(BaseModel):
    """Fingerprint similarity with its breakdown (all on the 0-100 scale)."""

    score: float = Field(..., ge=0, le=100)
    keywords: float
    structure: float
    layout: float


def _contains(text: str, token: str) -> bool:
    return _find(text, token) >= 0


def _find(text: str, token: str, start: int = 0) -> int:
    """Position of token in text as a whole word (or -1)."""
    pattern = rf"(?<![A-Z0-9]){re.escape(token)}(?![A-Z0-9])"
    match = re.compile(pattern).search(text, start)
    return match.start() if match else -1


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def _count_lines(ocr_text: str) -> int:
    return sum(1 for line in ocr_text.splitlines() if line.strip())


def detect_table_marker(normalized: str) -> str | None:
    for marker in TABLE_MARKERS:
        if _contains(normalized, marker):
            return marker
    return None


def detect_column_order(normalized: str) -> list[str]:
    """Order of the table columns found in the text, left to right."""
    detected: list[tuple[int, str]] = []
    for column, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            position = _find(normalized, alias)
            if position >= 0:
                detected.append((position, column))
                break
    return [column for _, column in sorted(detected)]


def detect_tax_id_position(ocr_text: str) -> Literal["header", "footer"] | None:
    match = _NINE_DIGITS.search(ocr_text)
    if not match:
        return None
    return "header" if match.start() < len(ocr_text) / 2 else "footer"


def detect_date_format(ocr_text: str) -> str | None:
    for name, pattern in _DATE_FORMATS:
        if pattern.search(ocr_text):
            return name
    return None


def compute_fingerprint(ocr_text: str, header: InvoiceHeader) -> LayoutFingerprint:
    """Build the fingerprint of an invoice from its OCR text and header.

    Only keywords that actually occur in the text are kept, so a fingerprint
    always scores its own invoice at (or near) 100.

    Args:
        ocr_text: Raw OCR text
        header: Header fields of the invoice (sniffed or reviewed)

    Returns:
        LayoutFingerprint for template storage
    """
    normalized = collapse_whitespace(ocr_text)
    required: list[str] = []
    optional: list[str] = []

    if header.supplier_name:
        name = collapse_whitespace(header.supplier_name)
        if _contains(normalized, name):
            required.append(name)
        parts = [part for part in re.split(r"[\s,.]+", name) if len(part) > 2]
        required.extend(part for part in parts[:3] if _contains(normalized, part))

    tax_id = header.supplier_tax_id or extract_tax_id(ocr_text)
    if tax_id and _contains(normalized, tax_id):
        required.append(tax_id)

    for pattern in _DOCUMENT_TYPES:
        match = pattern.search(normalized)
        if match:
            optional.append(match.group(0))
            break

    city = _POSTAL_CITY.search(normalized)
    if city:
        optional.append(city.group(1).strip())

    table_marker = detect_table_marker(normalized)
    column_order = detect_column_order(normalized)
    optional.extend(
        alias
        for aliases in COLUMN_ALIASES.values()
        for alias in aliases[:1]
        if _contains(normalized, alias)
    )

    return LayoutFingerprint(
        required_keywords=_dedupe(required),
        optional_keywords=_dedupe(optional),
        table_marker=table_marker,
        column_order=column_order,
        tax_id_position=detect_tax_id_position(ocr_text),
        date_format=detect_date_format(ocr_text),
        line_count=_count_lines(ocr_text),
    )


def _column_order_score(normalized: str, expected: list[str]) -> float:
    if not expected:
        return 0.0

    last = -1
    in_order = 0
    for column in expected:
        for alias in COLUMN_ALIASES.get(column, (column.upper(),)):
            position = _find(normalized, alias, last + 1)
            if position >= 0:
                in_order += 1
                last = position
                break
    return in_order / len(expected) * 15


def _line_count_score(actual: int, expected: int) -> float:
    if expected == 0:
        return 10.0 if actual == 0 else 0.0

    drift = abs(actual - expected) / expected
    if drift <= LINE_DRIFT_FULL:
        return 10.0
    if drift >= LINE_DRIFT_ZERO:
        return 0.0
    return 10.0 * (1 - (drift - LINE_DRIFT_FULL) / (LINE_DRIFT_ZERO - LINE_DRIFT_FULL))


def similarity(ocr_text: str, fingerprint: LayoutFingerprint) -> SimilarityScore:
    """Score how well OCR text matches a stored fingerprint.

    Args:
        ocr_text: Raw OCR text of the new invoice
        fingerprint: Stored template fingerprint

    Returns:
        SimilarityScore (0-100) with keyword/structure/layout breakdown
    """
    normalized = collapse_whitespace(ocr_text)

    keywords = 0.0
    if fingerprint.required_keywords:
        found = sum(1 for kw in fingerprint.required_keywords if _contains(normalized, kw))
        keywords += found / len(fingerprint.required_keywords) * 30
    if fingerprint.optional_keywords:
        found = sum(1 for kw in fingerprint.optional_keywords if _contains(normalized, kw))
        keywords += found / len(fingerprint.optional_keywords) * 10
    elif fingerprint.required_keywords:
        keywords += 10

    structure = 0.0
    if fingerprint.table_marker and _contains(normalized, fingerprint.table_marker):
        structure += 20
    structure += _column_order_score(normalized, fingerprint.column_order)

    layout = 0.0
    if detect_date_format(ocr_text) == fingerprint.date_format:
        layout += 10
    if detect_tax_id_position(ocr_text) == fingerprint.tax_id_position:
        layout += 5
    layout += _line_count_score(_count_lines(ocr_text), fingerprint.line_count)

    total = min(keywords + structure + layout, 100.0)
    return SimilarityScore(
        score=round(total, 2),
        keywords=round(keywords, 2),
        structure=round(structure, 2),
        layout=round(layout, 2),
    )
