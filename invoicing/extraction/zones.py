"""Deterministic line-item extraction from a template's zone configuration.

A zone configuration declares the table region of an invoice (start and end
marker regexes), a row pattern with one named group per field, and the zones
that say how each group is parsed and whether it is required. Rows whose
required zones fail are dropped, never filled in, and counted so the caller
can judge coverage and fall back to the AI extractor.
"""

import logging
import re
from collections import Counter
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from invoicing.extraction.parsing import parse_date, parse_number, strip_accents
from invoicing.extraction.schema import ExtractedLine, InvoiceHeader
from invoicing.matching.fingerprint import detect_table_marker

logger = logging.getLogger(__name__)

LineField = Literal["description", "quantity", "unit", "unit_price", "line_total", "tax_rate"]

NUMERIC_FIELDS = ("quantity", "unit_price", "line_total", "tax_rate")

DEFAULT_END_MARKER = (
    r"^\s*(?:SUB\s*-?\s*TOTAL|TOTAL|RESUMO|SUMMARY|BASE\s+TRIBUTAVEL|INCIDENCIA)\b"
)

_NUMBER_TOKEN = r"-?\d[\d.,]*"
_UNIT_TOKEN = r"[A-Za-z]{1,6}\.?"


class Zone(BaseModel):
    """How one row-pattern group maps to a line-item field."""

    field: LineField
    type: Literal["text", "number"] = "text"
    required: bool = False


class ZoneConfig(BaseModel):
    """Extraction recipe stored on a template.

    Attributes:
        start_marker: Regex matching the table header line (accent-insensitive)
        end_marker: Regex matching the first line after the table
        row_pattern: Regex with named groups, one per zone field
        zones: Ordered zones
        header_zones: Optional regex per header field (group 1 is the value)
    """

    start_marker: str
    end_marker: str | None = None
    row_pattern: str
    zones: list[Zone]
    header_zones: dict[str, str] = Field(default_factory=dict)


class ZoneExtraction(BaseModel):
    """Outcome of applying a zone configuration."""

    lines: list[ExtractedLine]
    header: InvoiceHeader
    candidate_rows: int = 0
    dropped_rows: int = 0

    @property
    def coverage(self) -> float:
        """Share of table rows that produced a line (0 when no table was found)."""
        if self.candidate_rows == 0:
            return 0.0
        return len(self.lines) / self.candidate_rows


def _table_rows(ocr_text: str, config: ZoneConfig) -> list[str]:
    start = re.compile(config.start_marker, re.IGNORECASE)
    end = re.compile(config.end_marker, re.IGNORECASE) if config.end_marker else None

    rows: list[str] = []
    in_table = False
    for raw in ocr_text.splitlines():
        plain = strip_accents(raw)
        if not in_table:
            if start.search(plain):
                in_table = True
            continue
        if end and end.search(plain):
            break
        if raw.strip():
            rows.append(raw.strip())
    return rows


def _parse_header(ocr_text: str, header_zones: dict[str, str]) -> InvoiceHeader:
    values: dict[str, object] = {}
    for field, pattern in header_zones.items():
        if field not in InvoiceHeader.model_fields:
            logger.warning(f"Ignoring unknown header zone '{field}'")
            continue
        match = re.search(pattern, ocr_text, re.IGNORECASE | re.MULTILINE)
        if not match:
            continue
        raw = match.group(1).strip()
        if field == "invoice_date":
            values[field] = parse_date(raw)
        elif field.startswith("total_"):
            values[field] = parse_number(raw)
        else:
            values[field] = raw
    return InvoiceHeader(**values)


class ZoneExtractor:
    """Applies a template's zones to OCR text. Never calls the AI fallback."""

    def extract(self, ocr_text: str, config: ZoneConfig) -> ZoneExtraction:
        """Extract line items from the table region.

        Args:
            ocr_text: Raw OCR text
            config: Template zone configuration

        Returns:
            ZoneExtraction with kept lines and candidate/dropped row counts
        """
        row_re = re.compile(config.row_pattern, re.IGNORECASE)
        rows = _table_rows(ocr_text, config)

        lines: list[ExtractedLine] = []
        dropped = 0
        for row in rows:
            line = self._parse_row(row, row_re, config.zones, len(lines) + 1)
            if line is None:
                dropped += 1
                continue
            lines.append(line)

        if dropped:
            logger.info(f"Zone extraction dropped {dropped} of {len(rows)} rows")

        return ZoneExtraction(
            lines=lines,
            header=_parse_header(ocr_text, config.header_zones),
            candidate_rows=len(rows),
            dropped_rows=dropped,
        )

    def _parse_row(
        self, row: str, row_re: re.Pattern[str], zones: list[Zone], line_number: int
    ) -> ExtractedLine | None:
        match = row_re.search(row)
        if not match:
            return None

        groups = match.groupdict()
        values: dict[str, object] = {}
        for zone in zones:
            raw = groups.get(zone.field)
            value: object = None
            if raw is not None and raw.strip():
                if zone.type == "number":
                    value = parse_number(raw.rstrip("%"))
                else:
                    value = raw.strip()
            if value is None and zone.required:
                return None
            values[zone.field] = value

        description = values.pop("description", None)
        if not description:
            return None
        if isinstance(values.get("unit"), str):
            values["unit"] = str(values["unit"]).upper()

        return ExtractedLine(line_number=line_number, description=str(description), **values)


def _locate(description: str, ocr_lines: list[str], start: int) -> tuple[int, int] | None:
    """Find the OCR line holding a description; return (line index, end offset)."""
    words = description.split()
    if not words:
        return None
    pattern = re.compile(r"\s+".join(re.escape(w) for w in words), re.IGNORECASE)
    for index in range(start, len(ocr_lines)):
        match = pattern.search(ocr_lines[index])
        if match:
            return index, match.end()
    return None


def _token_fields(tail: str, line: ExtractedLine) -> tuple[str, ...]:
    """Label each trailing token with the field whose approved value it equals."""
    labels: list[str] = []
    used: set[str] = set()
    for token in tail.split():
        label = "skip"
        number = parse_number(token.rstrip("%"))
        if number is not None:
            for field in NUMERIC_FIELDS:
                expected = getattr(line, field)
                if field not in used and expected is not None and Decimal(expected) == number:
                    label = field
                    break
        elif line.unit and "unit" not in used and token.rstrip(".").upper() == line.unit.upper():
            label = "unit"
        if label != "skip":
            used.add(label)
        labels.append(label)
    return tuple(labels)


def infer_zone_config(ocr_text: str, lines: list[ExtractedLine]) -> ZoneConfig | None:
    """Infer a zone configuration from an invoice with known-good lines.

    Each approved line is located in the OCR text by its description; the
    tokens that follow are mapped to quantity / unit / unit price / line total
    by value. The most common token layout becomes the row pattern.

    Args:
        ocr_text: Raw OCR text of the approved invoice
        lines: Approved line items

    Returns:
        ZoneConfig, or None if the table layout could not be recognised
    """
    ocr_lines = ocr_text.splitlines()
    located: list[int] = []
    layouts: Counter[tuple[str, ...]] = Counter()

    cursor = 0
    for line in lines:
        found = _locate(line.description, ocr_lines, cursor)
        if found is None:
            continue
        index, end = found
        located.append(index)
        layouts[_token_fields(ocr_lines[index][end:], line)] += 1
        cursor = index + 1

    if not located:
        logger.info("Zone inference failed: no approved line found in OCR text")
        return None

    layout, _ = layouts.most_common(1)[0]
    if not any(label in NUMERIC_FIELDS for label in layout):
        logger.info("Zone inference failed: no numeric columns recognised")
        return None

    first = located[0]
    start_marker = None
    for index in range(first - 1, -1, -1):
        marker = detect_table_marker(strip_accents(ocr_lines[index]).upper())
        if marker:
            start_marker = rf"\b{re.escape(marker)}\b"
            break
    if start_marker is None:
        previous = [ocr_lines[i].strip() for i in range(first) if ocr_lines[i].strip()]
        if not previous:
            logger.info("Zone inference failed: table has no header line")
            return None
        start_marker = r"^\s*" + re.escape(strip_accents(previous[-1])) + r"\s*$"

    parts = [r"^(?P<description>.+?)"]
    zones = [Zone(field="description", type="text", required=True)]
    for label in layout:
        if label == "skip":
            parts.append(r"\S+")
        elif label == "unit":
            parts.append(rf"(?P<unit>{_UNIT_TOKEN})")
            zones.append(Zone(field="unit", type="text"))
        else:
            parts.append(rf"(?P<{label}>{_NUMBER_TOKEN})%?")
            zones.append(Zone(field=label, type="number", required=label == "line_total"))  # type: ignore[arg-type]

    return ZoneConfig(
        start_marker=start_marker,
        end_marker=DEFAULT_END_MARKER,
        row_pattern=r"\s+".join(parts) + r"\s*$",
        zones=zones,
    )
