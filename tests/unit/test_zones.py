"""Unit tests for zone-based extraction and zone inference."""

from decimal import Decimal

import pytest

from invoicing.extraction.schema import ExtractedLine
from invoicing.extraction.zones import ZoneConfig, ZoneExtractor, infer_zone_config

from conftest import SAMPLE_OCR, SECOND_OCR, UNKNOWN_SUPPLIER_OCR, sample_lines


@pytest.fixture
def config() -> ZoneConfig:
    inferred = infer_zone_config(SAMPLE_OCR, sample_lines())
    assert inferred is not None
    return inferred


class TestInferZoneConfig:
    """Test learning a zone configuration from approved lines."""

    def test_infers_layout_from_values(self, config: ZoneConfig) -> None:
        """Tokens after the description are labelled by matching approved values."""
        assert config.start_marker == r"\bDESCRICAO\b"
        assert [zone.field for zone in config.zones] == [
            "description",
            "quantity",
            "unit",
            "unit_price",
            "line_total",
        ]
        required = {zone.field for zone in config.zones if zone.required}
        assert required == {"description", "line_total"}

    def test_table_without_unit_column(self) -> None:
        lines = [
            ExtractedLine(
                line_number=1,
                description="Pao de Forma",
                quantity=Decimal("12"),
                unit_price=Decimal("1.10"),
                line_total=Decimal("13.20"),
            )
        ]

        inferred = infer_zone_config(UNKNOWN_SUPPLIER_OCR, lines)

        assert inferred is not None
        assert [zone.field for zone in inferred.zones] == [
            "description",
            "quantity",
            "unit_price",
            "line_total",
        ]

    def test_lines_not_in_text(self) -> None:
        """Should give up when no approved line can be located."""
        lines = [ExtractedLine(line_number=1, description="Olive Oil 3L", line_total=Decimal("9"))]

        assert infer_zone_config(SAMPLE_OCR, lines) is None

    def test_no_numeric_columns(self) -> None:
        text = "DESCRICAO\nFlour 25kg premium\nTOTAL: 1,00"
        lines = [ExtractedLine(line_number=1, description="Flour 25kg", line_total=Decimal("39.20"))]

        assert infer_zone_config(text, lines) is None


class TestZoneExtractor:
    """Test deterministic extraction with a zone configuration."""

    def test_round_trip_on_source_invoice(self, config: ZoneConfig) -> None:
        """Zones learned from an invoice reproduce its lines."""
        extraction = ZoneExtractor().extract(SAMPLE_OCR, config)

        assert extraction.coverage == 1.0
        assert [line.description for line in extraction.lines] == [
            line.description for line in sample_lines()
        ]
        assert extraction.lines[1].unit == "KG"
        assert extraction.lines[1].line_total == Decimal("12.00")

    def test_new_invoice_same_layout(self, config: ZoneConfig) -> None:
        extraction = ZoneExtractor().extract(SECOND_OCR, config)

        assert extraction.candidate_rows == 3
        assert extraction.dropped_rows == 0
        assert extraction.lines[0].quantity == Decimal("4")
        assert extraction.lines[0].line_total == Decimal("78.40")

    def test_unreadable_rows_are_dropped(self, config: ZoneConfig) -> None:
        """Rows missing a required zone are dropped and counted, never filled in."""
        text = SAMPLE_OCR.replace("Sugar 1kg 10 KG 1,20 12,00", "Sugar 1kg ilegivel")

        extraction = ZoneExtractor().extract(text, config)

        assert len(extraction.lines) == 2
        assert extraction.dropped_rows == 1
        assert extraction.coverage == pytest.approx(2 / 3)
        assert [line.line_number for line in extraction.lines] == [1, 2]

    def test_table_not_found(self, config: ZoneConfig) -> None:
        extraction = ZoneExtractor().extract(UNKNOWN_SUPPLIER_OCR, config)

        assert extraction.lines == []
        assert extraction.coverage == 0.0

    def test_header_zones(self, config: ZoneConfig) -> None:
        """Header zones parse dates and totals; unknown fields are ignored."""
        config = config.model_copy(
            update={
                "header_zones": {
                    "invoice_number": r"FATURA\s+FT\s+(\S+)",
                    "invoice_date": r"Data:\s*(\S+)",
                    "total_gross": r"TOTAL A PAGAR:\s*(\S+)",
                    "colour": r"(.*)",
                }
            }
        )

        header = ZoneExtractor().extract(SAMPLE_OCR, config).header

        assert header.invoice_number == "2024/123"
        assert header.invoice_date is not None and header.invoice_date.day == 15
        assert header.total_gross == Decimal("81.30")
