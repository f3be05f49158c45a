"""Unit tests for layout fingerprints and similarity scoring."""

from invoicing.extraction.schema import InvoiceHeader
from invoicing.matching.fingerprint import (
    LayoutFingerprint,
    compute_fingerprint,
    detect_column_order,
    detect_date_format,
    detect_tax_id_position,
    similarity,
)

from conftest import SAMPLE_OCR, SECOND_OCR, UNKNOWN_SUPPLIER_OCR, sample_header


class TestComputeFingerprint:
    """Test fingerprint construction from a known-good invoice."""

    def test_keywords_and_structure(self) -> None:
        """Should capture supplier keywords, table marker and column order."""
        fingerprint = compute_fingerprint(SAMPLE_OCR, sample_header())

        assert "MOAGEM CENTRAL LDA" in fingerprint.required_keywords
        assert "501234567" in fingerprint.required_keywords
        assert "FATURA FT" in fingerprint.optional_keywords
        assert "PORTO" in fingerprint.optional_keywords
        assert fingerprint.table_marker == "DESCRICAO"
        assert fingerprint.column_order[:5] == [
            "description",
            "quantity",
            "unit",
            "unit_price",
            "line_total",
        ]
        assert fingerprint.date_format == "DD/MM/YYYY"
        assert fingerprint.tax_id_position == "header"
        assert fingerprint.line_count == 12

    def test_missing_keywords_are_not_required(self) -> None:
        """A supplier name absent from the text never becomes a required keyword."""
        header = InvoiceHeader(supplier_name="Another Company SA")
        fingerprint = compute_fingerprint(SAMPLE_OCR, header)

        assert "ANOTHER COMPANY SA" not in fingerprint.required_keywords

    def test_family_is_stable_across_invoices_of_one_layout(self) -> None:
        first = compute_fingerprint(SAMPLE_OCR, sample_header())
        second = compute_fingerprint(SECOND_OCR, sample_header())

        assert first.family == second.family
        assert len(first.family) == 16

    def test_family_differs_for_other_tables(self) -> None:
        first = compute_fingerprint(SAMPLE_OCR, sample_header())
        other = compute_fingerprint(UNKNOWN_SUPPLIER_OCR, InvoiceHeader())

        assert first.family != other.family


class TestSimilarity:
    """Test similarity scores on the 0-100 scale."""

    def test_own_invoice_scores_100(self) -> None:
        fingerprint = compute_fingerprint(SAMPLE_OCR, sample_header())

        score = similarity(SAMPLE_OCR, fingerprint)

        assert score.score == 100.0
        assert (score.keywords, score.structure, score.layout) == (40.0, 35.0, 25.0)

    def test_same_supplier_next_month(self) -> None:
        """A new invoice with the same layout clears the match threshold."""
        fingerprint = compute_fingerprint(SAMPLE_OCR, sample_header())

        assert similarity(SECOND_OCR, fingerprint).score >= 80.0

    def test_whitespace_and_case_do_not_matter(self) -> None:
        fingerprint = compute_fingerprint(SAMPLE_OCR, sample_header())
        reflowed = SAMPLE_OCR.lower().replace(" ", "  ")

        assert similarity(reflowed, fingerprint).keywords == 40.0

    def test_other_supplier_scores_low(self) -> None:
        fingerprint = compute_fingerprint(SAMPLE_OCR, sample_header())

        score = similarity(UNKNOWN_SUPPLIER_OCR, fingerprint)

        assert score.score < 80.0
        assert score.structure < 35.0

    def test_empty_fingerprint(self) -> None:
        """An empty fingerprint scores only the layout of empty text."""
        score = similarity("", LayoutFingerprint())

        assert score.keywords == 0.0
        assert score.structure == 0.0


class TestLayoutDetection:
    """Test the individual layout detectors."""

    def test_date_formats(self) -> None:
        assert detect_date_format("Data: 2024-03-15") == "YYYY-MM-DD"
        assert detect_date_format("Data: 15.03.2024") == "DD.MM.YYYY"
        assert detect_date_format("no date") is None

    def test_tax_id_position(self) -> None:
        footer = "line\n" * 20 + "NIF 501234567"
        assert detect_tax_id_position(footer) == "footer"
        assert detect_tax_id_position("no id here") is None

    def test_column_order_left_to_right(self) -> None:
        assert detect_column_order("ARTIGO PRECO QTD VALOR") == [
            "description",
            "unit_price",
            "quantity",
            "line_total",
        ]
