"""Unit tests for reconciliation flags and structural validation."""

from decimal import Decimal

import pytest

from invoicing.extraction.schema import AIResult, ExtractedLine, InvoiceHeader, TemplateResult
from invoicing.reconciliation.service import ReconciliationEngine, validate_structure
from invoicing.shared.config import Settings
from invoicing.shared.errors import ValidationFailedError

from conftest import sample_header, sample_lines


@pytest.fixture
def engine(settings: Settings) -> ReconciliationEngine:
    return ReconciliationEngine(settings)


def _line(number: int, quantity: str, price: str, total: str, **extra: object) -> ExtractedLine:
    return ExtractedLine(
        line_number=number,
        description=f"Item {number}",
        quantity=Decimal(quantity),
        unit_price=Decimal(price),
        line_total=Decimal(total),
        **extra,
    )


class TestValidateStructure:
    """Test the checks that can fail a run."""

    def test_valid(self) -> None:
        validate_structure(sample_header(), sample_lines())

    def test_no_usable_line(self) -> None:
        """Descriptions shorter than three characters do not count."""
        lines = [ExtractedLine(line_number=1, description="ab")]
        with pytest.raises(ValidationFailedError, match="usable description"):
            validate_structure(sample_header(), lines)

    def test_no_lines(self) -> None:
        with pytest.raises(ValidationFailedError):
            validate_structure(sample_header(), [])

    def test_no_supplier_and_no_number(self) -> None:
        with pytest.raises(ValidationFailedError, match="neither supplier name nor invoice number"):
            validate_structure(InvoiceHeader(), sample_lines())

    def test_invoice_number_alone_is_enough(self) -> None:
        validate_structure(InvoiceHeader(invoice_number="FT 1"), sample_lines())


class TestLineChecks:
    """Test per-line arithmetic and content checks."""

    def test_consistent_invoice_has_no_flags(self, engine: ReconciliationEngine) -> None:
        report = engine.reconcile(sample_header(), sample_lines())

        assert report.flags == []
        assert report.lines_total == Decimal("76.70")
        assert report.header_net == Decimal("76.70")

    def test_implicit_discount(self, engine: ReconciliationEngine) -> None:
        """Line total below quantity x price is an info flag with the discount."""
        report = engine.reconcile(InvoiceHeader(), [_line(1, "10", "2.00", "18.00")])

        flag = report.flags[0]
        assert flag.kind == "discount"
        assert flag.severity == "info"
        assert flag.discount_pct == Decimal("10.00")
        assert report.line_discounts() == {1: Decimal("10.00")}

    def test_surcharge(self, engine: ReconciliationEngine) -> None:
        """Line total above quantity x price is a warning with a negative discount."""
        report = engine.reconcile(InvoiceHeader(), [_line(1, "10", "2.00", "22.00")])

        flag = report.flags[0]
        assert flag.kind == "surcharge"
        assert flag.severity == "warning"
        assert flag.discount_pct == Decimal("-10.00")

    def test_zero_price_with_nonzero_total(self, engine: ReconciliationEngine) -> None:
        """A total on a zero-priced line is flagged without a percentage."""
        report = engine.reconcile(
            InvoiceHeader(supplier_name="X"), [_line(1, "2", "0", "39.20")]
        )

        assert len(report.flags) == 1
        flag = report.flags[0]
        assert flag.kind == "surcharge"
        assert flag.severity == "warning"
        assert flag.line_number == 1
        assert flag.discount_pct is None
        assert flag.actual == Decimal("39.20")
        assert report.line_discounts() == {}

    def test_zero_price_and_zero_total(self, engine: ReconciliationEngine) -> None:
        """Free items (nothing charged) raise no flag."""
        report = engine.reconcile(InvoiceHeader(), [_line(1, "2", "0", "0")])

        assert report.flags == []

    def test_rounding_within_tolerance(self, engine: ReconciliationEngine) -> None:
        """Should not flag rounding differences within 2%."""
        report = engine.reconcile(InvoiceHeader(), [_line(1, "3", "0.333", "1.00")])

        assert report.flags == []

    def test_missing_values_skip_arithmetic(self, engine: ReconciliationEngine) -> None:
        line = ExtractedLine(line_number=1, description="Service fee", line_total=Decimal("5"))

        assert engine.reconcile(InvoiceHeader(), [line]).flags == []

    def test_phone_number_description(self, engine: ReconciliationEngine) -> None:
        line = ExtractedLine(line_number=1, description="912345678")

        report = engine.reconcile(InvoiceHeader(), [line])

        assert [flag.kind for flag in report.flags] == ["suspicious_description"]

    def test_unusual_line_vat_rate(self, engine: ReconciliationEngine) -> None:
        report = engine.reconcile(
            InvoiceHeader(), [_line(1, "1", "10", "10", tax_rate=Decimal("17"))]
        )

        assert report.flags[0].kind == "unusual_vat_rate"
        assert report.flags[0].line_number == 1


class TestHeaderChecks:
    """Test header totals and VAT checks."""

    def test_header_mismatch(self, engine: ReconciliationEngine) -> None:
        """A gap larger than max(2.00, 1% of net) is a warning."""
        header = InvoiceHeader(total_net=Decimal("100.00"))
        report = engine.reconcile(header, [_line(1, "1", "90", "90")])

        assert report.flags[0].kind == "header_mismatch"
        assert report.has_warnings

    def test_small_discrepancy(self, engine: ReconciliationEngine) -> None:
        """A gap within tolerance but above 0.05 is reported as info."""
        header = InvoiceHeader(total_net=Decimal("100.00"))
        report = engine.reconcile(header, [_line(1, "1", "99", "99")])

        assert [flag.kind for flag in report.flags] == ["small_discrepancy"]
        assert not report.has_warnings

    def test_net_derived_from_gross_and_tax(self, engine: ReconciliationEngine) -> None:
        header = InvoiceHeader(total_tax=Decimal("4.60"), total_gross=Decimal("81.30"))
        report = engine.reconcile(header, sample_lines())

        assert report.header_net == Decimal("76.70")
        assert report.flags == []

    def test_vat_mismatch(self, engine: ReconciliationEngine) -> None:
        header = sample_header().model_copy(update={"total_gross": Decimal("90.00")})
        report = engine.reconcile(header, sample_lines())

        assert [flag.kind for flag in report.flags] == ["vat_mismatch"]

    def test_unusual_overall_vat_rate(self, engine: ReconciliationEngine) -> None:
        header = InvoiceHeader(
            total_net=Decimal("100"), total_tax=Decimal("10"), total_gross=Decimal("110")
        )
        report = engine.reconcile(header, [_line(1, "1", "100", "100")])

        assert [flag.kind for flag in report.flags] == ["unusual_vat_rate"]


class TestReconcileOutcome:
    """Test provenance-specific flags."""

    def test_template_dropped_rows(self, engine: ReconciliationEngine) -> None:
        outcome = TemplateResult(
            template_id=4,
            match_score=91.0,
            header=sample_header(),
            lines=sample_lines(),
            dropped_rows=1,
        )

        report = engine.reconcile_outcome(outcome)

        assert [flag.kind for flag in report.flags] == ["partial_extraction"]

    def test_ai_result(self, engine: ReconciliationEngine) -> None:
        outcome = AIResult(model="m", attempts=1, header=sample_header(), lines=sample_lines())

        assert engine.reconcile_outcome(outcome).flags == []
