"""Reconciliation of extracted lines against declared totals.

The pipeline favours "extract and flag" over "refuse to extract": every
discrepancy found here is attached to a successful result as a flag for the
reviewer. Nothing is ever corrected. Only `validate_structure` can fail a
run, when the extraction is structurally unusable.
"""

import logging
import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

from pydantic import BaseModel, Field

from invoicing.extraction.schema import (
    AIResult,
    ExtractedLine,
    InvoiceHeader,
    ManualResult,
    TemplateResult,
)
from invoicing.shared.config import Settings
from invoicing.shared.errors import ValidationFailedError

logger = logging.getLogger(__name__)

# Portuguese VAT rates (percent)
STANDARD_VAT_RATES = (Decimal("0"), Decimal("6"), Decimal("13"), Decimal("23"))
VAT_RATE_TOLERANCE = Decimal("2")
MIN_DESCRIPTION_LENGTH = 3

_CENT = Decimal("0.01")
_PHONE_LIKE = re.compile(r"^\d{9,15}$")

FlagKind = Literal[
    "discount",
    "surcharge",
    "header_mismatch",
    "small_discrepancy",
    "vat_mismatch",
    "unusual_vat_rate",
    "suspicious_description",
    "partial_extraction",
]


class ReconciliationFlag(BaseModel):
    """One discrepancy surfaced to the reviewer."""

    kind: FlagKind
    severity: Literal["info", "warning"]
    message: str
    line_number: int | None = None
    expected: Decimal | None = None
    actual: Decimal | None = None
    discount_pct: Decimal | None = None


class ReconciliationReport(BaseModel):
    """All flags for one extraction plus the line sum used for the header check."""

    flags: list[ReconciliationFlag] = Field(default_factory=list)
    lines_total: Decimal = Decimal("0")
    header_net: Decimal | None = None

    @property
    def has_warnings(self) -> bool:
        return any(flag.severity == "warning" for flag in self.flags)

    def line_discounts(self) -> dict[int, Decimal]:
        """Implicit discount (negative for surcharges) per line number."""
        return {
            flag.line_number: flag.discount_pct
            for flag in self.flags
            if flag.line_number is not None and flag.discount_pct is not None
        }


def validate_structure(header: InvoiceHeader, lines: list[ExtractedLine]) -> None:
    """Reject extractions that are structurally unusable.

    Raises:
        ValidationFailedError: No usable line, or neither supplier name nor
            invoice number was found
    """
    usable = [line for line in lines if len(line.description.strip()) >= MIN_DESCRIPTION_LENGTH]
    if not usable:
        raise ValidationFailedError("no line item with a usable description")
    if not header.supplier_name and not header.invoice_number:
        raise ValidationFailedError("neither supplier name nor invoice number was found")


def _pct(value: Decimal) -> Decimal:
    return value.quantize(_CENT, rounding=ROUND_HALF_UP)


class ReconciliationEngine:
    """Cross-checks line totals, header totals and VAT."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def reconcile_outcome(self, outcome: TemplateResult | AIResult | ManualResult) -> ReconciliationReport:
        """Reconcile any extraction result, adding provenance-specific flags."""
        report = self.reconcile(outcome.header, outcome.lines)

        if isinstance(outcome, TemplateResult):
            if outcome.dropped_rows:
                report.flags.append(
                    ReconciliationFlag(
                        kind="partial_extraction",
                        severity="warning",
                        message=(
                            f"{outcome.dropped_rows} table row(s) could not be read by "
                            f"template {outcome.template_id}"
                        ),
                    )
                )
        elif isinstance(outcome, (AIResult, ManualResult)):
            pass
        else:
            raise TypeError(f"Unknown extraction result: {type(outcome).__name__}")

        return report

    def reconcile(self, header: InvoiceHeader, lines: list[ExtractedLine]) -> ReconciliationReport:
        """Check every line and the header totals.

        Args:
            header: Declared header totals
            lines: Extracted line items

        Returns:
            ReconciliationReport (flags are warnings/info, never errors)
        """
        flags: list[ReconciliationFlag] = []
        for line in lines:
            flags.extend(self._check_line(line))

        lines_total = sum((line.line_total for line in lines if line.line_total is not None), Decimal("0"))
        net = header.total_net
        if net is None and header.total_gross is not None and header.total_tax is not None:
            net = header.total_gross - header.total_tax

        if net is not None and lines:
            flags.extend(self._check_header(lines_total, net))
        flags.extend(self._check_vat(header))

        if flags:
            logger.info(f"Reconciliation raised {len(flags)} flag(s)")
        return ReconciliationReport(flags=flags, lines_total=lines_total, header_net=net)

    def _check_line(self, line: ExtractedLine) -> list[ReconciliationFlag]:
        flags: list[ReconciliationFlag] = []

        if _PHONE_LIKE.match(line.description.strip()):
            flags.append(
                ReconciliationFlag(
                    kind="suspicious_description",
                    severity="warning",
                    line_number=line.line_number,
                    message=f"Line {line.line_number}: description looks like a phone number",
                )
            )

        if line.tax_rate is not None and not any(
            abs(line.tax_rate - rate) <= VAT_RATE_TOLERANCE for rate in STANDARD_VAT_RATES
        ):
            flags.append(
                ReconciliationFlag(
                    kind="unusual_vat_rate",
                    severity="warning",
                    line_number=line.line_number,
                    actual=line.tax_rate,
                    message=f"Line {line.line_number}: unusual VAT rate {line.tax_rate}%",
                )
            )

        if line.quantity is None or line.unit_price is None or line.line_total is None:
            return flags

        expected = line.quantity * line.unit_price
        actual = line.line_total
        if expected == 0 and actual == 0:
            return flags
        if expected == 0:
            # No percentage exists off a zero base
            flags.append(
                ReconciliationFlag(
                    kind="surcharge",
                    severity="warning",
                    line_number=line.line_number,
                    expected=expected,
                    actual=actual,
                    message=(
                        f"Line {line.line_number}: {line.quantity} x {line.unit_price} = 0 "
                        f"but line total is {actual}"
                    ),
                )
            )
            return flags

        difference = actual - expected
        if actual == 0:
            deviates = abs(difference) > self.settings.line_absolute_tolerance
        else:
            deviates = abs(difference) / abs(actual) > self.settings.line_tolerance
        if not deviates:
            return flags

        discount = _pct((1 - actual / expected) * 100)
        kind: FlagKind = "discount" if actual < expected else "surcharge"
        flags.append(
            ReconciliationFlag(
                kind=kind,
                severity="info" if kind == "discount" else "warning",
                line_number=line.line_number,
                expected=_pct(expected),
                actual=actual,
                discount_pct=discount,
                message=(
                    f"Line {line.line_number}: {line.quantity} x {line.unit_price} = "
                    f"{_pct(expected)} but line total is {actual} "
                    f"({'implicit discount' if kind == 'discount' else 'surcharge'} "
                    f"of {abs(discount)}%)"
                ),
            )
        )
        return flags

    def _check_header(self, lines_total: Decimal, net: Decimal) -> list[ReconciliationFlag]:
        tolerance = max(self.settings.header_tolerance_min, abs(net) * self.settings.header_tolerance_ratio)
        difference = abs(lines_total - net)

        if difference > tolerance:
            return [
                ReconciliationFlag(
                    kind="header_mismatch",
                    severity="warning",
                    expected=net,
                    actual=lines_total,
                    message=(
                        f"Line items sum ({lines_total}) differs from the net total ({net}) "
                        f"by {difference} (tolerance {_pct(tolerance)})"
                    ),
                )
            ]
        if difference > self.settings.header_small_discrepancy:
            return [
                ReconciliationFlag(
                    kind="small_discrepancy",
                    severity="info",
                    expected=net,
                    actual=lines_total,
                    message=(
                        f"Small discrepancy in line totals: {difference} "
                        f"(within tolerance of {_pct(tolerance)})"
                    ),
                )
            ]
        return []

    def _check_vat(self, header: InvoiceHeader) -> list[ReconciliationFlag]:
        flags: list[ReconciliationFlag] = []
        net, tax, gross = header.total_net, header.total_tax, header.total_gross

        if net is not None and tax is not None and gross is not None:
            if abs(net + tax - gross) > self.settings.vat_tolerance:
                flags.append(
                    ReconciliationFlag(
                        kind="vat_mismatch",
                        severity="warning",
                        expected=gross,
                        actual=net + tax,
                        message=f"Net ({net}) + VAT ({tax}) = {net + tax} but gross total is {gross}",
                    )
                )

        if net is not None and tax is not None and net > 0 and tax > 0:
            rate = tax / net * 100
            if not any(abs(rate - standard) < VAT_RATE_TOLERANCE for standard in STANDARD_VAT_RATES):
                flags.append(
                    ReconciliationFlag(
                        kind="unusual_vat_rate",
                        severity="warning",
                        actual=_pct(rate),
                        message=f"Unusual overall VAT rate {_pct(rate)}%",
                    )
                )
        return flags
