"""Invoice data models for structured extraction.

Extraction results are a tagged variant over provenance: exactly one of
TemplateResult, AIResult or ManualResult describes a successful run.
"""

from datetime import date
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field


class InvoiceHeader(BaseModel):
    """Header fields extracted from an invoice."""

    supplier_name: str | None = Field(None, description="Supplier/vendor company name")
    supplier_tax_id: str | None = Field(None, description="Supplier tax id (NIF/VAT)")
    invoice_number: str | None = Field(None, description="Unique invoice identifier")
    invoice_date: date | None = Field(None, description="Date invoice was issued")
    total_net: Decimal | None = Field(None, description="Total before tax")
    total_tax: Decimal | None = Field(None, description="Tax amount")
    total_gross: Decimal | None = Field(None, description="Total including tax")

    def merged_with(self, other: "InvoiceHeader") -> "InvoiceHeader":
        """Fill fields missing here from another header."""
        data = self.model_dump()
        for key, value in other.model_dump().items():
            if data.get(key) is None and value is not None:
                data[key] = value
        return InvoiceHeader(**data)


class ExtractedLine(BaseModel):
    """One extracted line item."""

    line_number: int = Field(..., ge=1)
    description: str
    quantity: Decimal | None = None
    unit: str | None = None
    unit_price: Decimal | None = None
    line_total: Decimal | None = None
    tax_rate: Decimal | None = None


class TemplateResult(BaseModel):
    """Lines produced deterministically by a matched template's zones."""

    method: Literal["template"] = "template"
    template_id: int
    match_score: float
    header: InvoiceHeader
    lines: list[ExtractedLine]
    dropped_rows: int = 0


class AIResult(BaseModel):
    """Lines produced by the AI fallback extractor.

    template_id/match_score are set when a template matched but its zones
    did not cover enough of the table.
    """

    method: Literal["ai"] = "ai"
    model: str
    attempts: int = Field(..., ge=1)
    header: InvoiceHeader
    lines: list[ExtractedLine]
    template_id: int | None = None
    match_score: float | None = None


class ManualResult(BaseModel):
    """Lines typed in by a reviewer."""

    method: Literal["manual"] = "manual"
    entered_by: int | None = None
    header: InvoiceHeader
    lines: list[ExtractedLine]


ExtractionOutcome = Annotated[
    TemplateResult | AIResult | ManualResult, Field(discriminator="method")
]
