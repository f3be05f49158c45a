"""Abstract base class for AI extraction providers.

Enables switching between different extraction providers (OpenAI, Ollama)
while maintaining consistent interface and type safety.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python

A provider performs exactly one model call per `extract_invoice` invocation
and reports failures as classified exceptions; retry and backoff belong to
the AI fallback extractor.
"""

import json
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any

from pydantic import BaseModel

from invoicing.extraction.parsing import parse_date, parse_number
from invoicing.extraction.schema import ExtractedLine, InvoiceHeader
from invoicing.shared.config import Settings
from invoicing.shared.errors import InvalidAIResponseError


class AIExtraction(BaseModel):
    """Structured payload returned by one successful model call.

    Attributes:
        header: Header fields read by the model
        lines: Line items in document order
        model: Identifier of the model that answered
    """

    header: InvoiceHeader
    lines: list[ExtractedLine]
    model: str


LINE_ITEM_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "description": {"type": "string"},
        "quantity": {"type": ["number", "null"]},
        "unit": {"type": ["string", "null"]},
        "unit_price": {"type": ["number", "null"]},
        "line_total": {"type": ["number", "null"]},
        "tax_rate": {"type": ["number", "null"]},
    },
    "required": ["description"],
}

INVOICE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "supplier_name": {"type": ["string", "null"]},
        "supplier_tax_id": {"type": ["string", "null"]},
        "invoice_number": {"type": ["string", "null"]},
        "invoice_date": {"type": ["string", "null"], "format": "date"},
        "total_net": {"type": ["number", "null"]},
        "total_tax": {"type": ["number", "null"]},
        "total_gross": {"type": ["number", "null"]},
        "lines": {"type": "array", "items": LINE_ITEM_SCHEMA},
    },
    "required": ["lines"],
}


def _decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        return parse_number(value)
    return Decimal(str(value))


def parse_json_payload(response_text: str) -> dict[str, Any]:
    """Extract and parse a JSON object from an LLM response.

    Handles common LLM quirks like markdown code blocks.

    Raises:
        InvalidAIResponseError: If no valid JSON object is found
    """
    block = re.search(r"```(?:json)?\s*([\s\S]*?)```", response_text)
    candidate = block.group(1) if block else response_text
    if not block:
        braces = re.search(r"\{[\s\S]*\}", response_text)
        if braces:
            candidate = braces.group(0)

    try:
        payload = json.loads(candidate.strip())
    except json.JSONDecodeError as e:
        raise InvalidAIResponseError(f"AI response is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise InvalidAIResponseError("AI response is not a JSON object")
    return payload


def payload_to_extraction(payload: dict[str, Any], model: str) -> AIExtraction:
    """Convert the model's JSON payload into typed header and lines.

    Lines without a description are skipped; line numbers are reassigned in
    document order.
    """
    raw_lines = payload.get("lines") or []
    if not isinstance(raw_lines, list):
        raise InvalidAIResponseError("AI response 'lines' is not a list")

    header = InvoiceHeader(
        supplier_name=payload.get("supplier_name") or None,
        supplier_tax_id=(str(payload["supplier_tax_id"]) if payload.get("supplier_tax_id") else None),
        invoice_number=(str(payload["invoice_number"]) if payload.get("invoice_number") else None),
        invoice_date=parse_date(payload.get("invoice_date")),
        total_net=_decimal(payload.get("total_net")),
        total_tax=_decimal(payload.get("total_tax")),
        total_gross=_decimal(payload.get("total_gross")),
    )

    lines: list[ExtractedLine] = []
    for item in raw_lines:
        if not isinstance(item, dict):
            continue
        description = str(item.get("description") or "").strip()
        if not description:
            continue
        lines.append(
            ExtractedLine(
                line_number=len(lines) + 1,
                description=description,
                quantity=_decimal(item.get("quantity")),
                unit=(str(item["unit"]).upper() if item.get("unit") else None),
                unit_price=_decimal(item.get("unit_price")),
                line_total=_decimal(item.get("line_total")),
                tax_rate=_decimal(item.get("tax_rate")),
            )
        )

    return AIExtraction(header=header, lines=lines, model=model)


class ExtractionProvider(ABC):
    """Abstract base class for AI invoice extraction providers.

    Example implementations:
    - OpenAIExtractionProvider: Uses OpenAI API (cloud-based)
    - OllamaExtractionProvider: Uses a self-hosted Ollama server
    """

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    @abstractmethod
    def extract_invoice(self, ocr_text: str) -> AIExtraction:
        """Extract header and line items from OCR text with one model call.

        Args:
            ocr_text: Raw text from OCR engine

        Returns:
            AIExtraction with header, lines and model id

        Raises:
            TransientProviderError: Provider overloaded or unreachable
            RateLimitedError: Quota or rate limit hit
            ConfigurationError: Missing or rejected credentials
            InvalidAIResponseError: Response could not be parsed
        """

    @abstractmethod
    def is_available(self) -> bool:
        """Check if this provider is available/configured.

        Returns:
            True if provider can be used, False otherwise
        """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider identifier for logging/metrics (e.g., 'openai')."""

    @property
    @abstractmethod
    def model_name(self) -> str:
        """Model identifier sent to the provider."""

    def build_prompt(self, ocr_text: str) -> str:
        """Build the extraction prompt shared by all providers.

        Args:
            ocr_text: Raw OCR text

        Returns:
            Formatted prompt string
        """
        return f"""Extract the supplier invoice below into structured data.

INSTRUCTIONS:
- supplier_name / supplier_tax_id belong to the SELLER, not the customer
- supplier_tax_id is the 9-digit NIF/NIPC/VAT number without country prefix
- invoice_date as YYYY-MM-DD (source dates are usually DD/MM/YYYY)
- European decimals: "1.234,56" -> 1234.56
- total_net = total before VAT, total_tax = VAT amount, total_gross = total with VAT
- One entry in "lines" per product row, in document order
- line_total is the amount printed on the row (after any discount)
- tax_rate is the VAT percentage of the row (e.g. 23), null if not printed
- Use null for anything not clearly present; never invent rows

OCR Text:
{ocr_text}"""
