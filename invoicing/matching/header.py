"""Supplier and header field sniffing from raw OCR text.

Runs before template matching so candidates can be filtered by supplier
tax id or name, and provides header values the zones do not cover.
"""

import re
from decimal import Decimal

from invoicing.extraction.parsing import parse_date, parse_number
from invoicing.extraction.schema import InvoiceHeader

_UPPER = "A-ZÀ-ÖØ-Ý"

TAX_ID_PATTERNS = (
    re.compile(r"\b(?:NIF|NIPC)[:.\s]*(?:PT)?\s*(\d{9})\b", re.IGNORECASE),
    re.compile(rf"\bCONTRIB[{_UPPER}a-zà-ÿ.]*[:\s]+(\d{{9}})\b", re.IGNORECASE),
    re.compile(r"\b(?:VAT|TAX)\s*(?:ID|NO|NUMBER)?[:.\s#]*(?:[A-Z]{2})?\s*(\d{9})\b", re.IGNORECASE),
    re.compile(r"\b(\d{9})\b"),
)

_SKIP_NAME_LINE = re.compile(
    r"^(FATURA|FACTURA|INVOICE|RECIBO|RECEIPT|FT|FTV|ORIGINAL|DUPLICADO)\b", re.IGNORECASE
)
_INVOICE_NUMBER = re.compile(
    r"(?:FATURA|FACTURA|INVOICE|FT[TV]?)\s*(?:N[º°O.]*|NO\.?|#)?[:\s]*((?=[A-Z/\-]*\d)[A-Z0-9][A-Z0-9/\-]{2,})",
    re.IGNORECASE,
)
_DATE = re.compile(r"\b(\d{2}[/.\-]\d{2}[/.\-]\d{4}|\d{4}-\d{2}-\d{2})\b")
_AMOUNT = r"((?:€|EUR)?\s*-?\d[\d.,]*)"
_NET = re.compile(
    rf"(?:TOTAL\s+(?:SEM\s+IVA|L[ÍI]QUIDO|NET)|SUBTOTAL|NET\s+TOTAL|BASE\s+TRIBUT[ÁA]VEL|INCID[ÊE]NCIA)[:\s]*{_AMOUNT}",
    re.IGNORECASE,
)
_TAX = re.compile(rf"(?:TOTAL\s+IVA|IVA\s+TOTAL|TAX\s+AMOUNT|TOTAL\s+VAT|VAT\s+TOTAL)[:\s]*{_AMOUNT}", re.IGNORECASE)
_GROSS = re.compile(
    rf"(?:TOTAL\s+(?:COM\s+IVA|A\s+PAGAR|DOCUMENTO|GERAL)|GRAND\s+TOTAL|TOTAL\s+DUE|AMOUNT\s+DUE)[:\s]*{_AMOUNT}",
    re.IGNORECASE,
)


def extract_tax_id(ocr_text: str) -> str | None:
    """Extract the supplier tax id (labelled first, bare 9 digits as fallback).

    Only ids whose first digit is 1-9 are accepted.
    """
    for pattern in TAX_ID_PATTERNS:
        for match in pattern.finditer(ocr_text):
            candidate = match.group(1)
            if re.fullmatch(r"[1-9]\d{8}", candidate):
                return candidate
    return None


def extract_supplier_name(ocr_text: str) -> str | None:
    """Guess the supplier name from the first meaningful header lines."""
    lines = [line.strip() for line in ocr_text.splitlines() if line.strip()]

    for line in lines[:5]:
        if len(line) < 5:
            continue
        if re.fullmatch(r"[\d\s]+", line) or _DATE.fullmatch(line):
            continue
        if _SKIP_NAME_LINE.match(line):
            continue
        if re.search(rf"[{_UPPER}]", line.upper()):
            return line
    return None


def _amount(pattern: re.Pattern[str], ocr_text: str) -> Decimal | None:
    match = pattern.search(ocr_text)
    return parse_number(match.group(1)) if match else None


def extract_header_fields(ocr_text: str) -> InvoiceHeader:
    """Sniff every header field from OCR text using common label patterns.

    Args:
        ocr_text: Raw OCR text

    Returns:
        InvoiceHeader with whatever could be found
    """
    number_match = _INVOICE_NUMBER.search(ocr_text)
    date_match = _DATE.search(ocr_text)

    return InvoiceHeader(
        supplier_name=extract_supplier_name(ocr_text),
        supplier_tax_id=extract_tax_id(ocr_text),
        invoice_number=number_match.group(1) if number_match else None,
        invoice_date=parse_date(date_match.group(1)) if date_match else None,
        total_net=_amount(_NET, ocr_text),
        total_tax=_amount(_TAX, ocr_text),
        total_gross=_amount(_GROSS, ocr_text),
    )
