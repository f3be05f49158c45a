"""Parsing helpers for OCR'd numbers, dates and free text."""

import re
import unicodedata
from datetime import date
from decimal import Decimal, InvalidOperation

_CURRENCY_RE = re.compile(r"€|EUR|\$|USD|£|GBP", re.IGNORECASE)
_DATE_FORMATS = (
    (re.compile(r"^(\d{2})[/.](\d{2})[/.](\d{4})$"), "dmy"),
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), "dmy"),
    (re.compile(r"^(\d{4})[-/](\d{2})[-/](\d{2})$"), "ymd"),
)


def parse_number(value: str | None) -> Decimal | None:
    """Parse an amount as printed on an invoice.

    Accepts European (1.234,56) and English (1,234.56) grouping, currency
    symbols and stray spaces.

    Args:
        value: Raw text

    Returns:
        Decimal value or None if the text is not a number
    """
    if value is None:
        return None

    cleaned = _CURRENCY_RE.sub("", value).replace(" ", "").replace(" ", "")
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        cleaned = cleaned.replace(",", ".")

    try:
        return Decimal(cleaned)
    except InvalidOperation:
        return None


def parse_date(value: str | None) -> date | None:
    """Parse DD/MM/YYYY, DD-MM-YYYY, DD.MM.YYYY or YYYY-MM-DD."""
    if not value:
        return None

    text = value.strip()
    for pattern, order in _DATE_FORMATS:
        match = pattern.match(text)
        if not match:
            continue
        first, second, third = (int(g) for g in match.groups())
        try:
            if order == "ymd":
                return date(first, second, third)
            return date(third, second, first)
        except ValueError:
            return None
    return None


def strip_accents(text: str) -> str:
    """Remove diacritics (ç -> c, ã -> a)."""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_supplier_name(name: str) -> str:
    """Case- and diacritic-insensitive key for supplier names."""
    text = strip_accents(name).casefold()
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def collapse_whitespace(text: str) -> str:
    """Upper-case text with runs of whitespace collapsed to single spaces."""
    return re.sub(r"\s+", " ", strip_accents(text).upper()).strip()
