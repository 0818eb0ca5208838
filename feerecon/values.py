"""Cell-level value parsing shared by schema detection and normalization.

Money is always :class:`~decimal.Decimal`, rounded half-up to two places.
Dates are calendar dates; any time-of-day part is discarded.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

_CURRENCY_RE = re.compile(r"(?i)^(?:zar|usd|gbp|eur|r|\$|£|€)\s*")
_TRAILING_CURRENCY_RE = re.compile(r"(?i)\s*(?:zar|usd|gbp|eur)$")
_SIGN_SUFFIX_RE = re.compile(r"(?i)\s*(cr|dr)\.?$")
_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)$")

# Tried in order; day-first variants are swapped for month-first when
# ``day_first`` is False.
_DAY_FIRST_FORMATS = (
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d/%m/%y",
    "%d-%m-%y",
)
_MONTH_FIRST_FORMATS = (
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%m.%d.%Y",
    "%m/%d/%y",
    "%m-%d-%y",
)
_UNAMBIGUOUS_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%Y.%m.%d",
    "%Y%m%d",
    "%d %b %Y",
    "%d %B %Y",
    "%d-%b-%Y",
    "%d-%b-%y",
    "%d %b %y",
    "%b %d %Y",
    "%B %d %Y",
    "%b %d, %Y",
    "%B %d, %Y",
)
_TIME_SUFFIX_RE = re.compile(r"[T\s]\d{1,2}:\d{2}(?::\d{2}(?:\.\d+)?)?\s*(?:[AP]M)?(?:Z|[+-]\d{2}:?\d{2})?$", re.IGNORECASE)


def round_money(value: Decimal) -> Decimal:
    """Round half-up to cents."""
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_amount(cell: str | None) -> Decimal | None:
    """Parse a signed money cell. Returns None for blank or non-numeric text.

    Handles currency symbols, thousands separators, ``(1.00)`` and
    trailing ``-`` negatives, and ``CR``/``DR`` suffixes::

        parse_amount("R 2,850.00")  -> Decimal("2850.00")
        parse_amount("(45.10)")     -> Decimal("-45.10")
        parse_amount("120.00 DR")   -> Decimal("-120.00")
    """
    if cell is None:
        return None
    text = cell.strip()
    if not text or text in ("-", "--"):
        return None

    negative = False
    suffix = _SIGN_SUFFIX_RE.search(text)
    if suffix:
        negative = suffix.group(1).lower() == "dr"
        text = text[: suffix.start()].strip()

    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1].strip()
    if text.endswith("-") and len(text) > 1:
        negative = True
        text = text[:-1].strip()

    sign = ""
    if text[:1] in ("+", "-"):
        sign, text = text[0], text[1:].strip()
    text = _CURRENCY_RE.sub("", text)
    text = _TRAILING_CURRENCY_RE.sub("", text)
    if text[:1] in ("+", "-") and not sign:
        sign, text = text[0], text[1:]
    text = text.replace(",", "").replace(" ", "").replace("\u00a0", "")

    if not _NUMBER_RE.match(text):
        return None
    try:
        value = Decimal(sign + text)
    except InvalidOperation:
        return None
    return -abs(value) if negative else value


def _strip_time(text: str) -> str:
    return _TIME_SUFFIX_RE.sub("", text).strip()


def parse_date(cell: str | None, *, day_first: bool = True) -> date | None:
    """Parse a date cell to a calendar date, or None if it is not a date."""
    if cell is None:
        return None
    text = cell.strip()
    if not text:
        return None
    text = _strip_time(text)
    if not text or not any(ch.isdigit() for ch in text):
        return None
    ambiguous = _DAY_FIRST_FORMATS if day_first else _MONTH_FIRST_FORMATS
    fallback = _MONTH_FIRST_FORMATS if day_first else _DAY_FIRST_FORMATS
    for fmt in (*_UNAMBIGUOUS_FORMATS, *ambiguous, *fallback):
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if fmt == "%Y%m%d" and not 1900 <= parsed.year <= 2100:
            continue
        return parsed.date()
    return None


def is_blank(cell: str | None) -> bool:
    return cell is None or not cell.strip()
