"""Payer reference extraction.

A reference links a bank line to an invoice (``SUT001``, ``HAR234``).  It
comes from a dedicated reference column when one was detected confidently,
otherwise from the first token in the description that matches the
configured pattern family.  Tokens with an alphabetic prefix are preferred
over bare digit identifiers, which collide more often with amounts,
account numbers and dates.

Extraction is a pure function of the row's cells.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .config import ReconConfig
from .errors import ReferenceNotFoundError
from .values import is_blank

# A detected reference column below this confidence is scanned like
# description text rather than trusted verbatim.
REFERENCE_COLUMN_MIN_CONFIDENCE = 0.6

_NUMERIC_JOINERS = ".,/-:"
_PREFIXED_REF_RE = re.compile(r"^([A-Z]+)0*(\d+)$")


@dataclass(frozen=True)
class ReferenceMatch:
    position: int
    token: str

    @property
    def prefixed(self) -> bool:
        return any(ch.isalpha() for ch in self.token)


@dataclass(frozen=True)
class ReferencePatterns:
    """Compiled reference pattern family."""

    scanners: tuple[re.Pattern[str], ...]
    exact: tuple[re.Pattern[str], ...]

    @classmethod
    def compile(cls, patterns: tuple[str, ...] | list[str]) -> "ReferencePatterns":
        scanners = tuple(
            re.compile(rf"(?<![A-Za-z0-9])(?:{p})(?![A-Za-z0-9])", re.IGNORECASE)
            for p in patterns
        )
        exact = tuple(re.compile(rf"(?:{p})", re.IGNORECASE) for p in patterns)
        return cls(scanners=scanners, exact=exact)

    @classmethod
    def from_config(cls, config: ReconConfig) -> "ReferencePatterns":
        return cls.compile(config.reference_patterns)

    def full_match(self, text: str) -> bool:
        """True if the whole of *text* is a reference token."""
        text = text.strip()
        return bool(text) and any(p.fullmatch(text) for p in self.exact)

    def scan(self, text: str) -> list[ReferenceMatch]:
        """All reference-like tokens in *text*, ordered by position."""
        found: dict[tuple[int, str], ReferenceMatch] = {}
        for scanner in self.scanners:
            for m in scanner.finditer(text):
                token = m.group(0)
                if token.isdigit() and _embedded_in_number(text, m.start(), m.end()):
                    continue
                found.setdefault((m.start(), token), ReferenceMatch(m.start(), token))
        return sorted(found.values(), key=lambda r: (r.position, -len(r.token)))


def _embedded_in_number(text: str, start: int, end: int) -> bool:
    """True if digits at text[start:end] are part of an amount, date or time."""
    if start >= 2 and text[start - 1] in _NUMERIC_JOINERS and text[start - 2].isdigit():
        return True
    if end + 1 < len(text) and text[end] in _NUMERIC_JOINERS and text[end + 1].isdigit():
        return True
    return False


def normalize_reference(raw: str) -> str:
    """Trim, collapse inner whitespace and upper-case a reference."""
    return " ".join(raw.split()).upper()


def reference_variants(reference: str, digit_width: int | None = None) -> list[str]:
    """Lookup keys for *reference*, exact form first.

    With ``digit_width`` set, a prefixed reference also yields its digit part
    zero-padded to that width and with leading zeros removed
    (``HAR20`` -> ``HAR020``, ``HAR20``).
    """
    key = normalize_reference(reference)
    variants = [key]
    if digit_width is None:
        return variants
    m = _PREFIXED_REF_RE.match(key)
    if m:
        prefix, digits = m.groups()
        for candidate in (prefix + digits.zfill(digit_width), prefix + digits):
            if candidate not in variants:
                variants.append(candidate)
    return variants


def find_reference(text: str, patterns: ReferencePatterns) -> str:
    """Return the preferred reference token in *text*.

    Raises:
        ReferenceNotFoundError: if no token matches the pattern family.
    """
    matches = patterns.scan(text or "")
    if not matches:
        raise ReferenceNotFoundError(f"no reference token in {text!r}")
    for m in matches:
        if m.prefixed:
            return normalize_reference(m.token)
    return normalize_reference(matches[0].token)


def extract_reference(
    description: str,
    reference_cell: str = "",
    *,
    reference_confidence: float = 0.0,
    patterns: ReferencePatterns,
) -> str | None:
    """Extract a payer reference for one row, or None if there is none."""
    if reference_confidence >= REFERENCE_COLUMN_MIN_CONFIDENCE and not is_blank(reference_cell):
        return normalize_reference(reference_cell)
    text = " ".join(t for t in (reference_cell, description) if not is_blank(t))
    try:
        return find_reference(text, patterns)
    except ReferenceNotFoundError:
        return None
