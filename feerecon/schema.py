"""Schema detection: assign a role to every column of an unknown statement.

Each column is profiled over a sample of rows (the first ``sample_rows``)
with per-cell classifiers: parses as a date, parses as a signed decimal,
is a reference token, carries free text.  Hit rates become a content score
per candidate role.  A header keyword for a role adds a fixed bonus, so a
keyword match wins any tie with content-only inference.

Columns are then assigned greedily, highest confidence first.  A role is
taken by at most one column (several columns may be ``description``).  A
column whose best role scores below ``confidence_threshold`` is
``ignore``.

Structural rules applied on top of per-column scores:

- sparse numeric columns that are never populated together form a
  debit/credit pair (a column holding negatives is the debit side);
- a dense numeric column whose row-to-row change equals another column's
  amount is a running balance;
- a bare-digit cell that also reads as an amount counts towards
  ``reference`` only under a reference header;
- with a credit column present, a generic amount column is dropped; a
  debit column without a credit column is dropped in favour of a signed
  amount column.

A file with no confident ``date`` column, or neither an ``amount`` nor a
``credit`` column, raises :class:`~feerecon.errors.SchemaAmbiguousError`
naming the missing role(s).
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal

from .config import ReconConfig
from .errors import ConfigError, SchemaAmbiguousError
from .reference import ReferencePatterns
from .tabular import ParsedTable, TableRow
from .values import is_blank, parse_amount, parse_date

log = logging.getLogger(__name__)

DATE = "date"
DESCRIPTION = "description"
REFERENCE = "reference"
DEBIT = "debit"
CREDIT = "credit"
AMOUNT = "amount"
BALANCE = "balance"
IGNORE = "ignore"

ROLES = (DATE, DESCRIPTION, REFERENCE, DEBIT, CREDIT, AMOUNT, BALANCE)
# Tie-break order when confidence and keyword evidence are equal.
_ROLE_PRIORITY = {r: i for i, r in enumerate(
    (DATE, REFERENCE, CREDIT, DEBIT, AMOUNT, BALANCE, DESCRIPTION)
)}
_MULTI_COLUMN_ROLES = {DESCRIPTION}

HEADER_KEYWORDS: dict[str, re.Pattern[str]] = {
    DATE: re.compile(r"date|posted|\bwhen\b"),
    DESCRIPTION: re.compile(
        r"desc|narrative|details?|particulars|memo|remarks?|transaction\s*type"
    ),
    REFERENCE: re.compile(r"\bref|student|payer\s*id|account\s*n(?:o|umber)"),
    DEBIT: re.compile(r"debit|withdrawal|\bdr\b|money\s*out|paid\s*out"),
    CREDIT: re.compile(r"credit|deposit|\bcr\b|money\s*in|paid\s*in"),
    AMOUNT: re.compile(r"amount|\bvalue\b|\bsum\b|\bamt\b"),
    BALANCE: re.compile(r"balance|running"),
}

KEYWORD_BONUS = 0.35
# Share of sampled rows a column must fill to count as dense.
DENSE_FILL = 0.9
# Share of consecutive rows that must reconcile for a balance column.
BALANCE_CONTINUITY = 0.8
# Zero-padded digits are identifiers, not amounts.
_ZERO_PADDED_RE = re.compile(r"^0\d")


@dataclass(frozen=True)
class ColumnRole:
    """Role assignment for one column."""

    index: int
    name: str
    role: str
    confidence: float
    keyword: bool = False
    override: bool = False
    scores: dict[str, float] = field(default_factory=dict, compare=False, hash=False)


@dataclass(frozen=True)
class SchemaMapping:
    columns: tuple[ColumnRole, ...]

    def indices_of(self, role: str) -> list[int]:
        return [c.index for c in self.columns if c.role == role]

    def index_of(self, role: str) -> int | None:
        idx = self.indices_of(role)
        return idx[0] if idx else None

    def has(self, role: str) -> bool:
        return self.index_of(role) is not None

    def confidence_of(self, role: str) -> float:
        return max((c.confidence for c in self.columns if c.role == role), default=0.0)

    def as_dict(self) -> dict[str, list[str]]:
        """role -> column names, for display and saved mappings."""
        out: dict[str, list[str]] = {}
        for c in self.columns:
            if c.role != IGNORE:
                out.setdefault(c.role, []).append(c.name)
        return out


@dataclass
class _Profile:
    index: int
    name: str
    values: list[str]
    fill: float = 0.0
    date_rate: float = 0.0
    num_rate: float = 0.0
    neg_rate: float = 0.0
    ref_rate: float = 0.0
    money_ref_rate: float = 0.0
    text_rate: float = 0.0
    numbers: list[Decimal | None] = field(default_factory=list)

    @property
    def numeric(self) -> bool:
        return self.num_rate > 0 and self.date_rate < 0.5

    @property
    def dense(self) -> bool:
        return self.fill >= DENSE_FILL


def header_signature(header: tuple[str, ...] | list[str] | None) -> str | None:
    """Stable signature of a header row, independent of column order."""
    if not header:
        return None
    names = sorted(" ".join(h.lower().split()) for h in header if h.strip())
    return hashlib.sha1("|".join(names).encode("utf-8")).hexdigest()[:16]


def header_keywords(name: str) -> set[str]:
    """Roles whose keyword appears in a column header."""
    text = " ".join(re.sub(r"[^a-z0-9]+", " ", name.lower()).split())
    return {role for role, pattern in HEADER_KEYWORDS.items() if pattern.search(text)}


def _profile_column(
    index: int, name: str, values: list[str], patterns: ReferencePatterns, day_first: bool
) -> _Profile:
    prof = _Profile(index=index, name=name, values=values)
    filled = [v for v in values if not is_blank(v)]
    prof.numbers = [parse_amount(v) for v in values]
    if not values or not filled:
        return prof
    prof.fill = len(filled) / len(values)

    dates = nums = negs = refs = money_refs = texts = 0
    for v in filled:
        is_date = parse_date(v, day_first=day_first) is not None
        amount = parse_amount(v)
        if is_date:
            dates += 1
        if amount is not None:
            nums += 1
            if amount < 0:
                negs += 1
        if patterns.full_match(v):
            refs += 1
            if amount is not None and not _ZERO_PADDED_RE.match(v.strip()):
                money_refs += 1
        if not is_date and amount is None and any(ch.isalpha() for ch in v):
            texts += 1

    n = len(filled)
    prof.date_rate = dates / n
    prof.num_rate = nums / n
    prof.neg_rate = negs / nums if nums else 0.0
    prof.ref_rate = refs / n
    prof.money_ref_rate = money_refs / n
    prof.text_rate = texts / n
    return prof


def _content_scores(prof: _Profile, named: set[str] | None = None) -> dict[str, float]:
    """Content-only score per role; *named* holds the roles the header names."""
    named = named or set()
    numeric = prof.num_rate * (1.0 - prof.date_rate)
    # Whole-number amounts also fit bare-digit reference patterns.
    if REFERENCE in named:
        reference = prof.ref_rate
    else:
        reference = prof.ref_rate - prof.money_ref_rate
    scores = {
        DATE: prof.date_rate,
        REFERENCE: reference,
        DESCRIPTION: prof.text_rate * (1.0 - 0.5 * prof.ref_rate),
        AMOUNT: 0.0,
        BALANCE: 0.0,
        DEBIT: 0.0,
        CREDIT: 0.0,
    }
    if prof.fill == 0.0:
        return scores
    if prof.dense:
        scores[AMOUNT] = numeric
        scores[BALANCE] = numeric * 0.9
        # A named side ties the signed amount once the keyword bonus is added.
        scores[DEBIT] = numeric * (0.65 if DEBIT in named else 0.55)
        scores[CREDIT] = numeric * (0.65 if CREDIT in named else 0.55)
    else:
        mixed_signs = 0.0 < prof.neg_rate < 1.0
        scores[AMOUNT] = numeric * (1.0 if mixed_signs else 0.55)
        scores[BALANCE] = numeric * 0.5
        if prof.neg_rate > 0.5:
            scores[DEBIT] = numeric
            scores[CREDIT] = numeric * 0.5
        else:
            scores[DEBIT] = numeric * 0.9
            scores[CREDIT] = numeric * 0.95
    return scores


def _populated_together(a: _Profile, b: _Profile) -> bool:
    return any(
        not is_blank(x) and not is_blank(y) for x, y in zip(a.values, b.values)
    )


def _pair_debit_credit(profiles: list[_Profile], scores: dict[int, dict[str, float]]) -> None:
    """Orient an unlabelled, mutually exclusive pair of sparse numeric columns."""
    sparse = [
        p for p in profiles
        if p.numeric and not p.dense and p.fill > 0
        and not header_keywords(p.name) & {DEBIT, CREDIT, AMOUNT, BALANCE}
    ]
    if len(sparse) != 2 or _populated_together(*sparse):
        return
    first, second = sparse
    if first.neg_rate > 0.5 or second.neg_rate > 0.5:
        debit, credit = (first, second) if first.neg_rate >= second.neg_rate else (second, first)
    else:
        # Statements conventionally list money out before money in.
        debit, credit = first, second
    base_d = debit.num_rate
    base_c = credit.num_rate
    scores[debit.index].update({DEBIT: base_d, CREDIT: base_d * 0.5})
    scores[credit.index].update({CREDIT: base_c, DEBIT: base_c * 0.5})


def _balance_continuity(balance: _Profile, others: list[_Profile]) -> float:
    """Share of consecutive rows where the balance moves by a row amount."""
    values = balance.numbers
    best = 0.0
    for forward in (True, False):
        hits = comparable = 0
        for i in range(1, len(values)):
            prev, cur = values[i - 1], values[i]
            if prev is None or cur is None:
                continue
            row = i if forward else i - 1
            flows = {abs(o.numbers[row]) for o in others if o.numbers[row] is not None}
            if not flows:
                continue
            comparable += 1
            if abs(cur - prev) in flows:
                hits += 1
        if comparable:
            best = max(best, hits / comparable)
    return best


def _detect_balance(profiles: list[_Profile], scores: dict[int, dict[str, float]]) -> None:
    numeric = [p for p in profiles if p.numeric]
    for p in numeric:
        if not p.dense:
            continue
        others = [o for o in numeric if o.index != p.index]
        if others and _balance_continuity(p, others) >= BALANCE_CONTINUITY:
            scores[p.index][BALANCE] = max(scores[p.index][BALANCE], p.num_rate)
            scores[p.index][AMOUNT] = min(scores[p.index][AMOUNT], 0.5)


def _resolve_column(target: str | int, names: list[str]) -> int:
    if isinstance(target, int) or (isinstance(target, str) and target.strip().isdigit()):
        idx = int(target)
        if not 0 <= idx < len(names):
            raise ConfigError(f"Column index {idx} out of range (0..{len(names) - 1})")
        return idx
    wanted = " ".join(str(target).lower().split())
    for i, name in enumerate(names):
        if " ".join(name.lower().split()) == wanted:
            return i
    raise ConfigError(f"Unknown column {target!r}; columns are: {', '.join(names)}")


def _sample_rows(table: ParsedTable, sample_rows: int) -> list[TableRow]:
    header = tuple(h.lower() for h in table.header) if table.header else None
    rows = [
        r for r in table.rows
        if header is None or tuple(c.lower() for c in r.cells) != header
    ]
    return rows[:sample_rows]


def detect_schema(
    table: ParsedTable,
    config: ReconConfig | None = None,
    overrides: dict[str, str | int] | None = None,
) -> SchemaMapping:
    """Assign a role to each column of *table*.

    Args:
        table: Parsed statement.
        config: Threshold, sample size and reference patterns.
        overrides: Manual ``role -> column`` mapping (header name or 0-based
            index).  Overridden columns get confidence 1.0; remaining columns
            are still detected.

    Raises:
        SchemaAmbiguousError: if a required role cannot be assigned.
        ConfigError: if an override names an unknown role or column.
    """
    config = config or ReconConfig()
    patterns = ReferencePatterns.from_config(config)
    names = table.column_names()
    sample = _sample_rows(table, config.sample_rows)

    profiles = [
        _profile_column(i, names[i], [r.cell(i) for r in sample], patterns, config.day_first)
        for i in range(len(names))
    ]
    keywords = {p.index: header_keywords(p.name) if table.header else set() for p in profiles}
    scores = {
        p.index: _content_scores(p, keywords[p.index]) for p in profiles
    }
    _pair_debit_credit(profiles, scores)
    _detect_balance(profiles, scores)

    confidence: dict[int, dict[str, float]] = {}
    for p in profiles:
        confidence[p.index] = {
            role: round(min(1.0, s + (KEYWORD_BONUS if role in keywords[p.index] else 0.0)), 4)
            for role, s in scores[p.index].items()
        }

    assigned: dict[int, ColumnRole] = {}
    taken: set[str] = set()

    for role, target in (overrides or {}).items():
        if role not in ROLES:
            raise ConfigError(f"Unknown role {role!r}; expected one of {', '.join(ROLES)}")
        idx = _resolve_column(target, names)
        assigned[idx] = ColumnRole(
            idx, names[idx], role, 1.0, override=True, scores=confidence[idx]
        )
        taken.add(role)

    candidates = sorted(
        (
            (conf, role in keywords[idx], -_ROLE_PRIORITY[role], -idx, idx, role)
            for idx, roles in confidence.items()
            for role, conf in roles.items()
        ),
        reverse=True,
    )
    for conf, kw, _, _, idx, role in candidates:
        if conf < config.confidence_threshold:
            break
        if idx in assigned:
            continue
        if role in taken and role not in _MULTI_COLUMN_ROLES:
            continue
        assigned[idx] = ColumnRole(idx, names[idx], role, conf, keyword=kw, scores=confidence[idx])
        taken.add(role)

    roles = {c.role for c in assigned.values()}
    if AMOUNT in roles and roles & {DEBIT, CREDIT}:
        if any(c.role == AMOUNT and c.override for c in assigned.values()):
            _demote(assigned, DEBIT)
            _demote(assigned, CREDIT)
        elif CREDIT in roles:
            _demote(assigned, AMOUNT)
        else:
            _demote(assigned, DEBIT)

    columns = tuple(
        assigned.get(i) or ColumnRole(
            i, names[i], IGNORE, _best(confidence[i])[1], scores=confidence[i]
        )
        for i in range(len(names))
    )
    mapping = SchemaMapping(columns)

    missing: list[str] = []
    if not mapping.has(DATE):
        missing.append(DATE)
    if not mapping.has(AMOUNT) and not mapping.has(CREDIT):
        missing.append(AMOUNT)
    if missing:
        candidates_by_name = {c.name: _best(c.scores) for c in columns}
        log.warning(
            "Schema ambiguous: no confident column for %s", ", ".join(missing)
        )
        raise SchemaAmbiguousError(tuple(missing), candidates_by_name)
    return mapping


def _best(scores: dict[str, float]) -> tuple[str, float]:
    if not scores:
        return IGNORE, 0.0
    role = max(scores, key=lambda r: (scores[r], -_ROLE_PRIORITY[r]))
    return role, scores[role]


def _demote(assigned: dict[int, ColumnRole], role: str) -> None:
    for idx, col in list(assigned.items()):
        if col.role == role and not col.override:
            del assigned[idx]
