"""
Entity / Filter Normalizer
==========================

Two rewrite rules and one extractor:

1. canonicalize_identifiers: table and column names in proposer output are
   mapped to their exact-case quoted form ("Experiment", "testName", ...)
   using the alias table in experiment_schema. Unknown identifiers pass
   through unchanged. String literals are masked first, so a value such
   as 'testname' is never rewritten.

2. loosen_categorical_filters: exact-equality filters on free-text
   categorical columns (vertical, geo, tradingHub) become case-insensitive
   wildcard matches. Stored spellings vary ("Solar" / "Solar Panels"), and
   an exact match silently returns zero rows.

       "vertical" = 'solar_panels'      ->  "vertical" ILIKE '%solar panels%'
       LOWER(geo) = 'uk'                ->  "geo" ILIKE '%uk%'
       "geo" IN ('UK', 'DK')            ->  ("geo" ILIKE '%UK%' OR "geo" ILIKE '%DK%')

3. extract_filter_directives: vertical / geo / outcome / time-window hints
   read from the question text, consumed by the pattern aggregator.

All three are pure and total.
"""

import math
import re
import logging
from dataclasses import dataclass
from typing import List, Optional

from experiment_schema import (
    COLUMN_ALIASES,
    KNOWN_GEOS,
    KNOWN_VERTICALS,
    LOOSE_MATCH_COLUMNS,
    QUOTED_TABLE,
    TABLE_ALIASES,
)
from sql_text import escape_literal, mask_literals, unmask_literals

logger = logging.getLogger(__name__)


# =============================================================================
# IDENTIFIER CANONICALIZATION
# =============================================================================

_TABLE_REF_RE = re.compile(
    r"\b(FROM|JOIN)(\s+)(?:(\w+)\.)?(" + "|".join(TABLE_ALIASES) + r")\b(?!\")",
    re.IGNORECASE,
)

# Longest aliases first so a shorter alias never wins inside a longer one.
_COLUMN_ALIAS_RE = re.compile(
    r"(?<![\"\w])("
    + "|".join(sorted(COLUMN_ALIASES, key=len, reverse=True))
    + r")(?![\"\w])",
    re.IGNORECASE,
)

_QUOTED_UUID_RE = re.compile(r'"uuid"', re.IGNORECASE)


def canonicalize_identifiers(sql: str) -> str:
    """Map table/column aliases to canonical quoted identifiers."""
    if not sql:
        return sql

    masked, literals = mask_literals(sql)

    def _table(m: re.Match) -> str:
        schema = f"{m.group(3)}." if m.group(3) else ""
        return f"{m.group(1)}{m.group(2)}{schema}{QUOTED_TABLE}"

    masked = _TABLE_REF_RE.sub(_table, masked)
    masked = _COLUMN_ALIAS_RE.sub(lambda m: COLUMN_ALIASES[m.group(1).lower()], masked)
    masked = _QUOTED_UUID_RE.sub('"id"', masked)

    return unmask_literals(masked, literals)


# =============================================================================
# LOOSE-MATCH FILTER REWRITE
# =============================================================================

_LOOSE_COLUMNS = "|".join(LOOSE_MATCH_COLUMNS)

# Optional qualifier, optionally quoted column name.
_COLUMN = r"(?P<qual>(?:\"\w+\"|\w+)\.)?\"?(?P<col>" + _LOOSE_COLUMNS + r")\"?(?![\w\"])"
_PLACEHOLDER = r"__STRL(?P<lit>\d{4})__"

_CASE_FN_EQ_RE = re.compile(
    r"\b(?:LOWER|UPPER)\s*\(\s*" + _COLUMN + r"\s*\)\s*=\s*"
    r"(?:(?:LOWER|UPPER)\s*\(\s*" + _PLACEHOLDER + r"\s*\)|" + _PLACEHOLDER.replace("lit", "lit2") + r")",
    re.IGNORECASE,
)

_EQ_RE = re.compile(
    r"(?<![\w.\"])" + _COLUMN + r"\s*=\s*" + _PLACEHOLDER,
    re.IGNORECASE,
)

_IN_RE = re.compile(
    r"(?<![\w.\"])" + _COLUMN
    + r"\s+IN\s*\(\s*(?P<items>__STRL\d{4}__(?:\s*,\s*__STRL\d{4}__)*)\s*\)",
    re.IGNORECASE,
)

_ITEM_RE = re.compile(r"__STRL(\d{4})__")


def _canonical_column(name: str) -> str:
    for column in LOOSE_MATCH_COLUMNS:
        if column.lower() == name.lower():
            return column
    return name


def _literal_value(literal: str) -> str:
    """Unquote a masked literal and normalize it for a wildcard match."""
    value = literal[1:-1].replace("''", "'")
    value = value.replace("_", " ").strip().strip("%").strip()
    return value


def _ilike(qualifier: Optional[str], column: str, literal: str) -> str:
    ref = f'{qualifier or ""}"{_canonical_column(column)}"'
    value = _literal_value(literal)
    pattern = f"%{escape_literal(value)}%" if value else ""
    return f"{ref} ILIKE '{pattern}'"


def loosen_categorical_filters(sql: str) -> str:
    """Rewrite exact-equality filters on loose-match columns into ILIKE."""
    if not sql:
        return sql

    masked, literals = mask_literals(sql)

    def _lit(idx: Optional[str]) -> str:
        return literals[int(idx)] if idx is not None and int(idx) < len(literals) else "''"

    def _case_fn(m: re.Match) -> str:
        idx = m.group("lit") if m.group("lit") is not None else m.group("lit2")
        return _ilike(m.group("qual"), m.group("col"), _lit(idx))

    def _eq(m: re.Match) -> str:
        return _ilike(m.group("qual"), m.group("col"), _lit(m.group("lit")))

    def _in(m: re.Match) -> str:
        parts = [
            _ilike(m.group("qual"), m.group("col"), _lit(idx))
            for idx in _ITEM_RE.findall(m.group("items"))
        ]
        if len(parts) == 1:
            return parts[0]
        return "(" + " OR ".join(parts) + ")"

    rewritten = _CASE_FN_EQ_RE.sub(_case_fn, masked)
    rewritten = _IN_RE.sub(_in, rewritten)
    rewritten = _EQ_RE.sub(_eq, rewritten)

    # Rewritten fragments carry their own literal text; only the remaining
    # placeholders refer back to the original literals.
    result = unmask_literals(rewritten, literals)
    if result != sql:
        logger.info("[SANITIZER] Loosened exact categorical filter(s) to ILIKE")
    return result


# =============================================================================
# FILTER DIRECTIVES
# =============================================================================

@dataclass(frozen=True)
class FilterDirectives:
    """
    Filters read from the question text.

    Attributes:
        vertical: Vertical wildcard value (e.g. "Solar")
        geo: Geography code (e.g. "UK")
        only_failed: Restrict to experiments without a winner
        only_winners: Restrict to experiments with a winner
        months_back: Explicit time window in months, if the question names one
    """
    vertical: Optional[str] = None
    geo: Optional[str] = None
    only_failed: bool = False
    only_winners: bool = False
    months_back: Optional[int] = None


_VERTICAL_PATTERNS = [
    (re.compile(rf"\b{re.escape(word)}", re.IGNORECASE), value)
    for word, value in KNOWN_VERTICALS.items()
]
# Geo codes are matched case-sensitively so "us" and "de" in prose don't count.
_GEO_PATTERNS = [(re.compile(rf"\b{code}\b"), code) for code in KNOWN_GEOS]

_FAILED_RE = re.compile(r"\b(fail(?:ed|ing|s|ure|ures)?|flat|didn'?t work|losers?)\b", re.IGNORECASE)
_WINNER_RE = re.compile(r"\b(winners?|winning|won|worked|wins?)\b", re.IGNORECASE)
_WINDOW_RE = re.compile(
    r"\b(?:last|past|previous)\s+(\d+)\s+(day|week|month|year)s?\b",
    re.IGNORECASE,
)

_MONTHS_PER_UNIT = {"day": 1 / 30, "week": 7 / 30, "month": 1, "year": 12}


def _window_months(question: str) -> Optional[int]:
    match = _WINDOW_RE.search(question)
    if not match:
        return None
    amount = int(match.group(1))
    months = amount * _MONTHS_PER_UNIT[match.group(2).lower()]
    return max(1, math.ceil(months))


def extract_filter_directives(question: str) -> FilterDirectives:
    """Read vertical / geo / outcome / time-window hints from a question."""
    if not question:
        return FilterDirectives()

    vertical = next((value for p, value in _VERTICAL_PATTERNS if p.search(question)), None)
    geo = next((code for p, code in _GEO_PATTERNS if p.search(question)), None)

    only_failed = bool(_FAILED_RE.search(question))
    only_winners = bool(_WINNER_RE.search(question))
    if only_failed and only_winners:
        # Contradictory outcome hints; compare both rather than guess.
        only_failed = only_winners = False

    return FilterDirectives(
        vertical=vertical,
        geo=geo,
        only_failed=only_failed,
        only_winners=only_winners,
        months_back=_window_months(question),
    )


def describe_directives(directives: FilterDirectives) -> List[str]:
    """Human-readable list of the active directives, for logs and notes."""
    parts = []
    if directives.vertical:
        parts.append(f"vertical~{directives.vertical}")
    if directives.geo:
        parts.append(f"geo~{directives.geo}")
    if directives.only_failed:
        parts.append("failed only")
    if directives.only_winners:
        parts.append("winners only")
    if directives.months_back:
        parts.append(f"last {directives.months_back} months")
    return parts
