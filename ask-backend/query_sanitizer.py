"""
Query Sanitization Pipeline
===========================

PURPOSE:
Turns an untrusted candidate query from the proposer into a bounded,
correctly-quoted, dialect-correct query. The guard (safety_guard.py)
decides whether the result may run; this module only rewrites.

RULE TABLE (applied top to bottom, position is the ordering contract):

    strip_artifacts          code fences, language label, comments, terminators
    canonicalize_identifiers table/column aliases -> "Experiment", "testName", ...
    person_filter            launchedBy/testName filter for "by <Name>" questions
    interval_literals        interval 6 months -> interval '6 months'
    date_arithmetic          DATE_SUB(x, INTERVAL n unit) -> (x - interval 'n unit')
    numeric_round            round(x, n) -> round(CAST(x AS numeric), n)
    loose_categorical        "vertical" = 'x' -> "vertical" ILIKE '%x%'
    required_columns         pattern fallback only: add graph columns to plain selects
    cypher_functions         Cypher only: stddev -> stdev
    row_bound                clamp or append LIMIT <= row ceiling

Identifier canonicalization comes before every rule that matches on
canonical identifier text ("vertical", "Experiment", LIMIT placement).

INVARIANTS:
- every rule is a pure str -> str function
- sanitize(sanitize(q)) == sanitize(q)
- sanitize never raises; malformed input degrades and the guard rejects it
- the output always carries a top-level LIMIT <= row_ceiling
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

import sqlparse

from config import PipelineConfig
from entity_normalizer import canonicalize_identifiers, loosen_categorical_filters
from experiment_schema import QUOTED_TABLE, REQUIRED_PATTERN_COLUMNS
from person_filter import inject_person_filter
from sql_text import (
    collapse_whitespace,
    has_top_level,
    mask_literals,
    select_list_span,
    split_top_level,
    top_level_matches,
    unmask_literals,
)

logger = logging.getLogger(__name__)


class Dialect(str, Enum):
    SQL = "sql"
    CYPHER = "cypher"


@dataclass(frozen=True)
class RuleContext:
    """
    Everything a rule may consult besides the query text.

    Attributes:
        dialect: Target dialect of the candidate
        config: Pipeline thresholds (row ceiling)
        question: Original question, for the person heuristic
        pattern_fallback: Candidate stands in for a pattern answer
    """
    dialect: Dialect
    config: PipelineConfig
    question: str = ""
    pattern_fallback: bool = False


@dataclass(frozen=True)
class RewriteRule:
    name: str
    applies: Callable[[RuleContext], bool]
    transform: Callable[[str, RuleContext], str]


@dataclass
class SanitizationResult:
    """
    Result of running the rule table over one candidate.

    Attributes:
        sql: The sanitized query
        dialect: Dialect the rules were applied for
        applied_rules: Names of rules that changed the text, in order
        failed_rules: Names of rules that raised and were skipped
        raw_input: The candidate as received
    """
    sql: str
    dialect: Dialect
    applied_rules: List[str] = field(default_factory=list)
    failed_rules: List[str] = field(default_factory=list)
    raw_input: str = ""

    @property
    def changed(self) -> bool:
        return bool(self.applied_rules)


# =============================================================================
# RULE 1: ARTIFACT STRIPPING
# =============================================================================

_FENCE_OPEN_RE = re.compile(r"^\s*```[\w-]*\s*")
_FENCE_CLOSE_RE = re.compile(r"\s*```\s*$")
_LANGUAGE_LABEL_RE = re.compile(
    r"^(?:sql|cypher|postgresql|postgres)\b\s*:?\s*(?=(?:select|with|match)\b)",
    re.IGNORECASE,
)
_COMMENT_MARKER_RE = re.compile(r"--|/\*")
_TERMINATORS_RE = re.compile(r"[;\s]+$")


def strip_artifacts(sql: str, ctx: RuleContext) -> str:
    text = _FENCE_CLOSE_RE.sub("", _FENCE_OPEN_RE.sub("", sql))
    text = _LANGUAGE_LABEL_RE.sub("", text.strip())

    if ctx.dialect == Dialect.SQL:
        masked, _ = mask_literals(text)
        if _COMMENT_MARKER_RE.search(masked):
            text = sqlparse.format(text, strip_comments=True)

    text = _TERMINATORS_RE.sub("", text)
    return collapse_whitespace(text)


# =============================================================================
# RULES 3-5: DIALECT REWRITES
# =============================================================================

_UNIT = r"(day|week|month|year)(s?)"

# Bare "interval 6 months"; quoted intervals are masked away and never match.
_BARE_INTERVAL_RE = re.compile(r"\binterval\s+(\d+)\s+" + _UNIT + r"\b", re.IGNORECASE)


def interval_literals(sql: str, ctx: RuleContext) -> str:
    masked, literals = mask_literals(sql)
    masked = _BARE_INTERVAL_RE.sub(
        lambda m: f"interval '{m.group(1)} {m.group(2).lower()}{m.group(3).lower()}'",
        masked,
    )
    return unmask_literals(masked, literals)


# One level of nested parentheses, enough for NOW() / CURRENT_DATE / "col".
_ARG = r"((?:[^(),']|\([^()]*\))+?)"
_INTERVAL_ARG = r"interval\s+(?:'(\d+)\s+" + _UNIT + r"'|(\d+)\s+" + _UNIT + r")"

_DATE_FN_RE = re.compile(
    r"\b(DATE_SUB|DATE_ADD)\s*\(\s*" + _ARG + r"\s*,\s*" + _INTERVAL_ARG + r"\s*\)",
    re.IGNORECASE,
)
_CURDATE_RE = re.compile(r"\bCURDATE\s*\(\s*\)", re.IGNORECASE)


def _date_fn(m: re.Match) -> str:
    operator = "-" if m.group(1).upper() == "DATE_SUB" else "+"
    if m.group(3) is not None:
        amount, unit, plural = m.group(3), m.group(4), m.group(5)
    else:
        amount, unit, plural = m.group(6), m.group(7), m.group(8)
    return f"({m.group(2).strip()} {operator} interval '{amount} {unit.lower()}{plural.lower()}')"


def date_arithmetic(sql: str, ctx: RuleContext) -> str:
    sql = _DATE_FN_RE.sub(_date_fn, sql)
    return _CURDATE_RE.sub("CURRENT_DATE", sql)


_ROUND_RE = re.compile(r"\bround\s*\(", re.IGNORECASE)
_ALREADY_NUMERIC_RE = re.compile(
    r"^\s*CAST\s*\(.*\bAS\s+(?:numeric|decimal)\b.*\)\s*$|::\s*(?:numeric|decimal)\s*$",
    re.IGNORECASE | re.DOTALL,
)


def _matching_paren(text: str, open_pos: int) -> Optional[int]:
    depth = 0
    for i in range(open_pos, len(text)):
        if text[i] == "(":
            depth += 1
        elif text[i] == ")":
            depth -= 1
            if depth == 0:
                return i
    return None


def numeric_round(sql: str, ctx: RuleContext) -> str:
    masked, literals = mask_literals(sql)

    # Right to left so inner calls are rewritten before their enclosing call.
    for match in reversed(list(_ROUND_RE.finditer(masked))):
        open_pos = match.end() - 1
        close_pos = _matching_paren(masked, open_pos)
        if close_pos is None:
            continue
        args = split_top_level(masked[open_pos + 1:close_pos])
        if len(args) != 2 or not args[1].isdigit():
            continue
        if _ALREADY_NUMERIC_RE.search(args[0]):
            continue
        replacement = f"{masked[match.start():open_pos]}(CAST({args[0]} AS numeric), {args[1]})"
        masked = masked[:match.start()] + replacement + masked[close_pos + 1:]

    return unmask_literals(masked, literals)


# =============================================================================
# RULE 7: REQUIRED PATTERN COLUMNS
# =============================================================================

_GROUP_BY_RE = re.compile(r"\bGROUP\s+BY\b", re.IGNORECASE)
_AGGREGATE_RE = re.compile(r"\b(COUNT|SUM|AVG|MIN|MAX|STRING_AGG|ARRAY_AGG)\s*\(", re.IGNORECASE)
_DISTINCT_RE = re.compile(r"^\s*DISTINCT\b", re.IGNORECASE)
_FROM_EXPERIMENT_RE = re.compile(r"\bFROM\s+(?:\w+\.)?" + re.escape(QUOTED_TABLE), re.IGNORECASE)


def _selects_column(select_list: str, column: str) -> bool:
    """True when the column appears in the select list, quoted or bare."""
    pattern = r'(?<![\w"])"?' + re.escape(column) + r'"?(?![\w"])'
    return re.search(pattern, select_list, re.IGNORECASE) is not None


def required_columns(sql: str, ctx: RuleContext) -> str:
    if not re.match(r"^\s*SELECT\b", sql, re.IGNORECASE):
        return sql
    if has_top_level(sql, _GROUP_BY_RE) or not _FROM_EXPERIMENT_RE.search(sql):
        return sql

    span = select_list_span(sql)
    if span is None:
        return sql
    select_list = sql[span[0]:span[1]]
    items = split_top_level(select_list)
    if not items or any(item == "*" or item.endswith(".*") for item in items):
        return sql
    if _DISTINCT_RE.match(select_list) or _AGGREGATE_RE.search(select_list):
        return sql

    masked_list, _ = mask_literals(select_list)
    missing = [c for c in REQUIRED_PATTERN_COLUMNS if not _selects_column(masked_list, c)]
    if not missing:
        return sql

    additions = ", ".join(f'"{c}"' for c in missing)
    return f"{sql[:span[0]]} {select_list.strip()}, {additions} {sql[span[1]:]}"


# =============================================================================
# RULE 8: ROW BOUND
# =============================================================================

_LIMIT_RE = re.compile(r"\bLIMIT\s+(\d+|ALL)\b", re.IGNORECASE)
_FETCH_RE = re.compile(r"\bFETCH\s+(?:FIRST|NEXT)\s+(?:(\d+)\s+)?ROWS?\s+ONLY\b", re.IGNORECASE)


def row_bound(sql: str, ctx: RuleContext) -> str:
    ceiling = ctx.config.row_ceiling
    masked, literals = mask_literals(sql)

    bounds = top_level_matches(masked, _LIMIT_RE) + top_level_matches(masked, _FETCH_RE)
    if not bounds:
        return unmask_literals(f"{masked.rstrip()} LIMIT {ceiling}", literals)

    last = max(bounds, key=lambda m: m.start())
    # FETCH FIRST ROW ONLY without a count means one row
    value = last.group(1) or "1"
    if value.upper() != "ALL" and int(value) <= ceiling:
        return sql

    if last.re is _FETCH_RE:
        logger.info(f"[BOUNDING] Capped FETCH FIRST {value} -> {ceiling}")
        replacement = f"FETCH FIRST {ceiling} ROWS ONLY"
    else:
        logger.info(f"[BOUNDING] Capped LIMIT {value} -> {ceiling}")
        replacement = f"LIMIT {ceiling}"
    masked = f"{masked[:last.start()]}{replacement}{masked[last.end():]}"
    return unmask_literals(masked, literals)


# =============================================================================
# RULE TABLE
# =============================================================================

def _person_filter(sql: str, ctx: RuleContext) -> str:
    return inject_person_filter(ctx.question, sql).sql


_STDDEV_RE = re.compile(r"\bstddev\s*\(", re.IGNORECASE)


def cypher_functions(sql: str, ctx: RuleContext) -> str:
    return _STDDEV_RE.sub("stdev(", sql)


def _sql_only(ctx: RuleContext) -> bool:
    return ctx.dialect == Dialect.SQL


def _always(ctx: RuleContext) -> bool:
    return True


RULES: List[RewriteRule] = [
    RewriteRule("strip_artifacts", _always, strip_artifacts),
    RewriteRule("canonicalize_identifiers", _sql_only, lambda s, c: canonicalize_identifiers(s)),
    RewriteRule("person_filter", lambda c: _sql_only(c) and bool(c.question), _person_filter),
    RewriteRule("interval_literals", _sql_only, interval_literals),
    RewriteRule("date_arithmetic", _sql_only, date_arithmetic),
    RewriteRule("numeric_round", _sql_only, numeric_round),
    RewriteRule("loose_categorical", _sql_only, lambda s, c: loosen_categorical_filters(s)),
    RewriteRule("required_columns", lambda c: _sql_only(c) and c.pattern_fallback, required_columns),
    RewriteRule("cypher_functions", lambda c: c.dialect == Dialect.CYPHER, cypher_functions),
    RewriteRule("row_bound", _always, row_bound),
]


class QuerySanitizer:
    """Runs the rule table over candidate queries."""

    def __init__(self, config: Optional[PipelineConfig] = None, rules: Optional[List[RewriteRule]] = None):
        self.config = config or PipelineConfig()
        self.rules = rules if rules is not None else RULES

    def sanitize(
        self,
        candidate: str,
        dialect: Dialect = Dialect.SQL,
        question: str = "",
        pattern_fallback: bool = False,
    ) -> SanitizationResult:
        ctx = RuleContext(
            dialect=dialect,
            config=self.config,
            question=question,
            pattern_fallback=pattern_fallback,
        )
        result = SanitizationResult(sql=candidate or "", dialect=dialect, raw_input=candidate or "")

        if not result.sql.strip():
            return result

        for rule in self.rules:
            if not rule.applies(ctx):
                continue
            before = result.sql
            try:
                after = rule.transform(before, ctx)
            except (re.error, ValueError, IndexError, TypeError) as e:
                logger.warning(f"[SANITIZER] Rule {rule.name} failed, skipped: {e}")
                result.failed_rules.append(rule.name)
                continue
            if after != before:
                result.applied_rules.append(rule.name)
                logger.debug(f"[SANITIZER] {rule.name}: {before[:120]!r} -> {after[:120]!r}")
                result.sql = after

        if result.applied_rules:
            logger.info(f"[SANITIZER] Applied: {', '.join(result.applied_rules)}")
        return result


def create_query_sanitizer(config: Optional[PipelineConfig] = None) -> QuerySanitizer:
    return QuerySanitizer(config)


def sanitize_query(
    candidate: str,
    dialect: Dialect = Dialect.SQL,
    question: str = "",
    config: Optional[PipelineConfig] = None,
    pattern_fallback: bool = False,
) -> str:
    """Convenience function returning only the sanitized text."""
    return QuerySanitizer(config).sanitize(
        candidate, dialect, question=question, pattern_fallback=pattern_fallback
    ).sql
