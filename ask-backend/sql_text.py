"""
Text helpers shared by the query rewrite rules.

None of this is a SQL parser. The rewrite rules work on text, and these
helpers give them the two things regexes alone get wrong:

- literal masking: single-quoted strings are swapped for __STRL0000__
  placeholders so identifier and keyword rewrites never touch user values
- top-level scanning: keyword positions outside quotes and parentheses,
  so a subquery's WHERE or LIMIT is never mistaken for the outer one
"""

import re
from typing import List, Optional, Tuple

import sqlparse

# Single-quoted literal, honouring the '' escape.
STRING_LITERAL_RE = re.compile(r"'[^']*(?:''[^']*)*'")
PLACEHOLDER_RE = re.compile(r"__STRL(\d{4})__")

CLAUSE_BOUNDARY_RE = re.compile(
    r"\b(GROUP\s+BY|ORDER\s+BY|HAVING|LIMIT|OFFSET|UNION|INTERSECT|EXCEPT|WINDOW|FETCH)\b",
    re.IGNORECASE,
)
WHERE_RE = re.compile(r"\bWHERE\b", re.IGNORECASE)
SELECT_RE = re.compile(r"\bSELECT\b", re.IGNORECASE)
FROM_RE = re.compile(r"\bFROM\b", re.IGNORECASE)


# =============================================================================
# LITERAL MASKING
# =============================================================================

def mask_literals(sql: str) -> Tuple[str, List[str]]:
    """Replace single-quoted literals with stable placeholders."""
    literals: List[str] = []

    def _store(m: re.Match) -> str:
        idx = len(literals)
        literals.append(m.group(0))
        return f"__STRL{idx:04d}__"

    return STRING_LITERAL_RE.sub(_store, sql), literals


def unmask_literals(sql: str, literals: List[str]) -> str:
    """Restore literals masked by mask_literals."""
    def _restore(m: re.Match) -> str:
        idx = int(m.group(1))
        return literals[idx] if idx < len(literals) else m.group(0)

    return PLACEHOLDER_RE.sub(_restore, sql)


def escape_literal(value: str) -> str:
    """Escape a value for interpolation inside single quotes."""
    return value.replace("'", "''")


# =============================================================================
# TOP-LEVEL SCANNING
# =============================================================================

def _depth_map(sql: str) -> List[int]:
    """
    Parenthesis depth per character; -1 for characters inside a quoted
    string or quoted identifier.
    """
    depths: List[int] = []
    depth = 0
    quote: Optional[str] = None
    for char in sql:
        if quote:
            depths.append(-1)
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
            depths.append(-1)
            continue
        if char == "(":
            depths.append(depth)
            depth += 1
            continue
        if char == ")":
            depth = max(0, depth - 1)
        depths.append(depth)
    return depths


def top_level_matches(sql: str, pattern: re.Pattern, start: int = 0) -> List[re.Match]:
    """Matches of `pattern` that begin outside quotes and parentheses."""
    depths = _depth_map(sql)
    return [
        m for m in pattern.finditer(sql, start)
        if m.start() < len(depths) and depths[m.start()] == 0
    ]


def first_top_level(sql: str, pattern: re.Pattern, start: int = 0) -> Optional[re.Match]:
    matches = top_level_matches(sql, pattern, start)
    return matches[0] if matches else None


def has_top_level(sql: str, pattern: re.Pattern) -> bool:
    return first_top_level(sql, pattern) is not None


def clause_boundary(sql: str, start: int = 0) -> int:
    """Position of the first top-level clause keyword after `start`, or len(sql)."""
    match = first_top_level(sql, CLAUSE_BOUNDARY_RE, start)
    return match.start() if match else len(sql)


def has_where_clause(sql: str) -> bool:
    """Structural WHERE detection on the outer statement."""
    parsed = sqlparse.parse(sql)
    if not parsed:
        return False
    return any(isinstance(token, sqlparse.sql.Where) for token in parsed[0].tokens)


def inject_where(sql: str, filter_expr: str) -> str:
    """
    AND `filter_expr` into the outer WHERE clause, or add one.

    An existing WHERE body is parenthesized first so a top-level OR in it
    cannot swallow the injected condition.
    """
    body = sql.rstrip()
    had_semicolon = body.endswith(";")
    if had_semicolon:
        body = body[:-1].rstrip()

    where = first_top_level(body, WHERE_RE)
    if where is not None:
        boundary = clause_boundary(body, where.end())
        existing = body[where.end():boundary].strip()
        tail = body[boundary:]
        result = f"{body[:where.start()]}WHERE ({existing}) AND {filter_expr}"
    else:
        from_match = first_top_level(body, FROM_RE)
        boundary = clause_boundary(body, from_match.end() if from_match else 0)
        tail = body[boundary:]
        result = f"{body[:boundary].rstrip()} WHERE {filter_expr}"

    if tail:
        result = f"{result} {tail.lstrip()}"
    if had_semicolon:
        result += ";"
    return result


def select_list_span(sql: str) -> Optional[Tuple[int, int]]:
    """(start, end) of the outer SELECT list, between SELECT and FROM."""
    select = first_top_level(sql, SELECT_RE)
    if select is None:
        return None
    from_match = first_top_level(sql, FROM_RE, select.end())
    if from_match is None:
        return None
    return select.end(), from_match.start()


def split_top_level(text: str, separator: str = ",") -> List[str]:
    """Split on `separator` outside quotes and parentheses."""
    parts: List[str] = []
    depths = _depth_map(text)
    last = 0
    for i, char in enumerate(text):
        if char == separator and depths[i] == 0:
            parts.append(text[last:i])
            last = i + 1
    parts.append(text[last:])
    return [p.strip() for p in parts if p.strip()]


def collapse_whitespace(sql: str) -> str:
    """Collapse runs of whitespace outside quoted strings."""
    masked, literals = mask_literals(sql)
    return unmask_literals(re.sub(r"\s+", " ", masked).strip(), literals)
