"""
Safety Guard
============

Last gate before execution. A sanitized query passes only if:

- it starts with the read-only keyword of its dialect (SELECT / MATCH)
- it is a single statement (no ';' anywhere, one top-level SELECT)
- no forbidden verb appears as a standalone word followed by whitespace

The check runs on the raw text, string literals included. A forbidden word
inside a quoted value ("'please delete me'") is a rejection, not a special
case. False positives are acceptable here; false negatives are not.
"""

import re
import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

import sqlparse

from errors import ValidationError
from query_sanitizer import Dialect
from sql_text import top_level_matches

logger = logging.getLogger(__name__)


FORBIDDEN_VERBS: List[str] = [
    "insert", "update", "delete", "drop", "alter", "create", "truncate",
    "into", "grant", "revoke", "copy", "vacuum", "merge",
]

# Relationship-dialect write/admin clauses, beyond the shared verbs.
CYPHER_FORBIDDEN: List[Tuple[str, re.Pattern]] = [
    ("merge", re.compile(r"\bmerge\s", re.IGNORECASE)),
    ("set", re.compile(r"\bset\s", re.IGNORECASE)),
    ("remove", re.compile(r"\bremove\s", re.IGNORECASE)),
    ("detach", re.compile(r"\bdetach\s", re.IGNORECASE)),
    ("foreach", re.compile(r"\bforeach\s*\(", re.IGNORECASE)),
    ("call dbms", re.compile(r"\bcall\s+dbms\b", re.IGNORECASE)),
    ("load csv", re.compile(r"\bload\s+csv\b", re.IGNORECASE)),
    ("apoc.load", re.compile(r"\bapoc\.load", re.IGNORECASE)),
]

_FORBIDDEN_RE = re.compile(r"\b(" + "|".join(FORBIDDEN_VERBS) + r")\s", re.IGNORECASE)

READ_ONLY_PATTERNS = {
    Dialect.SQL: re.compile(r"^select\b", re.IGNORECASE),
    Dialect.CYPHER: re.compile(r"^match\b", re.IGNORECASE),
}

_SELECT_RE = re.compile(r"\bselect\b", re.IGNORECASE)


@dataclass
class GuardResult:
    """
    Verdict for one sanitized query.

    Attributes:
        passed: Whether the query may execute
        reason: Rejection reason (None when passed)
        query: The query that was checked
        dialect: Dialect it was checked against
    """
    passed: bool
    reason: Optional[str]
    query: str
    dialect: Dialect


class SafetyGuard:
    """Read-only gate for sanitized queries."""

    def check(self, query: str, dialect: Dialect = Dialect.SQL) -> GuardResult:
        text = (query or "").strip()

        reason = self._first_violation(text, dialect)
        if reason:
            logger.warning(f"[GUARD] REJECTED ({dialect.value}): {reason}")
            return GuardResult(passed=False, reason=reason, query=text, dialect=dialect)

        return GuardResult(passed=True, reason=None, query=text, dialect=dialect)

    def enforce(self, query: str, dialect: Dialect = Dialect.SQL) -> str:
        """Return the query if it passes, otherwise raise ValidationError."""
        result = self.check(query, dialect)
        if not result.passed:
            raise ValidationError(result.reason, query=result.query)
        return result.query

    def _first_violation(self, text: str, dialect: Dialect) -> Optional[str]:
        if not text:
            return "Empty query"

        keyword = "SELECT" if dialect == Dialect.SQL else "MATCH"
        if not READ_ONLY_PATTERNS[dialect].match(text):
            return f"Only {keyword} queries are allowed"

        if ";" in text or len([s for s in sqlparse.split(text) if s.strip()]) > 1:
            return "Multiple statements are not allowed"

        forbidden = _FORBIDDEN_RE.search(text)
        if forbidden:
            return f"Forbidden keyword: {forbidden.group(1).upper()}"

        if dialect == Dialect.SQL:
            if len(top_level_matches(text, _SELECT_RE)) != 1:
                return "Compound statements are not allowed"
        else:
            for name, pattern in CYPHER_FORBIDDEN:
                if pattern.search(text):
                    return f"Forbidden clause: {name.upper()}"

        return None


_default_guard = SafetyGuard()


def check_query(query: str, dialect: Dialect = Dialect.SQL) -> GuardResult:
    """Convenience function using a module-level guard."""
    return _default_guard.check(query, dialect)


def enforce_read_only(query: str, dialect: Dialect = Dialect.SQL) -> str:
    return _default_guard.enforce(query, dialect)
