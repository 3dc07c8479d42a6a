"""
Person-Filter Heuristic
=======================

Questions like "show experiments by Sarah" or "what did John run?" name the
person who launched the experiments. The proposer usually filters on
"launchedBy" itself; this heuristic is the safety net when it didn't.

extract_person_name() is a pure classifier:

    NoMatch            no person cue in the question
    Blocked(word)      a cue matched but the word is a known non-person term
                       ("by Monthly Extrapolation", "from UK", "by CTA")
    Matched(name)      a usable name

inject_person_filter() adds

    ("launchedBy" ILIKE '%Name%' OR "testName" ILIKE '%Name%')
    AND "dateConcluded" IS NOT NULL

to the outer WHERE clause unless the query already references "launchedBy".
Experiments without a conclusion date are not attributable to an outcome.
"""

import re
import logging
from dataclasses import dataclass
from typing import FrozenSet, List, Tuple

from experiment_schema import CONCLUDED_COLUMN, NAME_COLUMN, PERSON_COLUMN
from heuristic_match import Blocked, HeuristicResult, Matched, NO_MATCH
from sql_text import escape_literal, inject_where, mask_literals

logger = logging.getLogger(__name__)


# Words that follow "by"/"from" in experiment questions without being people.
PERSON_BLOCKLIST: FrozenSet[str] = frozenset({
    # temporal / metric words
    "monthly", "extrapolation", "top", "latest", "date", "concluded", "launched",
    "experiment", "experiments", "overlay", "loader", "the", "a", "an",
    "month", "months", "year", "years", "week", "weeks", "last", "recent",
    "day", "days", "quarter", "quarters", "today", "yesterday", "now",
    # months
    "january", "february", "march", "april", "may", "june", "july", "august",
    "september", "october", "november", "december",
    "jan", "feb", "mar", "apr", "jun", "jul", "aug", "sep", "sept", "oct", "nov", "dec",
    # weekdays
    "monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday",
    "mon", "tue", "tues", "wed", "thu", "thur", "thurs", "fri", "sat", "sun",
    # dimensions
    "brand", "brands", "element", "elements", "change", "changes", "type", "types",
    "lever", "levers", "audience", "audiences", "metric", "metrics", "category",
    "categories", "region", "regions", "hub", "trading", "device", "devices",
    "channel", "channels", "monetisation", "monetization", "method", "owner",
    # verticals
    "solar", "panels", "heat", "pumps", "hearing", "aids", "merchant", "accounts",
    "boilers", "windows", "insulation", "chargers",
    # geos
    "uk", "us", "dk", "de", "au", "nz", "ca", "denmark", "germany", "australia",
    # regions
    "americas", "emea", "apac", "row", "global",
    # test terminology
    "cta", "button", "form", "page", "test", "tests", "vertical", "geo",
    "revenue", "impact", "conversion", "winner", "winners", "variant", "control",
})

_NAME = r"([A-Z][a-z]+(?:[-'][A-Z]?[a-z]+)?)"

# Ordered: the first cue that captures a word decides.
PERSON_CUES: List[Tuple[str, re.Pattern]] = [
    ("by", re.compile(r"\bby\s+" + _NAME + r"(?=\s|$|[,?.!])")),
    ("from", re.compile(r"\bfrom\s+" + _NAME + r"(?=\s|$|[,?.!])")),
    ("did", re.compile(r"\b[Dd]id\s+" + _NAME + r"\s+(?:run|launch|test|ship)\b")),
    ("possessive", re.compile(r"\b" + _NAME + r"'s\s+(?:experiments|tests)\b")),
]

_PERSON_REFERENCE_RE = re.compile(r"\blaunchedBy\b", re.IGNORECASE)


@dataclass
class PersonFilterResult:
    """
    Outcome of the person-filter pass over one query.

    Attributes:
        sql: Query after the pass (unchanged unless injected)
        match: Classifier verdict for the question
        injected: Whether a filter was added
        skipped_reason: Why a Matched name was not injected
    """
    sql: str
    match: HeuristicResult
    injected: bool = False
    skipped_reason: str = ""


def extract_person_name(question: str) -> HeuristicResult:
    """Classify a question as naming a person, a blocked term, or nothing."""
    if not question:
        return NO_MATCH

    for cue, pattern in PERSON_CUES:
        match = pattern.search(question)
        if not match:
            continue
        word = match.group(1)
        if word.lower() in PERSON_BLOCKLIST:
            logger.debug(f"[PERSON] '{word}' after '{cue}' is blocklisted")
            return Blocked(value=word, cue=cue)
        return Matched(value=word, cue=cue)

    return NO_MATCH


def has_person_filter(sql: str) -> bool:
    """True when the query already references the person column outside literals."""
    masked, _ = mask_literals(sql or "")
    return bool(_PERSON_REFERENCE_RE.search(masked))


def build_person_filter(name: str) -> str:
    value = escape_literal(name)
    return (
        f'("{PERSON_COLUMN}" ILIKE \'%{value}%\' OR "{NAME_COLUMN}" ILIKE \'%{value}%\') '
        f'AND "{CONCLUDED_COLUMN}" IS NOT NULL'
    )


def inject_person_filter(question: str, sql: str) -> PersonFilterResult:
    """Add a person filter for the name in `question`, when one is safe to add."""
    match = extract_person_name(question)
    if not isinstance(match, Matched):
        return PersonFilterResult(sql=sql, match=match)

    if has_person_filter(sql):
        return PersonFilterResult(
            sql=sql,
            match=match,
            skipped_reason="query already filters on launchedBy",
        )

    augmented = inject_where(sql, build_person_filter(match.value))
    logger.info(f"[PERSON] Injected person filter for '{match.value}'")
    return PersonFilterResult(sql=augmented, match=match, injected=True)
