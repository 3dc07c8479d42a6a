"""
Proposer / summarizer collaborator boundary.

The language model behind propose() and summarize() is untrusted: its
proposal is free text that should contain one JSON object

    {"query": "SELECT ...", "notes": "...", "dialect": "sql"}

possibly wrapped in prose or code fences. extract_first_json_object() finds
the first balanced object (string-aware, so braces inside values don't
count) and parse_proposal() turns it into a Proposal or raises
ProposalParseError. Nothing here retries.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from errors import ProposalParseError
from experiment_schema import describe_schema
from query_sanitizer import Dialect

logger = logging.getLogger(__name__)


class LanguageModelCollaborator(Protocol):
    """Two single-shot calls; any provider that satisfies these can be plugged in."""

    async def propose(self, prompt: str) -> str:
        ...

    async def summarize(self, context: str) -> str:
        ...


@dataclass(frozen=True)
class Proposal:
    query: str
    notes: str = ""
    dialect: Dialect = Dialect.SQL


# =============================================================================
# JSON EXTRACTION
# =============================================================================

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]+")


def extract_first_json_object(text: str) -> Optional[str]:
    """
    Return the first balanced {...} substring, or None.

    Braces inside JSON strings are ignored; an object that never closes is
    skipped and the scan resumes at the next '{'.
    """
    if not text:
        return None

    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for i in range(start, len(text)):
            char = text[i]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start:i + 1]
        start = text.find("{", start + 1)
    return None


def parse_proposal(text: str, default_dialect: Dialect = Dialect.SQL) -> Proposal:
    """Parse proposer output into a Proposal."""
    candidate = extract_first_json_object(text or "")
    if candidate is None:
        raise ProposalParseError("Proposer response contains no JSON object", query=(text or "")[:500])

    try:
        payload = json.loads(candidate, strict=False)
    except json.JSONDecodeError:
        try:
            payload = json.loads(_CONTROL_CHARS_RE.sub(" ", candidate.replace("\n", " ")), strict=False)
        except json.JSONDecodeError as e:
            raise ProposalParseError(f"Proposer JSON is invalid: {e}", query=candidate[:500]) from e

    if not isinstance(payload, dict):
        raise ProposalParseError("Proposer JSON is not an object", query=candidate[:500])

    # "sql" is the field name older prompts asked for.
    query = payload.get("query") or payload.get("sql") or payload.get("cypher")
    if not isinstance(query, str) or not query.strip():
        raise ProposalParseError("Proposer JSON has no query field", query=candidate[:500])

    notes = payload.get("notes") or ""
    if not isinstance(notes, str):
        notes = json.dumps(notes)

    dialect = default_dialect
    raw_dialect = str(payload.get("dialect") or "").strip().lower()
    if raw_dialect in (Dialect.SQL.value, Dialect.CYPHER.value):
        dialect = Dialect(raw_dialect)

    return Proposal(query=query.strip(), notes=notes.strip(), dialect=dialect)


# =============================================================================
# PROMPTS
# =============================================================================

_COMMON_RULES = """RULES:
- Return JSON only, like {"query": "...", "notes": "..."} on a single line.
- ALWAYS start with SELECT. No WITH clauses, no CTEs, no writes or DDL.
- Use only the "Experiment" table, double-quoted, and double-quote every camelCase column.
- Default to the last 24 months if no date range is given; prefer "dateConcluded", fall back to "dateLaunched".
- Use PostgreSQL interval syntax: NOW() - interval '6 months'.
- Use ISO dates (YYYY-MM-DD).

VERTICAL AND GEO FILTERING:
- Use short wildcards: "vertical" ILIKE '%Solar%', "geo" ILIKE '%UK%'. Never exact equality.

FAILED EXPERIMENTS:
- Failed means no winner: ("winningVar" IS NULL OR "winningVar" = ''). Do not add significance or metric thresholds.

WINNERS:
- For "largest win" / "best performing": filter "winningVar" IS NOT NULL and ORDER BY "monthlyExtrap" DESC.

PERSON QUERIES:
- For "by <name>" / "from <name>": filter "launchedBy" ILIKE '%name%'.

LEARNINGS:
- For "what did we learn": include "lessonLearned", "hypothesis", "winningVar", "changeType", "elementChanged".
"""


def build_tabular_prompt(question: str) -> str:
    """Prompt asking for a row-level query answering the question."""
    return (
        "You are a SQL assistant for an experiment-tracking database.\n\n"
        f"{describe_schema()}\n\n"
        f"{_COMMON_RULES}\n"
        'Always select "id", "experimentId", "testName", "changeType" and "elementChanged" '
        "so results can be linked and graphed.\n\n"
        f"Question: {question}\n"
        "Return JSON with fields query and notes."
    )


def build_pattern_prompt(question: str) -> str:
    """Prompt asking for a plain row selection that can back a pattern answer."""
    return (
        "You are a SQL assistant for an experiment-tracking database. The question is about "
        "patterns between what was changed and where. Return a plain row-level SELECT (no GROUP BY) "
        "of the experiments relevant to the question; aggregation happens elsewhere.\n\n"
        f"{describe_schema()}\n\n"
        f"{_COMMON_RULES}\n"
        f"Question: {question}\n"
        "Return JSON with fields query and notes."
    )


def build_summary_context(question: str, sections: List[Dict[str, Any]]) -> str:
    """
    Render the summarizer input: the question followed by titled data
    sections, each a dict with "title" and either "body" or "data".
    """
    parts = [f"Question: {question}"]
    for section in sections:
        parts.append(f"\n## {section['title']}")
        if "body" in section:
            parts.append(str(section["body"]))
        if "data" in section:
            parts.append(json.dumps(section["data"], indent=2, default=str))
    return "\n".join(parts)


SUMMARY_SYSTEM_PROMPT = """You are a senior conversion-rate-optimisation analyst. You receive up to three data sources:
row-level experiment results, aggregated changeType -> elementChanged patterns, and experiments similar to a focal one.
Cross-reference them. Quote real test names and real metrics (crChangeV1, rpvChangeV1, monthlyExtrap) for every claim.
Never say there is not enough data unless every source is empty.

Answer in markdown with these sections: Executive Summary, Key Highlights, Data Coverage,
Detailed Learnings, Patterns & Trends, Recommended Next Steps."""
