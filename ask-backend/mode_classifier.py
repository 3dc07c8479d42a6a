"""
Heuristic Mode Classifier
Decides whether a question is answered by tabular filtering or by
relationship-pattern aggregation, without a language-model call.
"""

import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from heuristic_match import HeuristicResult, Matched, NO_MATCH

logger = logging.getLogger(__name__)


class Mode(str, Enum):
    TABULAR = "tabular"
    PATTERN = "pattern"


class RequestedMode(str, Enum):
    AUTO = "auto"
    TABULAR = "tabular"
    PATTERN = "pattern"


@dataclass(frozen=True)
class ModeDecision:
    """
    Attributes:
        mode: Mode the request will run in first
        classified: What the classifier alone would have chosen
        explicit: Caller forced the mode
        cue: Name of the cue that decided the classification ("" when defaulted)
    """
    mode: Mode
    classified: Mode
    explicit: bool
    cue: str = ""


class ModeClassifier:
    """Ordered cue lists; first match wins."""

    # Relationship cues select pattern mode.
    RELATIONSHIP_CUES: List[Tuple[str, str]] = [
        ("relationship", r"\brelationships?\s+between\b"),
        ("co-occur", r"\bco-?occur(?:s|red|ring|rence|rences)?\b"),
        ("pattern-across", r"\bpatterns?\s+(?:across|between|in|among)\b"),
        ("connected-outcomes", r"\bconnected\s+to\b.*\boutcomes?\b"),
        ("correlation", r"\bcorrelat(?:e|es|ed|ion|ions)\b"),
        ("combination", r"\bcombinations?\s+of\b"),
        ("go-together", r"\bgo\s+together\b"),
        ("which-changes-on", r"\bwhich\s+(?:change\s+types?|changes)\s+(?:on|to)\s+which\s+elements?\b"),
    ]

    # Tabular cues select tabular mode when no relationship cue matched.
    TABULAR_CUES: List[Tuple[str, str]] = [
        ("listing", r"\b(?:list|show|display|give\s+me)\b"),
        ("counting", r"\b(?:how\s+many|count|number\s+of)\b"),
        ("learnings", r"\bwhat\s+did\s+we\s+learn\b|\blessons?\b"),
        ("biggest-win", r"\b(?:biggest|largest|best|top)\s+(?:\d+\s+)?(?:wins?|winners?|performing)\b"),
        ("failed-experiment", r"\bfailed\s+(?:experiments?|tests?)\b"),
        ("top-n", r"\btop\s+\d+\b"),
    ]

    def __init__(self):
        self.relationship_patterns = [
            (name, re.compile(p, re.IGNORECASE)) for name, p in self.RELATIONSHIP_CUES
        ]
        self.tabular_patterns = [
            (name, re.compile(p, re.IGNORECASE)) for name, p in self.TABULAR_CUES
        ]

    def relationship_cue(self, question: str) -> HeuristicResult:
        for name, pattern in self.relationship_patterns:
            match = pattern.search(question or "")
            if match:
                return Matched(value=match.group(0), cue=name)
        return NO_MATCH

    def tabular_cue(self, question: str) -> HeuristicResult:
        for name, pattern in self.tabular_patterns:
            match = pattern.search(question or "")
            if match:
                return Matched(value=match.group(0), cue=name)
        return NO_MATCH

    def classify(self, question: str) -> Tuple[Mode, str]:
        """Classifier verdict and the cue that decided it."""
        relationship = self.relationship_cue(question)
        if isinstance(relationship, Matched):
            return Mode.PATTERN, relationship.cue

        tabular = self.tabular_cue(question)
        if isinstance(tabular, Matched):
            return Mode.TABULAR, tabular.cue

        return Mode.TABULAR, ""

    def decide(self, question: str, requested: Optional[RequestedMode] = None) -> ModeDecision:
        """
        Build the request's Mode Decision.

        An explicit tabular/pattern request always wins; the classifier still
        runs so its verdict can be reported.
        """
        classified, cue = self.classify(question)
        requested = requested or RequestedMode.AUTO

        if requested != RequestedMode.AUTO:
            mode = Mode(requested.value)
            logger.info(f"[ROUTER] Explicit mode={mode.value} (classifier said {classified.value})")
            return ModeDecision(mode=mode, classified=classified, explicit=True, cue=cue)

        logger.info(f"[ROUTER] Classified mode={classified.value} cue={cue or 'default'}")
        return ModeDecision(mode=classified, classified=classified, explicit=False, cue=cue)

    def explain_decision(self, question: str) -> dict:
        """Debugging aid: every cue that matches, in order."""
        return {
            "question": question,
            "relationship_cues": [n for n, p in self.relationship_patterns if p.search(question or "")],
            "tabular_cues": [n for n, p in self.tabular_patterns if p.search(question or "")],
            "decision": self.classify(question)[0].value,
        }


_classifier: Optional[ModeClassifier] = None


def get_mode_classifier() -> ModeClassifier:
    global _classifier
    if _classifier is None:
        _classifier = ModeClassifier()
    return _classifier
