"""
Tagged results for the small text classifiers (person-name extraction,
relationship-cue detection).

A heuristic either finds nothing, finds something it then refuses
(blocklisted), or finds a usable value. Keeping the refused case as its own
variant means callers and tests can tell "no cue" from "cue rejected".
"""

from dataclasses import dataclass
from typing import Union


@dataclass(frozen=True)
class NoMatch:
    """No cue found in the text."""

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class Blocked:
    """A cue matched but its captured value is on a blocklist."""
    value: str
    cue: str = ""

    def __bool__(self) -> bool:
        return False


@dataclass(frozen=True)
class Matched:
    """A cue matched and its captured value is usable."""
    value: str
    cue: str = ""

    def __bool__(self) -> bool:
        return True


HeuristicResult = Union[NoMatch, Blocked, Matched]

NO_MATCH = NoMatch()
