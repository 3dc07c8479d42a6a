"""
Fallback Controller
===================

Runs one request's tabular and pattern branches and decides which answer
is used.

STATE MACHINE (terminal after one request):

    Primary = pattern
        error   -> Secondary (tabular) unless the mode was forced
        sparse  -> retry pattern once over the expanded window;
                   still sparse -> Secondary unless the mode was forced
    Primary = tabular
        run once; no mode switch on error
    Secondary (tabular)
        outcome is terminal
    Done
        both branches errored -> BothFailedError

"Sparse" means fewer edges than config.min_pattern_edges. It is not an
error; it is recorded as a FallbackEvent with reason "sparse".

In auto mode both branches always run and both results are reported; with
eager fan-out the secondary branch starts together with the primary and is
awaited only after the primary has resolved. A forced mode runs only its
own branch. One branch failing never cancels the other.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from config import PipelineConfig
from errors import BothFailedError
from mode_classifier import Mode, ModeDecision
from pattern_aggregator import PatternEdge

logger = logging.getLogger(__name__)

TabularBranch = Callable[[], Awaitable[Any]]
PatternBranch = Callable[[int], Awaitable[List[PatternEdge]]]


@dataclass
class FallbackEvent:
    """
    One departure from the planned path.

    Attributes:
        original_mode: Mode that was running when the event happened
        reason: "error" or "sparse"
        detail: Error text or edge counts
        substituted_mode: Mode switched to (None when only the window widened)
        widened_window: The pattern window was expanded
        pattern_edge_count: Edges observed when the event was recorded
    """
    original_mode: Mode
    reason: str
    detail: str = ""
    substituted_mode: Optional[Mode] = None
    widened_window: bool = False
    pattern_edge_count: int = 0

    def to_dict(self):
        return {
            "originalMode": self.original_mode.value,
            "reason": self.reason,
            "detail": self.detail,
            "substitutedMode": self.substituted_mode.value if self.substituted_mode else None,
            "widenedWindow": self.widened_window,
            "patternEdgeCount": self.pattern_edge_count,
        }


@dataclass
class FallbackOutcome:
    """Everything the controller observed for one request."""
    decision: ModeDecision
    mode_used: Mode
    fallback_used: bool = False
    tabular_result: Any = None
    tabular_error: Optional[Exception] = None
    tabular_ran: bool = False
    pattern_edges: Optional[List[PatternEdge]] = None
    pattern_error: Optional[Exception] = None
    pattern_ran: bool = False
    pattern_months: Optional[int] = None
    events: List[FallbackEvent] = field(default_factory=list)

    @property
    def widened(self) -> bool:
        return any(e.widened_window for e in self.events)


class _Branch:
    """A branch that may already be running; awaited at most once."""

    def __init__(self, factory: Callable[[], Awaitable[Any]]):
        self._factory = factory
        self._task: Optional[asyncio.Task] = None

    def start(self):
        if self._task is None:
            self._task = asyncio.ensure_future(self._factory())

    async def result(self) -> Any:
        self.start()
        return await self._task


class FallbackController:
    """Primary/secondary orchestration with sparse-result window widening."""

    def __init__(self, config: Optional[PipelineConfig] = None):
        self.config = config or PipelineConfig()

    async def run(
        self,
        decision: ModeDecision,
        run_tabular: TabularBranch,
        run_pattern: PatternBranch,
        pattern_months: Optional[int] = None,
    ) -> FallbackOutcome:
        months = pattern_months or self.config.pattern_window_months
        outcome = FallbackOutcome(decision=decision, mode_used=decision.mode)

        tabular = _Branch(run_tabular)
        pattern = _Branch(lambda: run_pattern(months))

        if not decision.explicit and self.config.eager_fan_out:
            tabular.start()
            pattern.start()

        if decision.mode == Mode.PATTERN:
            await self._pattern_primary(decision, outcome, tabular, pattern, run_pattern, months)
        else:
            await self._tabular_primary(decision, outcome, tabular, pattern, run_pattern, months)

        if outcome.tabular_error is not None and outcome.pattern_error is not None:
            logger.warning("[FALLBACK] Both branches failed")
            raise BothFailedError(outcome.tabular_error, outcome.pattern_error)

        logger.info(
            f"[FALLBACK] mode_used={outcome.mode_used.value} fallback={outcome.fallback_used} "
            f"events={[e.reason for e in outcome.events]}"
        )
        return outcome

    # -------------------------------------------------------------------------
    # PRIMARY PATHS
    # -------------------------------------------------------------------------

    async def _pattern_primary(self, decision, outcome, tabular, pattern, run_pattern, months):
        needs_secondary = await self._run_pattern(outcome, pattern, run_pattern, months, decision)

        if decision.explicit:
            return

        if needs_secondary:
            outcome.mode_used = Mode.TABULAR
            outcome.fallback_used = True
            logger.info("[FALLBACK] Switching to tabular mode")

        # Auto mode reports the tabular branch either way.
        await self._run_tabular(outcome, tabular)

    async def _tabular_primary(self, decision, outcome, tabular, pattern, run_pattern, months):
        await self._run_tabular(outcome, tabular)
        if outcome.tabular_error is not None:
            logger.warning(f"[FALLBACK] Tabular primary failed, no mode switch: {outcome.tabular_error}")

        if decision.explicit:
            return

        # Supplementary pattern edges; never replaces the tabular answer.
        await self._run_pattern(outcome, pattern, run_pattern, months, decision, record_switch=False)

    # -------------------------------------------------------------------------
    # BRANCH RUNNERS
    # -------------------------------------------------------------------------

    async def _run_tabular(self, outcome: FallbackOutcome, tabular: _Branch):
        outcome.tabular_ran = True
        try:
            outcome.tabular_result = await tabular.result()
        except Exception as e:
            logger.warning(f"[FALLBACK] Tabular branch failed: {e}")
            outcome.tabular_error = e

    async def _run_pattern(
        self,
        outcome: FallbackOutcome,
        pattern: _Branch,
        run_pattern: PatternBranch,
        months: int,
        decision: ModeDecision,
        record_switch: bool = True,
    ) -> bool:
        """
        Run the pattern branch with one widening retry.

        Returns True when the result calls for a switch to tabular mode.
        """
        outcome.pattern_ran = True
        substitute = None if decision.explicit or not record_switch else Mode.TABULAR
        threshold = self.config.min_pattern_edges
        expanded = self.config.expanded_window_months

        try:
            edges = await pattern.result()
        except Exception as e:
            logger.warning(f"[FALLBACK] Pattern branch failed: {e}")
            outcome.pattern_error = e
            outcome.events.append(FallbackEvent(
                original_mode=Mode.PATTERN,
                reason="error",
                detail=str(e),
                substituted_mode=substitute,
            ))
            return substitute is not None

        outcome.pattern_edges = edges
        outcome.pattern_months = months

        if len(edges) >= threshold:
            return False

        if months < expanded:
            logger.info(f"[FALLBACK] {len(edges)} edges < {threshold}, widening window to {expanded} months")
            try:
                widened = await run_pattern(expanded)
            except Exception as e:
                logger.warning(f"[FALLBACK] Widened pattern retry failed: {e}")
                outcome.pattern_error = e
                outcome.events.append(FallbackEvent(
                    original_mode=Mode.PATTERN,
                    reason="error",
                    detail=str(e),
                    substituted_mode=substitute,
                    widened_window=True,
                    pattern_edge_count=len(edges),
                ))
                return substitute is not None

            outcome.pattern_edges = widened
            outcome.pattern_months = expanded
            if len(widened) >= threshold:
                outcome.events.append(FallbackEvent(
                    original_mode=Mode.PATTERN,
                    reason="sparse",
                    detail=f"{len(edges)} edges in {months} months; {len(widened)} after widening",
                    widened_window=True,
                    pattern_edge_count=len(widened),
                ))
                return False
            edges_after = len(widened)
            widened_flag = True
        else:
            edges_after = len(edges)
            widened_flag = False

        outcome.events.append(FallbackEvent(
            original_mode=Mode.PATTERN,
            reason="sparse",
            detail=f"{edges_after} edges, below the minimum of {threshold}",
            substituted_mode=substitute,
            widened_window=widened_flag,
            pattern_edge_count=edges_after,
        ))
        return substitute is not None
