"""
Ask Pipeline
============

One request, end to end:

    question
      -> ModeClassifier.decide()
      -> fan-out
           tabular branch:  propose -> parse -> sanitize -> guard -> execute
           pattern branch:  PatternAggregator over the question's filters
           similar branch:  SimilarityScorer (only when a focal experimentId is given)
      -> FallbackController picks the answer and records fallback events
      -> summarizer hand-off (rows, stats, winners, learnings, edges, neighbors)
      -> AskResult

Branch errors are captured per branch and reported; only the combined
failure of the tabular and pattern branches aborts the request
(BothFailedError). Nothing here outlives the request.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import PipelineConfig
from entity_normalizer import FilterDirectives, extract_filter_directives
from errors import AskError, BothFailedError, CollaboratorError, ExecutionError
from executor import QueryExecutor
from fallback_controller import FallbackController, FallbackOutcome
from mode_classifier import Mode, ModeClassifier, ModeDecision, RequestedMode, get_mode_classifier
from pattern_aggregator import PatternAggregator, PatternEdge
from proposer import (
    LanguageModelCollaborator,
    build_pattern_prompt,
    build_summary_context,
    build_tabular_prompt,
    parse_proposal,
)
from query_sanitizer import QuerySanitizer
from safety_guard import SafetyGuard
from similarity_scorer import SimilarityScorer

logger = logging.getLogger(__name__)

TOP_WINNERS = 10
MAX_LEARNINGS = 50


@dataclass
class TabularAnswer:
    query: str
    notes: str
    rows: List[Dict[str, Any]]
    applied_rules: List[str] = field(default_factory=list)


@dataclass
class AskResult:
    """Response body of one ask request, camelCased by to_response()."""
    mode_requested: RequestedMode
    mode_classified: Mode
    mode_used: Mode
    fallback_used: bool
    rows: List[Dict[str, Any]] = field(default_factory=list)
    query: str = ""
    notes: str = ""
    pattern_rows: Optional[List[Dict[str, Any]]] = None
    pattern_window_months: Optional[int] = None
    similar_neighbors: Optional[List[Dict[str, Any]]] = None
    error: Optional[str] = None
    branch_errors: Dict[str, str] = field(default_factory=dict)
    answer: Optional[str] = None
    summary_error: Optional[str] = None
    fallback: List[Dict[str, Any]] = field(default_factory=list)

    def to_response(self) -> Dict[str, Any]:
        return {
            "modeRequested": self.mode_requested.value,
            "modeClassified": self.mode_classified.value,
            "modeUsed": self.mode_used.value,
            "fallbackUsed": self.fallback_used,
            "rows": self.rows,
            "rowCount": len(self.rows),
            "query": self.query,
            "notes": self.notes or None,
            "patternRows": self.pattern_rows,
            "patternRowCount": len(self.pattern_rows) if self.pattern_rows is not None else None,
            "patternWindowMonths": self.pattern_window_months,
            "similarNeighbors": self.similar_neighbors,
            "error": self.error,
            "branchErrors": self.branch_errors or None,
            "answer": self.answer,
            "summaryError": self.summary_error,
            "fallback": self.fallback,
        }


def describe_error(error: Exception) -> str:
    if isinstance(error, AskError):
        return error.to_detail()
    return str(error) or error.__class__.__name__


# =============================================================================
# SUMMARY CONTEXT
# =============================================================================

def _filled(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def compute_row_stats(rows: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "totalRows": len(rows),
        "withLearnings": sum(1 for r in rows if _filled(r.get("lessonLearned"))),
        "withWinners": sum(1 for r in rows if _filled(r.get("winningVar"))),
        "uniqueVerticals": len({r.get("vertical") for r in rows if _filled(r.get("vertical"))}),
        "uniqueGeos": len({r.get("geo") for r in rows if _filled(r.get("geo"))}),
    }


def top_winners(rows: List[Dict[str, Any]], limit: int = TOP_WINNERS) -> List[Dict[str, Any]]:
    def impact(row):
        value = row.get("monthlyExtrap")
        return value if isinstance(value, (int, float)) else 0

    winners = [r for r in rows if _filled(r.get("winningVar"))]
    return sorted(winners, key=impact, reverse=True)[:limit]


def with_learnings(rows: List[Dict[str, Any]], limit: int = MAX_LEARNINGS) -> List[Dict[str, Any]]:
    keep = ("testName", "lessonLearned", "hypothesis", "winningVar", "changeType", "elementChanged")
    return [
        {k: r.get(k) for k in keep if k in r}
        for r in rows if _filled(r.get("lessonLearned"))
    ][:limit]


def build_summary_sections(
    result: AskResult,
    config: PipelineConfig,
) -> List[Dict[str, Any]]:
    sections: List[Dict[str, Any]] = []

    if result.rows:
        stats = compute_row_stats(result.rows)
        sample = result.rows[:config.summary_row_sample]
        sections.append({
            "title": "Row Results (individual experiments)",
            "body": f"Query used: {result.query}\nNotes: {result.notes or '-'}",
            "data": {"stats": stats},
        })
        sections.append({"title": f"Top Winners ({len(top_winners(result.rows))})", "data": top_winners(result.rows)})
        sections.append({"title": f"Sample Rows ({len(sample)} of {len(result.rows)})", "data": sample})
        learnings = with_learnings(result.rows)
        if learnings:
            sections.append({"title": f"Experiments with Learnings ({len(learnings)})", "data": learnings})
    elif "tabular" in result.branch_errors:
        sections.append({"title": "Row Results", "body": f"Query failed: {result.branch_errors['tabular']}"})

    if result.pattern_rows:
        sample = result.pattern_rows[:config.summary_pattern_sample]
        sections.append({
            "title": f"Pattern Results (changeType -> elementChanged), {len(result.pattern_rows)} total",
            "data": sample,
        })
    elif "pattern" in result.branch_errors:
        sections.append({"title": "Pattern Results", "body": f"Aggregation failed: {result.branch_errors['pattern']}"})

    if result.similar_neighbors:
        sections.append({"title": "Similar Experiments", "data": result.similar_neighbors})

    return sections


# =============================================================================
# PIPELINE
# =============================================================================

class AskPipeline:
    """Wires the classifier, branches, fallback controller and summarizer."""

    def __init__(
        self,
        collaborator: LanguageModelCollaborator,
        executor: QueryExecutor,
        aggregator: PatternAggregator,
        scorer: SimilarityScorer,
        config: Optional[PipelineConfig] = None,
        classifier: Optional[ModeClassifier] = None,
        sanitizer: Optional[QuerySanitizer] = None,
        guard: Optional[SafetyGuard] = None,
    ):
        self.config = config or PipelineConfig()
        self.collaborator = collaborator
        self.executor = executor
        self.aggregator = aggregator
        self.scorer = scorer
        self.classifier = classifier or get_mode_classifier()
        self.sanitizer = sanitizer or QuerySanitizer(self.config)
        self.guard = guard or SafetyGuard()
        self.controller = FallbackController(self.config)

    # -------------------------------------------------------------------------
    # BRANCHES
    # -------------------------------------------------------------------------

    async def run_tabular(self, question: str, decision: ModeDecision) -> TabularAnswer:
        """propose -> parse -> sanitize -> guard -> execute"""
        pattern_fallback = decision.mode == Mode.PATTERN
        prompt = build_pattern_prompt(question) if pattern_fallback else build_tabular_prompt(question)

        raw = await self.collaborator.propose(prompt)
        proposal = parse_proposal(raw)

        sanitized = self.sanitizer.sanitize(
            proposal.query,
            proposal.dialect,
            question=question,
            pattern_fallback=pattern_fallback,
        )
        query = self.guard.enforce(sanitized.sql, proposal.dialect)

        executed = await asyncio.to_thread(self.executor.execute, query, proposal.dialect)
        return TabularAnswer(
            query=query,
            notes=proposal.notes,
            rows=executed.rows,
            applied_rules=sanitized.applied_rules,
        )

    async def run_pattern(self, directives: FilterDirectives, months_back: int) -> List[PatternEdge]:
        return await asyncio.to_thread(self.aggregator.aggregate, directives, months_back)

    async def run_similar(self, experiment_id: str) -> List[Dict[str, Any]]:
        focal = await asyncio.to_thread(self.scorer.fetch_focal, experiment_id)
        if focal is None:
            raise ExecutionError(f"Experiment {experiment_id} not found")
        neighbors = await asyncio.to_thread(self.scorer.neighbors, focal)
        return [n.to_dict() for n in neighbors]

    # -------------------------------------------------------------------------
    # REQUEST
    # -------------------------------------------------------------------------

    async def ask(
        self,
        question: str,
        mode: RequestedMode = RequestedMode.AUTO,
        experiment_id: Optional[str] = None,
        summarize: bool = True,
    ) -> AskResult:
        decision = self.classifier.decide(question, mode)
        directives = extract_filter_directives(question)
        logger.info(f"[PIPELINE] mode={decision.mode.value} explicit={decision.explicit} directives={directives}")

        similar_task = None
        if experiment_id:
            similar_task = asyncio.ensure_future(self._capture(self.run_similar(experiment_id)))

        try:
            outcome = await self.controller.run(
                decision,
                run_tabular=lambda: self.run_tabular(question, decision),
                run_pattern=lambda months: self.run_pattern(directives, months),
                pattern_months=directives.months_back,
            )
        except BothFailedError:
            if similar_task is not None:
                await similar_task
            raise

        result = self._compose(mode, decision, outcome)

        if similar_task is not None:
            neighbors, similar_error = await similar_task
            result.similar_neighbors = neighbors if similar_error is None else []
            if similar_error is not None:
                result.branch_errors["similar"] = describe_error(similar_error)

        if summarize:
            await self._summarize(question, result)

        return result

    @staticmethod
    async def _capture(coro):
        try:
            return await coro, None
        except Exception as e:
            logger.warning(f"[PIPELINE] Similarity branch failed: {e}")
            return None, e

    def _compose(self, requested: RequestedMode, decision: ModeDecision, outcome: FallbackOutcome) -> AskResult:
        result = AskResult(
            mode_requested=requested,
            mode_classified=decision.classified,
            mode_used=outcome.mode_used,
            fallback_used=outcome.fallback_used,
            fallback=[e.to_dict() for e in outcome.events],
        )

        answer = outcome.tabular_result
        if isinstance(answer, TabularAnswer):
            result.rows = answer.rows
            result.query = answer.query
            result.notes = answer.notes

        if outcome.tabular_error is not None:
            result.branch_errors["tabular"] = describe_error(outcome.tabular_error)
            failed_query = getattr(outcome.tabular_error, "query", None)
            if failed_query and not result.query:
                result.query = failed_query

        if outcome.pattern_ran:
            result.pattern_rows = [e.to_dict() for e in outcome.pattern_edges or []]
            result.pattern_window_months = outcome.pattern_months
        if outcome.pattern_error is not None:
            result.branch_errors["pattern"] = describe_error(outcome.pattern_error)

        if outcome.mode_used == Mode.TABULAR and outcome.tabular_error is not None:
            result.error = result.branch_errors["tabular"]
        elif outcome.mode_used == Mode.PATTERN and outcome.pattern_error is not None:
            result.error = result.branch_errors["pattern"]

        return result

    async def _summarize(self, question: str, result: AskResult):
        sections = build_summary_sections(result, self.config)
        context = build_summary_context(question, sections)
        try:
            result.answer = await self.collaborator.summarize(context)
        except (CollaboratorError, asyncio.TimeoutError) as e:
            logger.error(f"[PIPELINE] Summarizer failed: {describe_error(e)}")
            result.summary_error = describe_error(e)
