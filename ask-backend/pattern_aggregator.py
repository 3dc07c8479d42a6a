"""
Pattern Aggregator
==================

Co-occurrence counts between change type and changed element:

    SELECT "changeType", "elementChanged", COUNT(*) AS "experimentCount"
    FROM "Experiment"
    WHERE <time window> AND <both attributes non-empty> AND <optional filters>
    GROUP BY "changeType", "elementChanged"
    HAVING NOT (lower("changeType") = 'other' AND lower("elementChanged") = 'other')
    ORDER BY "experimentCount" DESC
    LIMIT <cap>

Time window: concluded or launched within N months, or both dates unknown
(undated experiments are included by default).

Outcome filters: "failed" means no winning variant (winningVar NULL or
empty). Significance and metric thresholds are deliberately not part of
the definition.

The statement is built with SQLAlchemy Core so identifiers are quoted by
the dialect and filter values are bound parameters.
"""

import calendar
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, desc, func, not_, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql import Select

from config import PipelineConfig
from entity_normalizer import FilterDirectives, describe_directives
from errors import ExecutionError
from experiment_schema import PATTERN_PAIR, experiment_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternEdge:
    """(change type, changed element, occurrence count)"""
    change_type: str
    element_changed: str
    experiment_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "changeType": self.change_type,
            "elementChanged": self.element_changed,
            "experimentCount": self.experiment_count,
        }


@dataclass
class PatternAggregation:
    """
    Edges plus how they were obtained.

    Attributes:
        edges: Aggregated edges, count descending
        months_back: Window the edges were computed over
        widened: The window was expanded after an empty first attempt
        filters: Filters applied
    """
    edges: List[PatternEdge] = field(default_factory=list)
    months_back: int = 0
    widened: bool = False
    filters: FilterDirectives = field(default_factory=FilterDirectives)

    @property
    def edge_count(self) -> int:
        return len(self.edges)

    def to_rows(self) -> List[Dict[str, Any]]:
        return [edge.to_dict() for edge in self.edges]


def months_before(moment: datetime, months: int) -> datetime:
    """Same day-of-month `months` earlier, clamped to the month's last day."""
    total = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


class PatternAggregator:
    """Builds and runs the co-occurrence aggregation."""

    def __init__(
        self,
        engine: Engine,
        config: Optional[PipelineConfig] = None,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.engine = engine
        self.config = config or PipelineConfig()
        self._now = now or datetime.now

    def build_query(
        self,
        filters: Optional[FilterDirectives] = None,
        months_back: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> Select:
        filters = filters or FilterDirectives()
        months_back = months_back or self.config.pattern_window_months
        limit = min(limit or self.config.pattern_limit, self.config.pattern_limit)

        t = experiment_table
        first, second = (t.c[name] for name in PATTERN_PAIR)
        cutoff = months_before(self._now(), months_back)

        conditions = [
            or_(
                t.c.dateConcluded >= cutoff,
                t.c.dateLaunched >= cutoff,
                and_(t.c.dateConcluded.is_(None), t.c.dateLaunched.is_(None)),
            ),
            first.isnot(None),
            first != "",
            second.isnot(None),
            second != "",
        ]

        if filters.vertical:
            conditions.append(t.c.vertical.ilike(f"%{filters.vertical}%"))
        if filters.geo:
            conditions.append(t.c.geo.ilike(f"%{filters.geo}%"))

        # Contradictory outcome filters cancel out.
        if filters.only_failed and not filters.only_winners:
            conditions.append(or_(t.c.winningVar.is_(None), t.c.winningVar == ""))
        elif filters.only_winners and not filters.only_failed:
            conditions.append(and_(t.c.winningVar.isnot(None), t.c.winningVar != ""))

        count = func.count().label("experimentCount")
        return (
            select(first.label("changeType"), second.label("elementChanged"), count)
            .where(and_(*conditions))
            .group_by(first, second)
            .having(not_(and_(func.lower(first) == "other", func.lower(second) == "other")))
            .order_by(desc(count), first, second)
            .limit(limit)
        )

    def aggregate(
        self,
        filters: Optional[FilterDirectives] = None,
        months_back: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> List[PatternEdge]:
        stmt = self.build_query(filters, months_back, limit)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            logger.error(f"[PATTERNS] Aggregation failed: {e}")
            raise ExecutionError(f"Pattern aggregation failed: {e}", query=str(stmt)) from e

        edges = [
            PatternEdge(
                change_type=row.changeType,
                element_changed=row.elementChanged,
                experiment_count=int(row.experimentCount),
            )
            for row in rows
        ]
        logger.info(
            f"[PATTERNS] {len(edges)} edges over {months_back or self.config.pattern_window_months} months"
            f" ({', '.join(describe_directives(filters or FilterDirectives())) or 'no filters'})"
        )
        return edges

    def aggregate_with_retry(
        self,
        filters: Optional[FilterDirectives] = None,
        limit: Optional[int] = None,
    ) -> PatternAggregation:
        """
        Aggregate over the requested window; on zero edges retry once over
        the expanded window before reporting an empty result.
        """
        filters = filters or FilterDirectives()
        months_back = filters.months_back or self.config.pattern_window_months

        edges = self.aggregate(filters, months_back, limit)
        if edges or months_back >= self.config.expanded_window_months:
            return PatternAggregation(edges=edges, months_back=months_back, filters=filters)

        expanded = self.config.expanded_window_months
        logger.info(f"[PATTERNS] No edges in {months_back} months, retrying with {expanded}")
        edges = self.aggregate(filters, expanded, limit)
        return PatternAggregation(edges=edges, months_back=expanded, widened=True, filters=filters)
