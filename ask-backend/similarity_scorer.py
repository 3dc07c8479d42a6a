"""
Similarity Scorer
=================

Ranks experiments by attribute overlap with one focal experiment.

Score = number of comparable attributes (change type, changed element,
vertical, geo, brand, target metric) whose value equals the focal
experiment's value. Attributes the focal experiment leaves empty are not
compared. Only experiments scoring at least 1 are returned.

Order: score DESC, COALESCE("monthlyExtrap", 0) DESC, "id" ASC.

The score is computed in the database as a sum of CASE expressions; the
same overlap is recomputed in Python (shared_attributes) to label each
neighbor with the attributes it shares.
"""

import logging
from dataclasses import dataclass, field
from functools import reduce
from operator import add
from typing import Any, Dict, List, Optional

from sqlalchemy import case, desc, func, or_, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from config import PipelineConfig
from errors import ExecutionError
from executor import normalize_row
from experiment_schema import COMPARABLE_ATTRIBUTES, IMPACT_COLUMN, experiment_table

logger = logging.getLogger(__name__)

NEIGHBOR_COLUMNS = [
    "id",
    "experimentId",
    "testName",
    *COMPARABLE_ATTRIBUTES,
    "winningVar",
    "monthlyExtrap",
    "dateConcluded",
]


def _present(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def comparable_values(record: Dict[str, Any]) -> Dict[str, Any]:
    """The focal record's non-empty comparable attributes."""
    return {attr: record.get(attr) for attr in COMPARABLE_ATTRIBUTES if _present(record.get(attr))}


def shared_attributes(focal: Dict[str, Any], candidate: Dict[str, Any]) -> List[str]:
    """Attributes on which `candidate` equals `focal`, in scoring order."""
    values = comparable_values(focal)
    return [attr for attr, value in values.items() if candidate.get(attr) == value]


def overlap_score(focal: Dict[str, Any], candidate: Dict[str, Any]) -> int:
    return len(shared_attributes(focal, candidate))


@dataclass
class SimilarNeighbor:
    record: Dict[str, Any]
    score: int
    shared: List[str] = field(default_factory=list)

    @property
    def id(self) -> Any:
        return self.record.get("id")

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.record)
        out["score"] = self.score
        out["sharedAttributes"] = list(self.shared)
        return out


class SimilarityScorer:
    """Attribute-overlap neighbors for a focal experiment."""

    def __init__(self, engine: Engine, config: Optional[PipelineConfig] = None):
        self.engine = engine
        self.config = config or PipelineConfig()

    def fetch_focal(self, experiment_id: str) -> Optional[Dict[str, Any]]:
        """Look up the focal experiment by business id, then by primary key."""
        t = experiment_table
        stmt = (
            select(*(t.c[name] for name in NEIGHBOR_COLUMNS))
            .where(or_(t.c.experimentId == experiment_id, t.c.id == experiment_id))
            .order_by(case((t.c.experimentId == experiment_id, 0), else_=1), t.c.id)
            .limit(1)
        )
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).first()
        except SQLAlchemyError as e:
            raise ExecutionError(f"Focal experiment lookup failed: {e}", query=str(stmt)) from e
        return normalize_row(dict(row._mapping)) if row is not None else None

    def build_query(self, focal: Dict[str, Any], limit: int):
        t = experiment_table
        values = comparable_values(focal)
        if not values:
            return None

        conditions = [t.c[attr] == value for attr, value in values.items()]
        score = reduce(add, [case((cond, 1), else_=0) for cond in conditions]).label("score")

        return (
            select(*(t.c[name] for name in NEIGHBOR_COLUMNS), score)
            .where(t.c.id != focal.get("id"))
            .where(or_(*conditions))
            .order_by(desc(score), desc(func.coalesce(t.c[IMPACT_COLUMN], 0)), t.c.id)
            .limit(limit)
        )

    def neighbors(self, focal: Dict[str, Any], limit: Optional[int] = None) -> List[SimilarNeighbor]:
        limit = min(limit or self.config.similar_limit, self.config.similar_limit)
        stmt = self.build_query(focal, limit)
        if stmt is None:
            logger.info(f"[SIMILAR] Focal {focal.get('id')} has no comparable attributes")
            return []

        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            logger.error(f"[SIMILAR] Neighbor query failed: {e}")
            raise ExecutionError(f"Similarity query failed: {e}", query=str(stmt)) from e

        result = []
        for row in rows:
            record = normalize_row(dict(row._mapping))
            score = int(record.pop("score"))
            if score < 1:
                continue
            result.append(SimilarNeighbor(record=record, score=score, shared=shared_attributes(focal, record)))

        logger.info(f"[SIMILAR] {len(result)} neighbors for {focal.get('experimentId') or focal.get('id')}")
        return result

    def similar_to(self, experiment_id: str, limit: Optional[int] = None) -> Optional[Dict[str, Any]]:
        """
        Focal record, ranked neighbors and the relationship graph for one
        experiment; None when the experiment does not exist.
        """
        focal = self.fetch_focal(experiment_id)
        if focal is None:
            return None
        found = self.neighbors(focal, limit)
        return {
            "experiment": focal,
            "neighbors": [n.to_dict() for n in found],
            "graph": build_neighborhood_graph(focal, found),
        }


def build_neighborhood_graph(focal: Dict[str, Any], neighbors: List[SimilarNeighbor]) -> Dict[str, List[Dict[str, Any]]]:
    """
    {nodes, links} for a focal experiment: one node per non-empty attribute
    value and one per neighbor, linked back to the focal node.
    """
    focal_key = f"exp:{focal.get('id')}"
    nodes = [{
        "id": focal_key,
        "type": "experiment",
        "label": focal.get("testName") or focal.get("experimentId") or focal.get("id"),
        "focal": True,
    }]
    links = []

    for attr, value in comparable_values(focal).items():
        key = f"{attr}:{value}"
        nodes.append({"id": key, "type": attr, "label": value})
        links.append({"source": focal_key, "target": key, "type": attr})

    for neighbor in neighbors:
        key = f"exp:{neighbor.id}"
        nodes.append({
            "id": key,
            "type": "experiment",
            "label": neighbor.record.get("testName") or neighbor.record.get("experimentId") or neighbor.id,
            "focal": False,
        })
        links.append({
            "source": focal_key,
            "target": key,
            "type": "similar",
            "score": neighbor.score,
            "sharedAttributes": list(neighbor.shared),
        })

    return {"nodes": nodes, "links": links}
