"""
Experiment store for tests: a SQLite engine built from the same Table
definition the aggregator and scorer query.

In-memory by default (one shared connection). Pass a file path when the
code under test reads from several threads at once; a file database gives
each thread its own connection.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from experiment_schema import experiment_table, metadata

FIXED_NOW = datetime(2026, 6, 1, 12, 0, 0)


def create_store_engine(path: Optional[str] = None):
    if path:
        engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            "sqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    metadata.create_all(engine)
    return engine


def insert_experiments(engine, rows: List[Dict[str, Any]]):
    with engine.begin() as conn:
        conn.execute(experiment_table.insert(), rows)


def experiment(exp_id: str, **fields) -> Dict[str, Any]:
    """Row dict with every column present (NULL unless given)."""
    row = {c.name: None for c in experiment_table.columns}
    row["id"] = exp_id
    row["experimentId"] = fields.pop("experimentId", exp_id.upper())
    row.update(fields)
    return row
