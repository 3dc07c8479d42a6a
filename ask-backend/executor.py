"""
Query Executor
Runs guarded queries against the experiment store and normalizes the
returned scalars so every row is JSON-safe.
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from errors import ExecutionError
from query_sanitizer import Dialect

logger = logging.getLogger(__name__)

# Largest integer a JSON consumer can hold without losing precision.
MAX_SAFE_INTEGER = 2 ** 53


def normalize_value(value: Any) -> Any:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return str(value) if abs(value) > MAX_SAFE_INTEGER else value
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Decimal):
        if not value.is_finite():
            return None
        if value == value.to_integral_value() and abs(value) <= MAX_SAFE_INTEGER:
            return int(value)
        return float(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, memoryview):
        return value.tobytes().hex()
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    if isinstance(value, dict):
        return {k: normalize_value(v) for k, v in value.items()}
    return str(value)


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    return {key: normalize_value(value) for key, value in row.items()}


@dataclass
class ExecutionResult:
    """Rows from one executed query."""
    query: str
    rows: List[Dict[str, Any]] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        return len(self.rows)


class RelationshipStore:
    """
    Optional collaborator for the relationship (Cypher) dialect.

    Implementations return a list of plain dicts for a read-only query.
    """

    def run(self, query: str) -> List[Dict[str, Any]]:
        raise NotImplementedError


class QueryExecutor:
    """Executes guarded queries; one shared engine, safe for concurrent reads."""

    def __init__(self, engine: Engine, relationship_store: Optional[RelationshipStore] = None):
        self.engine = engine
        self.relationship_store = relationship_store

    def execute(self, query: str, dialect: Dialect = Dialect.SQL) -> ExecutionResult:
        if dialect == Dialect.CYPHER:
            return self._execute_cypher(query)
        return self._execute_sql(query)

    def _execute_sql(self, sql: str) -> ExecutionResult:
        try:
            with self.engine.connect() as conn:
                # Raw driver execution: the query carries its own literals, and
                # ':name' or '%' inside them must not be read as bind markers.
                result = conn.exec_driver_sql(
                    sql, execution_options={"no_parameters": True}
                )
                columns = list(result.keys())
                rows = [normalize_row(dict(row._mapping)) for row in result.fetchall()]
        except SQLAlchemyError as e:
            raise ExecutionError(_describe_failure(e), query=sql) from e

        logger.info(f"[EXECUTOR] Query executed: {len(rows)} rows returned")
        return ExecutionResult(query=sql, rows=rows, columns=columns)

    def _execute_cypher(self, query: str) -> ExecutionResult:
        if self.relationship_store is None:
            raise ExecutionError("No relationship store is configured for Cypher queries", query=query)
        try:
            raw_rows = self.relationship_store.run(query)
        except ExecutionError:
            raise
        except Exception as e:
            raise ExecutionError(f"Relationship store error: {e}", query=query) from e

        rows = [normalize_row(dict(r)) for r in raw_rows or []]
        columns = list(rows[0].keys()) if rows else []
        logger.info(f"[EXECUTOR] Cypher query executed: {len(rows)} rows returned")
        return ExecutionResult(query=query, rows=rows, columns=columns)


def _describe_failure(error: SQLAlchemyError) -> str:
    """Driver message plus a hint for the common proposer mistakes."""
    orig = getattr(error, "orig", None)
    message = str(orig) if orig is not None else str(error)
    message = message.strip().splitlines()[0] if message.strip() else error.__class__.__name__
    lowered = message.lower()

    if ("relation" in lowered and "does not exist" in lowered) or "no such table" in lowered:
        hint = 'Reference the table as "Experiment" (double-quoted).'
    elif ("column" in lowered and "does not exist" in lowered) or "no such column" in lowered:
        hint = 'camelCase columns must be double-quoted, e.g. "testName".'
    else:
        hint = ""

    logger.error(f"[EXECUTOR] Query execution failed: {message}")
    return f"{message}. {hint}".strip() if hint else message


def create_executor(database_url: str, relationship_store: Optional[RelationshipStore] = None) -> QueryExecutor:
    engine = create_engine(database_url, pool_pre_ping=True)
    return QueryExecutor(engine, relationship_store)
