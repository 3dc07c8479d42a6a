"""
Tests for query execution and result normalization.
"""

import math
import unittest
import uuid
from datetime import date, datetime
from decimal import Decimal

from errors import ExecutionError
from executor import QueryExecutor, RelationshipStore, normalize_row, normalize_value
from query_sanitizer import Dialect
from store_fixtures import create_store_engine, experiment, insert_experiments


class TestNormalizeValue(unittest.TestCase):

    def test_decimals(self):
        self.assertEqual(normalize_value(Decimal("3")), 3)
        self.assertIsInstance(normalize_value(Decimal("3.00")), int)
        self.assertEqual(normalize_value(Decimal("1.50")), 1.5)
        self.assertIsNone(normalize_value(Decimal("NaN")))

    def test_big_integers_become_strings(self):
        self.assertEqual(normalize_value(2 ** 60), "1152921504606846976")
        self.assertEqual(normalize_value(2 ** 53), 2 ** 53)

    def test_non_finite_floats(self):
        self.assertIsNone(normalize_value(float("inf")))
        self.assertIsNone(normalize_value(math.nan))
        self.assertEqual(normalize_value(0.25), 0.25)

    def test_temporal_values(self):
        self.assertEqual(normalize_value(datetime(2026, 1, 2, 3, 4, 5)), "2026-01-02T03:04:05")
        self.assertEqual(normalize_value(date(2026, 1, 2)), "2026-01-02")

    def test_misc(self):
        value = uuid.UUID("12345678-1234-5678-1234-567812345678")
        self.assertEqual(normalize_value(value), "12345678-1234-5678-1234-567812345678")
        self.assertEqual(normalize_value(b"\x01\xff"), "01ff")
        self.assertIs(normalize_value(True), True)
        self.assertEqual(normalize_value([Decimal("2"), None]), [2, None])

    def test_row(self):
        self.assertEqual(
            normalize_row({"monthlyExtrap": Decimal("10.5"), "dateConcluded": date(2026, 1, 1)}),
            {"monthlyExtrap": 10.5, "dateConcluded": "2026-01-01"},
        )


class TestQueryExecutor(unittest.TestCase):

    def setUp(self):
        self.engine = create_store_engine()
        insert_experiments(self.engine, [
            experiment("e1", testName="Rate :x banner", monthlyExtrap=120.0,
                       dateConcluded=datetime(2026, 1, 10)),
            experiment("e2", testName="100% sure", monthlyExtrap=None),
        ])
        self.executor = QueryExecutor(self.engine)

    def test_rows_and_columns(self):
        result = self.executor.execute(
            'SELECT "testName", "monthlyExtrap" FROM "Experiment" ORDER BY "id" LIMIT 10'
        )
        self.assertEqual(result.columns, ["testName", "monthlyExtrap"])
        self.assertEqual(result.row_count, 2)
        self.assertEqual(result.rows[0], {"testName": "Rate :x banner", "monthlyExtrap": 120.0})

    def test_bind_markers_in_literals_are_text(self):
        result = self.executor.execute(
            "SELECT \"id\" FROM \"Experiment\" WHERE \"testName\" LIKE '%:x%' OR \"testName\" LIKE '100%' LIMIT 10"
        )
        self.assertEqual(sorted(r["id"] for r in result.rows), ["e1", "e2"])

    def test_unknown_column_hint(self):
        with self.assertRaises(ExecutionError) as ctx:
            self.executor.execute('SELECT nonexistent FROM "Experiment" LIMIT 1')
        self.assertIn("no such column", ctx.exception.message)
        self.assertIn("double-quoted", ctx.exception.message)
        self.assertEqual(ctx.exception.query, 'SELECT nonexistent FROM "Experiment" LIMIT 1')

    def test_unknown_table_hint(self):
        with self.assertRaises(ExecutionError) as ctx:
            self.executor.execute("SELECT * FROM missing_table LIMIT 1")
        self.assertIn('Reference the table as "Experiment"', ctx.exception.message)

    def test_cypher_without_store(self):
        with self.assertRaises(ExecutionError):
            self.executor.execute("MATCH (e) RETURN e LIMIT 5", Dialect.CYPHER)

    def test_cypher_with_store(self):
        class FakeStore(RelationshipStore):
            def run(self, query):
                return [{"changeType": "CTA", "count": Decimal("4")}]

        executor = QueryExecutor(self.engine, FakeStore())
        result = executor.execute("MATCH (e) RETURN e.changeType, count(*) LIMIT 5", Dialect.CYPHER)
        self.assertEqual(result.rows, [{"changeType": "CTA", "count": 4}])
        self.assertEqual(result.columns, ["changeType", "count"])

    def test_cypher_store_failure_wrapped(self):
        class BrokenStore(RelationshipStore):
            def run(self, query):
                raise RuntimeError("connection refused")

        executor = QueryExecutor(self.engine, BrokenStore())
        with self.assertRaises(ExecutionError) as ctx:
            executor.execute("MATCH (e) RETURN e LIMIT 5", Dialect.CYPHER)
        self.assertIn("connection refused", ctx.exception.message)


if __name__ == "__main__":
    unittest.main()
