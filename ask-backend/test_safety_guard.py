"""
Tests for the read-only safety guard.
"""

import re
import unittest

from errors import ValidationError
from query_sanitizer import Dialect, QuerySanitizer
from safety_guard import FORBIDDEN_VERBS, SafetyGuard, check_query, enforce_read_only


class TestSafetyGuardSql(unittest.TestCase):

    def setUp(self):
        self.guard = SafetyGuard()

    # --- accepted ---

    def test_plain_select_passes(self):
        result = self.guard.check('SELECT * FROM "Experiment" LIMIT 10')
        self.assertTrue(result.passed)
        self.assertIsNone(result.reason)

    def test_subquery_passes(self):
        sql = 'SELECT * FROM "Experiment" WHERE "id" IN (SELECT "id" FROM "Experiment") LIMIT 10'
        self.assertTrue(self.guard.check(sql).passed)

    def test_column_containing_verb_passes(self):
        self.assertTrue(self.guard.check('SELECT "updatedAt" FROM "Experiment" LIMIT 5').passed)

    def test_lowercase_select_passes(self):
        self.assertTrue(self.guard.check('select "testName" from "Experiment" limit 5').passed)

    # --- rejected ---

    def test_empty_rejected(self):
        result = self.guard.check("   ")
        self.assertFalse(result.passed)
        self.assertEqual(result.reason, "Empty query")

    def test_delete_rejected(self):
        result = self.guard.check('DELETE FROM "Experiment"')
        self.assertFalse(result.passed)
        self.assertEqual(result.reason, "Only SELECT queries are allowed")

    def test_cte_rejected(self):
        result = self.guard.check('WITH x AS (SELECT 1) SELECT * FROM x')
        self.assertFalse(result.passed)
        self.assertIn("Only SELECT", result.reason)

    def test_second_statement_rejected(self):
        result = self.guard.check('SELECT * FROM "Experiment"; DROP TABLE "Experiment"')
        self.assertFalse(result.passed)
        self.assertEqual(result.reason, "Multiple statements are not allowed")

    def test_trailing_semicolon_rejected(self):
        self.assertFalse(self.guard.check('SELECT * FROM "Experiment";').passed)

    def test_forbidden_word_inside_literal_rejected(self):
        result = self.guard.check("SELECT * FROM \"Experiment\" WHERE \"testName\" ILIKE '%delete me%'")
        self.assertFalse(result.passed)
        self.assertEqual(result.reason, "Forbidden keyword: DELETE")

    def test_select_into_rejected(self):
        result = self.guard.check('SELECT * INTO backup FROM "Experiment"')
        self.assertFalse(result.passed)
        self.assertEqual(result.reason, "Forbidden keyword: INTO")

    def test_union_rejected(self):
        result = self.guard.check('SELECT "id" FROM "Experiment" UNION SELECT "id" FROM "Experiment"')
        self.assertFalse(result.passed)
        self.assertEqual(result.reason, "Compound statements are not allowed")

    def test_enforce_raises_with_query(self):
        with self.assertRaises(ValidationError) as ctx:
            self.guard.enforce('DROP TABLE "Experiment"')
        self.assertEqual(ctx.exception.query, 'DROP TABLE "Experiment"')
        self.assertIn("Only SELECT", ctx.exception.to_detail())

    def test_enforce_returns_stripped_query(self):
        self.assertEqual(
            enforce_read_only('  SELECT 1 FROM "Experiment" LIMIT 1  '),
            'SELECT 1 FROM "Experiment" LIMIT 1',
        )


class TestSafetyGuardCypher(unittest.TestCase):

    def test_match_passes(self):
        self.assertTrue(check_query("MATCH (e:Experiment) RETURN e LIMIT 5", Dialect.CYPHER).passed)

    def test_select_is_not_cypher(self):
        result = check_query('SELECT * FROM "Experiment"', Dialect.CYPHER)
        self.assertFalse(result.passed)
        self.assertEqual(result.reason, "Only MATCH queries are allowed")

    def test_set_rejected(self):
        result = check_query("MATCH (e) SET e.promoted = true", Dialect.CYPHER)
        self.assertFalse(result.passed)
        self.assertEqual(result.reason, "Forbidden clause: SET")

    def test_detach_delete_rejected(self):
        self.assertFalse(check_query("MATCH (e) DETACH DELETE e", Dialect.CYPHER).passed)

    def test_load_csv_rejected(self):
        result = check_query("MATCH (e) WITH e LOAD CSV FROM 'x' AS row RETURN row", Dialect.CYPHER)
        self.assertFalse(result.passed)


class TestSanitizedQueriesAreSafe(unittest.TestCase):
    """Whatever passes the guard starts with SELECT and has no forbidden verb."""

    CANDIDATES = [
        "SELECT * FROM experiment",
        "```sql\nSELECT testname FROM experiment WHERE vertical = 'Solar';\n```",
        "SELECT * FROM experiment; DELETE FROM experiment",
        "UPDATE experiment SET promoted = true",
        "SELECT * FROM experiment WHERE testname ILIKE '%drop table%'",
        "WITH recent AS (SELECT * FROM experiment) SELECT * FROM recent",
    ]

    def test_passed_queries_are_read_only(self):
        sanitizer = QuerySanitizer()
        guard = SafetyGuard()
        verbs = re.compile(r"\b(" + "|".join(FORBIDDEN_VERBS) + r")\s", re.IGNORECASE)
        passed = 0
        for candidate in self.CANDIDATES:
            with self.subTest(candidate=candidate):
                sql = sanitizer.sanitize(candidate).sql
                result = guard.check(sql)
                if result.passed:
                    passed += 1
                    self.assertTrue(result.query.upper().startswith("SELECT"))
                    self.assertIsNone(verbs.search(result.query))
                    self.assertNotIn(";", result.query)
        self.assertEqual(passed, 2)


if __name__ == "__main__":
    unittest.main()
