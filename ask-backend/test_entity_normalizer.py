"""
Tests for identifier canonicalization, loose categorical filters and
question filter directives.
"""

import re
import unittest

from entity_normalizer import (
    FilterDirectives,
    canonicalize_identifiers,
    describe_directives,
    extract_filter_directives,
    loosen_categorical_filters,
)


class TestCanonicalizeIdentifiers(unittest.TestCase):

    def test_table_and_columns(self):
        self.assertEqual(
            canonicalize_identifiers("SELECT testname, changetype FROM experiments"),
            'SELECT "testName", "changeType" FROM "Experiment"',
        )

    def test_schema_qualified_table(self):
        self.assertEqual(
            canonicalize_identifiers("SELECT * FROM public.experiment"),
            'SELECT * FROM public."Experiment"',
        )

    def test_already_canonical_unchanged(self):
        sql = 'SELECT "testName", "experimentId" FROM "Experiment"'
        self.assertEqual(canonicalize_identifiers(sql), sql)

    def test_longest_alias_wins(self):
        self.assertEqual(
            canonicalize_identifiers("SELECT experimentid FROM experiment"),
            'SELECT "experimentId" FROM "Experiment"',
        )

    def test_owner_maps_to_launched_by(self):
        self.assertEqual(
            canonicalize_identifiers("SELECT testname FROM experiment WHERE owner ILIKE '%Sam%' OR ownername IS NULL"),
            'SELECT "testName" FROM "Experiment" WHERE "launchedBy" ILIKE \'%Sam%\' OR "launchedBy" IS NULL',
        )

    def test_unknown_identifier_passes_through(self):
        self.assertEqual(
            canonicalize_identifiers("SELECT foo FROM experiment"),
            'SELECT foo FROM "Experiment"',
        )

    def test_literals_masked(self):
        sql = "SELECT * FROM experiment WHERE hypothesis ILIKE '%vertical geo testname%'"
        self.assertEqual(
            canonicalize_identifiers(sql),
            "SELECT * FROM \"Experiment\" WHERE \"hypothesis\" ILIKE '%vertical geo testname%'",
        )

    def test_quoted_uuid_becomes_id(self):
        self.assertEqual(
            canonicalize_identifiers('SELECT "uuid" FROM "Experiment"'),
            'SELECT "id" FROM "Experiment"',
        )

    def test_empty(self):
        self.assertEqual(canonicalize_identifiers(""), "")


class TestLooseCategoricalFilters(unittest.TestCase):

    EXACT_EQUALITY = re.compile(r'"(vertical|geo|tradingHub)"\s*=\s*\'', re.IGNORECASE)

    def test_no_exact_equality_survives(self):
        queries = [
            "SELECT * FROM \"Experiment\" WHERE \"vertical\" = 'Solar'",
            "SELECT * FROM \"Experiment\" WHERE vertical='Solar' AND geo = 'UK'",
            "SELECT * FROM \"Experiment\" WHERE UPPER(\"geo\") = UPPER('uk')",
            "SELECT * FROM \"Experiment\" e WHERE e.\"tradingHub\" = 'EMEA'",
        ]
        for sql in queries:
            with self.subTest(sql=sql):
                rewritten = loosen_categorical_filters(sql)
                self.assertIsNone(self.EXACT_EQUALITY.search(rewritten))
                self.assertIn("ILIKE", rewritten)

    def test_qualifier_preserved(self):
        self.assertEqual(
            loosen_categorical_filters("SELECT * FROM \"Experiment\" e WHERE e.\"tradingHub\" = 'EMEA'"),
            "SELECT * FROM \"Experiment\" e WHERE e.\"tradingHub\" ILIKE '%EMEA%'",
        )

    def test_underscores_and_wildcards_normalized(self):
        self.assertEqual(
            loosen_categorical_filters("WHERE \"vertical\" = '%heat_pumps%'"),
            "WHERE \"vertical\" ILIKE '%heat pumps%'",
        )

    def test_quote_in_value_escaped(self):
        self.assertEqual(
            loosen_categorical_filters("WHERE \"vertical\" = 'Solar''s'"),
            "WHERE \"vertical\" ILIKE '%Solar''s%'",
        )

    def test_single_item_in_list(self):
        self.assertEqual(
            loosen_categorical_filters("WHERE \"geo\" IN ('UK')"),
            "WHERE \"geo\" ILIKE '%UK%'",
        )

    def test_other_literals_restored(self):
        sql = "WHERE \"testName\" = 'vertical = x' AND \"geo\" = 'DK'"
        self.assertEqual(
            loosen_categorical_filters(sql),
            "WHERE \"testName\" = 'vertical = x' AND \"geo\" ILIKE '%DK%'",
        )

    def test_non_loose_column_untouched(self):
        sql = "WHERE \"brand\" = 'Acme'"
        self.assertEqual(loosen_categorical_filters(sql), sql)

    def test_idempotent(self):
        once = loosen_categorical_filters("WHERE \"vertical\" = 'Solar' OR geo IN ('UK', 'DK')")
        self.assertEqual(loosen_categorical_filters(once), once)


class TestFilterDirectives(unittest.TestCase):

    def test_full_question(self):
        directives = extract_filter_directives(
            "Which CTA tests failed on Solar in the UK over the last 6 months?"
        )
        self.assertEqual(
            directives,
            FilterDirectives(vertical="Solar", geo="UK", only_failed=True, only_winners=False, months_back=6),
        )

    def test_winners(self):
        directives = extract_filter_directives("Show winning heat pump experiments")
        self.assertTrue(directives.only_winners)
        self.assertFalse(directives.only_failed)
        self.assertEqual(directives.vertical, "Heat Pump")

    def test_contradictory_outcomes_cancel(self):
        directives = extract_filter_directives("Compare winners and failed experiments")
        self.assertFalse(directives.only_failed)
        self.assertFalse(directives.only_winners)

    def test_lowercase_geo_in_prose_ignored(self):
        directives = extract_filter_directives("show us what worked")
        self.assertIsNone(directives.geo)

    def test_window_in_years(self):
        self.assertEqual(extract_filter_directives("patterns in the past 2 years").months_back, 24)

    def test_window_in_weeks_rounds_up(self):
        self.assertEqual(extract_filter_directives("tests from the last 3 weeks").months_back, 1)

    def test_no_window(self):
        self.assertIsNone(extract_filter_directives("all tests ever").months_back)

    def test_empty_question(self):
        self.assertEqual(extract_filter_directives(""), FilterDirectives())

    def test_describe(self):
        parts = describe_directives(FilterDirectives(vertical="Solar", only_failed=True, months_back=6))
        self.assertEqual(parts, ["vertical~Solar", "failed only", "last 6 months"])


if __name__ == "__main__":
    unittest.main()
