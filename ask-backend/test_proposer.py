"""
Tests for proposer output parsing and prompt construction.
"""

import unittest

from errors import ProposalParseError
from proposer import (
    build_pattern_prompt,
    build_summary_context,
    build_tabular_prompt,
    extract_first_json_object,
    parse_proposal,
)
from query_sanitizer import Dialect


class TestExtractFirstJsonObject(unittest.TestCase):

    def test_object_in_prose(self):
        text = 'Sure! Here it is: {"query": "SELECT 1", "notes": "ok"} Hope this helps {not json}'
        self.assertEqual(extract_first_json_object(text), '{"query": "SELECT 1", "notes": "ok"}')

    def test_braces_inside_strings_ignored(self):
        text = '{"query": "SELECT 1", "notes": "a } brace and a { brace"}'
        self.assertEqual(extract_first_json_object(text), text)

    def test_escaped_quote_inside_string(self):
        text = 'x {"notes": "say \\"hi}\\"", "query": "SELECT 1"} y'
        self.assertEqual(extract_first_json_object(text), '{"notes": "say \\"hi}\\"", "query": "SELECT 1"}')

    def test_nested_object(self):
        text = '{"query": "SELECT 1", "meta": {"tables": ["Experiment"]}}'
        self.assertEqual(extract_first_json_object(text), text)

    def test_unclosed_brace_skipped(self):
        text = 'The set {a, b and then {"query": "SELECT 2"}'
        self.assertEqual(extract_first_json_object(text), '{"query": "SELECT 2"}')

    def test_none(self):
        self.assertIsNone(extract_first_json_object("no json here"))
        self.assertIsNone(extract_first_json_object(""))


class TestParseProposal(unittest.TestCase):

    def test_fenced_json(self):
        proposal = parse_proposal('```json\n{"query": "SELECT * FROM \\"Experiment\\"", "notes": "all rows"}\n```')
        self.assertEqual(proposal.query, 'SELECT * FROM "Experiment"')
        self.assertEqual(proposal.notes, "all rows")
        self.assertEqual(proposal.dialect, Dialect.SQL)

    def test_sql_key_accepted(self):
        self.assertEqual(parse_proposal('{"sql": "SELECT 1"}').query, "SELECT 1")

    def test_raw_newline_inside_string(self):
        proposal = parse_proposal('{"query": "SELECT *\nFROM \\"Experiment\\""}')
        self.assertEqual(proposal.query, 'SELECT *\nFROM "Experiment"')

    def test_cypher_dialect(self):
        proposal = parse_proposal('{"query": "MATCH (e) RETURN e", "dialect": "Cypher"}')
        self.assertEqual(proposal.dialect, Dialect.CYPHER)

    def test_unknown_dialect_falls_back_to_default(self):
        proposal = parse_proposal('{"query": "SELECT 1", "dialect": "mysql"}')
        self.assertEqual(proposal.dialect, Dialect.SQL)

    def test_non_string_notes(self):
        proposal = parse_proposal('{"query": "SELECT 1", "notes": ["a", "b"]}')
        self.assertEqual(proposal.notes, '["a", "b"]')

    def test_no_json(self):
        with self.assertRaises(ProposalParseError) as ctx:
            parse_proposal("I cannot answer that.")
        self.assertEqual(ctx.exception.query, "I cannot answer that.")

    def test_missing_query(self):
        with self.assertRaises(ProposalParseError):
            parse_proposal('{"notes": "nothing to run"}')

    def test_blank_query(self):
        with self.assertRaises(ProposalParseError):
            parse_proposal('{"query": "   "}')

    def test_invalid_json(self):
        with self.assertRaises(ProposalParseError):
            parse_proposal("{'query': 'SELECT 1'}")


class TestPrompts(unittest.TestCase):

    def test_tabular_prompt(self):
        prompt = build_tabular_prompt("Which CTA tests won?")
        self.assertIn("Question: Which CTA tests won?", prompt)
        self.assertIn('"Experiment"', prompt)
        self.assertIn("monthlyExtrap", prompt)

    def test_pattern_prompt_asks_for_rows(self):
        prompt = build_pattern_prompt("Patterns across verticals")
        self.assertIn("no GROUP BY", prompt)
        self.assertIn("Question: Patterns across verticals", prompt)

    def test_summary_context(self):
        context = build_summary_context("Q?", [
            {"title": "Row Results", "body": "Query used: SELECT 1"},
            {"title": "Top Winners (1)", "data": [{"testName": "A"}]},
        ])
        self.assertTrue(context.startswith("Question: Q?"))
        self.assertIn("## Row Results\nQuery used: SELECT 1", context)
        self.assertIn('"testName": "A"', context)


if __name__ == "__main__":
    unittest.main()
