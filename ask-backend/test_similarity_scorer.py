"""
Tests for attribute-overlap similarity, against an in-memory SQLite store.
"""

import unittest
from datetime import datetime

from config import PipelineConfig
from similarity_scorer import (
    SimilarityScorer,
    build_neighborhood_graph,
    comparable_values,
    overlap_score,
    shared_attributes,
)
from store_fixtures import create_store_engine, experiment, insert_experiments


class TestOverlap(unittest.TestCase):

    def test_empty_focal_attributes_not_compared(self):
        focal = {"changeType": "CTA", "vertical": "Solar", "geo": "", "brand": None}
        self.assertEqual(comparable_values(focal), {"changeType": "CTA", "vertical": "Solar"})
        self.assertEqual(overlap_score(focal, {"geo": "", "brand": None}), 0)

    def test_shared_attributes_in_scoring_order(self):
        focal = {"changeType": "CTA", "vertical": "Solar", "geo": "UK"}
        candidate = {"changeType": "CTA", "vertical": "Solar", "geo": "DK"}
        self.assertEqual(shared_attributes(focal, candidate), ["changeType", "vertical"])


class TestSimilarityScorer(unittest.TestCase):

    def setUp(self):
        self.engine = create_store_engine()
        self.scorer = SimilarityScorer(self.engine, PipelineConfig(similar_limit=6))
        insert_experiments(self.engine, [
            experiment("focal", experimentId="EXP-1", testName="Solar CTA", changeType="CTA", vertical="Solar"),
            experiment("vertical-only", testName="Solar copy", changeType="Copy", vertical="Solar"),
            experiment("both", testName="Solar CTA again", changeType="CTA", vertical="Solar",
                       dateConcluded=datetime(2026, 1, 5)),
            experiment("nothing", testName="Boiler copy", changeType="Copy", vertical="Boiler"),
        ])

    def test_scores_and_exclusions(self):
        focal = self.scorer.fetch_focal("EXP-1")
        neighbors = self.scorer.neighbors(focal)
        self.assertEqual([(n.id, n.score) for n in neighbors], [("both", 2), ("vertical-only", 1)])
        self.assertEqual(neighbors[0].shared, ["changeType", "vertical"])
        self.assertEqual(neighbors[1].shared, ["vertical"])

    def test_focal_by_primary_key(self):
        focal = self.scorer.fetch_focal("focal")
        self.assertEqual(focal["experimentId"], "EXP-1")

    def test_unknown_focal(self):
        self.assertIsNone(self.scorer.fetch_focal("EXP-404"))
        self.assertIsNone(self.scorer.similar_to("EXP-404"))

    def test_neighbor_rows_are_normalized(self):
        result = self.scorer.similar_to("EXP-1")
        both = result["neighbors"][0]
        self.assertEqual(both["dateConcluded"], "2026-01-05T00:00:00")
        self.assertEqual(both["score"], 2)
        self.assertEqual(both["sharedAttributes"], ["changeType", "vertical"])

    def test_tie_broken_by_impact_then_id(self):
        insert_experiments(self.engine, [
            experiment("b-high", changeType="Layout", vertical="Solar", monthlyExtrap=900.0),
            experiment("a-none", changeType="Layout", vertical="Solar"),
        ])
        focal = self.scorer.fetch_focal("EXP-1")
        ids = [n.id for n in self.scorer.neighbors(focal) if n.score == 1]
        self.assertEqual(ids, ["b-high", "a-none", "vertical-only"])

    def test_limit_capped_by_config(self):
        insert_experiments(self.engine, [
            experiment(f"extra-{i}", changeType="CTA", vertical="Boiler") for i in range(10)
        ])
        focal = self.scorer.fetch_focal("EXP-1")
        self.assertEqual(len(self.scorer.neighbors(focal, limit=50)), 6)
        self.assertEqual(len(self.scorer.neighbors(focal, limit=2)), 2)

    def test_focal_without_comparable_attributes(self):
        insert_experiments(self.engine, [experiment("bare", experimentId="EXP-BARE")])
        focal = self.scorer.fetch_focal("EXP-BARE")
        self.assertEqual(self.scorer.neighbors(focal), [])

    def test_graph(self):
        result = self.scorer.similar_to("EXP-1")
        graph = result["graph"]
        node_ids = [n["id"] for n in graph["nodes"]]
        self.assertEqual(
            node_ids,
            ["exp:focal", "changeType:CTA", "vertical:Solar", "exp:both", "exp:vertical-only"],
        )
        similar_links = [l for l in graph["links"] if l["type"] == "similar"]
        self.assertEqual([l["score"] for l in similar_links], [2, 1])
        self.assertTrue(all(l["source"] == "exp:focal" for l in graph["links"]))

    def test_graph_without_neighbors(self):
        graph = build_neighborhood_graph({"id": "x", "geo": "UK"}, [])
        self.assertEqual(len(graph["nodes"]), 2)
        self.assertEqual(graph["links"], [{"source": "exp:x", "target": "geo:UK", "type": "geo"}])


if __name__ == "__main__":
    unittest.main()
