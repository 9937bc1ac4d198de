"""Tests for the falsifiability, competition and knowledge-gap analyzers."""

from __future__ import annotations

import pytest

from asrgot.analysis import (
    FalsifiabilityValidator,
    HypothesisCompetitionFramework,
    KnowledgeGapDetector,
)
from asrgot.engine.graph import Edge, Node


class TestFalsifiability:
    def test_missing_criteria_reported(self, small_graph):
        report = FalsifiabilityValidator().validate(small_graph)
        assert report.valid is False
        assert report.checked == 2
        assert report.missing == ["3.1.2"]
        assert report.issues == ["Hypothesis '3.1.2' has no falsification criteria"]

    def test_criteria_never_filled_in(self, small_graph):
        FalsifiabilityValidator().validate(small_graph)
        assert small_graph.get_node("3.1.2").metadata["falsification_criteria"] == ""

    def test_brief_criteria_warn(self, small_graph):
        small_graph.update_node("3.1.2", metadata={"falsification_criteria": "Disproven"})
        report = FalsifiabilityValidator().validate(small_graph)
        assert report.valid is True
        assert report.weak == ["3.1.2"]
        assert len(report.warnings) == 1

    def test_non_string_criteria_missing(self, small_graph):
        small_graph.update_node("3.1.1", metadata={"falsification_criteria": None})
        report = FalsifiabilityValidator().validate(small_graph)
        assert report.missing == ["3.1.1", "3.1.2"]


class TestCompetition:
    def test_exclusive_pairs_need_shared_dimension(self, small_graph):
        framework = HypothesisCompetitionFramework()
        assert framework.exclusive_pairs(small_graph) == [("3.1.1", "3.1.2")]

        small_graph.update_node("3.1.2", metadata={"parent_dimension": "2.9"})
        assert framework.exclusive_pairs(small_graph) == []

    def test_ranking(self, small_graph):
        result = HypothesisCompetitionFramework().analyze(small_graph)
        assert len(result.groups) == 1
        group = result.groups[0]
        assert group.dimension == "2.1"
        assert [s.hypothesis_id for s in group.ranking] == ["3.1.1", "3.1.2"]
        assert group.winner.criteria["falsifiability"] == 1.0
        assert "falsifiability" in group.ranking[1].weaknesses

    def test_groups_are_connected_components(self, small_graph):
        small_graph.add_node(
            Node("3.1.3", "Third", "hypothesis", [0.5] * 4, {"parent_dimension": "2.1"})
        )
        small_graph.add_edge(Edge("e9", "3.1.2", "3.1.3", "contradictory", 0.5))
        result = HypothesisCompetitionFramework().analyze(small_graph)
        assert len(result.groups) == 1
        assert {s.hypothesis_id for s in result.groups[0].ranking} == {"3.1.1", "3.1.2", "3.1.3"}

    def test_simplicity_prefers_fewer_connections(self, small_graph):
        framework = HypothesisCompetitionFramework()
        busy = framework.score(small_graph, small_graph.get_node("3.1.1"))
        assert busy.criteria["simplicity"] == pytest.approx(2.0 / (2.0 + 2.0))

    def test_no_competition(self, small_graph):
        small_graph.remove_edge("e4")
        result = HypothesisCompetitionFramework().analyze(small_graph)
        assert result.groups == []
        assert len(result.scores) == 2


class TestKnowledgeGaps:
    def test_unconnected_node_flagged(self, small_graph):
        small_graph.add_node(Node("4.2", "Orphan evidence", "evidence", [0.8] * 4))
        gaps = KnowledgeGapDetector().detect(small_graph)
        assert [g.node_id for g in gaps] == ["4.2"]
        assert gaps[0].kinds == ["connectivity"]
        assert gaps[0].priority == pytest.approx(0.6)

    def test_exempt_types_ignored(self, small_graph):
        # k1 is unconnected but is background knowledge
        assert KnowledgeGapDetector().detect(small_graph) == []

    def test_uncertain_and_weak_node(self, small_graph):
        small_graph.update_node("3.1.2", confidence=[0.3, 0.3, 0.3, 0.3])
        gap = KnowledgeGapDetector().detect(small_graph)[0]
        assert gap.node_id == "3.1.2"
        assert gap.kinds == ["evidential"]

        small_graph.update_node("3.1.2", confidence=[0.5, 0.5, 0.5, 0.5])
        gap = KnowledgeGapDetector().detect(small_graph)[0]
        assert gap.kinds == ["uncertainty"]
        assert gap.priority == pytest.approx(1.0)

    def test_dimension_without_hypotheses(self, small_graph):
        small_graph.add_node(Node("2.2", "Mechanisms", "dimension", [0.8] * 4))
        small_graph.add_edge(Edge("e7", "1.0", "2.2", "supportive", 0.8))
        gaps = KnowledgeGapDetector().detect(small_graph)
        assert [(g.node_id, g.kinds) for g in gaps] == [("2.2", ["coverage"])]

    def test_materialize_is_idempotent(self, small_graph):
        small_graph.add_node(Node("4.2", "Orphan evidence", "evidence", [0.8] * 4))
        detector = KnowledgeGapDetector()
        report = detector.analyze(small_graph, materialize=True)
        assert report.created_nodes == ["gap_4.2"]
        gap = small_graph.get_node("gap_4.2")
        assert gap.type == "gap"
        assert small_graph.get_edge("edge_gap_4.2").type == "correlative"

        again = detector.analyze(small_graph, materialize=True)
        assert again.created_nodes == []

    def test_read_only_by_default(self, small_graph):
        small_graph.add_node(Node("4.2", "Orphan evidence", "evidence", [0.8] * 4))
        report = KnowledgeGapDetector().analyze(small_graph)
        assert report.flagged == ["4.2"]
        assert not small_graph.has_node("gap_4.2")
