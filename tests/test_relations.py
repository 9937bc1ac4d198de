"""Tests for hyperedge construction and evidence assessment parsing."""

from __future__ import annotations

from datetime import timedelta

import pytest

from asrgot.engine.graph import Node
from asrgot.engine.relations import CausalAssessment, build_hyperedges, classify_temporal, tag_slug
from asrgot.pipeline.schemas import EvidenceAnalysisOutput


def _evidence(node_id: str, *tags: str) -> Node:
    return Node(node_id, f"Evidence {node_id}", "evidence", [0.5] * 4, {"disciplinary_tags": list(tags)})


class TestTemporal:
    @pytest.mark.parametrize(
        "delta, expected",
        [
            (timedelta(minutes=1), "temporal_sequential"),
            (timedelta(hours=2), "temporal_precedence"),
            (timedelta(weeks=2), "temporal_delayed"),
            (timedelta(hours=-2), "temporal_cyclic"),
        ],
    )
    def test_classify(self, delta, expected):
        assert classify_temporal(delta) == expected

    def test_causal_edge_type(self):
        assert CausalAssessment().edge_type() is None
        assert CausalAssessment(relationship="confounded").edge_type() == "causal_confounded"


class TestHyperedges:
    @pytest.mark.parametrize("tag", ["Marine Biology", "marine biology", "  MARINE   biology "])
    def test_tag_slug(self, tag):
        assert tag_slug(tag) == "marine_biology"

    def test_tag_variants_merge(self):
        evidence = [
            _evidence("4.1", "Marine Biology"),
            _evidence("4.2", "marine biology", "Marine  Biology"),
            _evidence("4.3", "MARINE BIOLOGY"),
        ]
        hyperedges = build_hyperedges([], evidence, {})
        assert len(hyperedges) == 1
        hyperedge = hyperedges[0]
        assert hyperedge.id == "hyper_interdisciplinary_marine_biology"
        assert hyperedge.nodes == ["4.1", "4.2", "4.3"]
        assert hyperedge.metadata["disciplinary_tags"] == ["Marine Biology"]

    def test_single_member_and_blank_tags_skipped(self):
        evidence = [_evidence("4.1", "ecology", "  "), _evidence("4.2", "toxicology", "")]
        assert build_hyperedges([], evidence, {}) == []

    def test_existing_ids_skipped(self):
        evidence = [_evidence("4.1", "ecology"), _evidence("4.2", "Ecology")]
        assert build_hyperedges([], evidence, {}, {"hyper_interdisciplinary_ecology"}) == []


class TestEvidenceAnalysisOutput:
    def test_invalid_item_dropped(self):
        parsed = EvidenceAnalysisOutput.model_validate(
            {
                "assessments": [
                    {"hypothesis_id": "3.1.1", "direction": "supports"},
                    {"hypothesis_id": "3.1.2", "direction": "mixed"},
                    {"direction": "contradicts"},
                    {"hypothesis_id": "3.2.1", "impact_score": 4.0},
                    {"hypothesis_id": "3.2.2", "quality": "high"},
                ]
            }
        )
        assert [a.hypothesis_id for a in parsed.assessments] == ["3.1.1", "3.2.2"]

    @pytest.mark.parametrize(
        "raw, direction, quality",
        [
            ({"direction": "Supporting", "quality": "Moderate"}, "supports", "medium"),
            ({"direction": " contradicts ", "quality": "HIGH"}, "contradicts", "high"),
            ({"direction": "refutes"}, "contradicts", "medium"),
        ],
    )
    def test_labels_normalized(self, raw, direction, quality):
        parsed = EvidenceAnalysisOutput.model_validate(
            {"assessments": [{"hypothesis_id": "3.1.1", **raw}]}
        )
        assessment = parsed.assessments[0]
        assert (assessment.direction, assessment.quality) == (direction, quality)

    def test_non_list_rejected(self):
        with pytest.raises(ValueError):
            EvidenceAnalysisOutput.model_validate({"assessments": "none"})
