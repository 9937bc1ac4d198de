"""Tests for the hierarchical abstraction builder."""

from __future__ import annotations

import itertools

import pytest
from pydantic import ValidationError as SchemaError

from asrgot.abstraction import AbstractionConfig, build_hierarchical_abstraction, concept_scope
from asrgot.engine.graph import Edge, GraphStore, Node


def dense_graph(count: int = 10) -> GraphStore:
    """``count`` hypothesis nodes, every pair connected."""
    store = GraphStore()
    for i in range(count):
        store.add_node(Node(f"h{i}", f"Hypothesis {i}", "hypothesis", [0.7] * 4))
    for a, b in itertools.combinations(range(count), 2):
        store.add_edge(Edge(f"e{a}_{b}", f"h{a}", f"h{b}", "supportive", 0.7))
    return store


def two_clusters() -> GraphStore:
    """Two dense evidence triangles joined through one dimension node."""
    store = GraphStore()
    store.add_node(Node("d", "Dimension", "dimension", [0.8] * 4))
    for group in ("a", "b"):
        ids = [f"{group}{i}" for i in range(3)]
        for nid in ids:
            store.add_node(Node(nid, nid, "evidence", [0.7] * 4))
        for x, y in itertools.combinations(ids, 2):
            store.add_edge(Edge(f"{x}_{y}", x, y, "correlative", 0.6))
        store.add_edge(Edge(f"d_{group}", "d", ids[0], "supportive", 0.8))
    return store


class TestHierarchy:
    def test_dense_cluster_collapses(self):
        structure = build_hierarchical_abstraction(dense_graph(10))
        assert len(structure.levels) == 2
        base, top = structure.levels
        assert len(base.nodes) == 10
        assert len(top.nodes) < len(base.nodes)
        concept = top.abstractions[0]
        assert concept.id == "abs_1_0"
        assert concept.type == "hypothesis"
        assert concept.confidence == pytest.approx(1.0)
        assert concept.scope == "regional"
        assert sorted(concept.members) == sorted(f"h{i}" for i in range(10))

    def test_emergence_and_mappings(self):
        structure = build_hierarchical_abstraction(dense_graph(10))
        assert len(structure.cross_level_mappings) == 1
        mapping = structure.cross_level_mappings[0]
        assert (mapping.source_level, mapping.target_level) == (0, 1)
        assert mapping.mapping_type == "upward_causation"
        emergent = structure.emergent_properties
        assert [p.property for p in emergent] == ["Collective behavior in abs_1_0"]
        assert emergent[0].mechanism == "collective_emergence"
        assert structure.emergence.total_emergence == pytest.approx(1.0)

    def test_metrics(self):
        metrics = build_hierarchical_abstraction(dense_graph(10)).metrics
        assert metrics.depth == 2
        assert metrics.breadth == 10
        assert metrics.balance == pytest.approx(0.1)
        assert metrics.coverage == pytest.approx(1.0)

    def test_no_clusters_yields_base_level_only(self):
        store = GraphStore()
        store.add_node(Node("r", "Root", "root", [0.8] * 4))
        store.add_node(Node("d", "Dimension", "dimension", [0.8] * 4))
        store.add_edge(Edge("e", "r", "d", "supportive", 0.8))
        structure = build_hierarchical_abstraction(store)
        assert len(structure.levels) == 1
        assert structure.abstractions == []
        assert structure.metrics.depth == 1
        assert structure.metrics.coverage == 0.0

    def test_empty_graph(self):
        structure = build_hierarchical_abstraction(GraphStore())
        assert len(structure.levels) == 1
        assert structure.levels[0].nodes == []

    def test_clusters_are_linked_at_next_level(self):
        structure = build_hierarchical_abstraction(two_clusters())
        top = structure.levels[1]
        assert top.nodes == ["abs_1_0", "abs_1_1"]
        assert [c.source_ids[0][0] for c in top.abstractions] == ["a", "b"]
        # The dimension node is not clustered, so its links are lost upward
        assert all(c.fidelity == 0.0 for c in top.abstractions)
        assert structure.metrics.coverage == pytest.approx(6 / 7)

    def test_quality_threshold_filters(self):
        store = GraphStore()
        for nid in ("a", "b", "c"):
            store.add_node(Node(nid, nid, "evidence", [0.7] * 4))
        store.add_edge(Edge("ab", "a", "b", "supportive", 0.5))
        store.add_edge(Edge("bc", "b", "c", "supportive", 0.5))
        # Path of 3 has cohesion 2/3
        assert len(build_hierarchical_abstraction(store, AbstractionConfig(quality_threshold=0.6)).levels) == 2
        assert len(build_hierarchical_abstraction(store, AbstractionConfig(quality_threshold=0.7)).levels) == 1

    def test_max_levels_counts_base(self):
        structure = build_hierarchical_abstraction(dense_graph(4), AbstractionConfig(max_levels=1))
        assert len(structure.levels) == 1

    def test_accepts_snapshot(self):
        state = dense_graph(4).to_state()
        assert len(build_hierarchical_abstraction(state).levels) == 2

    def test_read_only(self):
        store = dense_graph(5)
        before = store.to_state()
        build_hierarchical_abstraction(store)
        assert store.to_state() == before


class TestConfig:
    def test_invalid_config(self):
        with pytest.raises(SchemaError):
            AbstractionConfig(max_levels=0)
        with pytest.raises(SchemaError):
            AbstractionConfig(quality_threshold=1.5)

    @pytest.mark.parametrize(
        ("members", "scope"), [(2, "local"), (3, "local"), (8, "regional"), (30, "global"), (31, "universal")]
    )
    def test_scope(self, members, scope):
        assert concept_scope(members) == scope
