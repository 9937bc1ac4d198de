"""Tests for the information-theoretic metrics."""

from __future__ import annotations

import math

import pytest

from asrgot.engine.information_theory import (
    binary_entropy,
    graph_complexity,
    node_information_metrics,
    shannon_entropy,
    uncertainty_entropy,
)


class TestEntropy:
    def test_uniform_distribution(self):
        assert shannon_entropy([0.25] * 4) == pytest.approx(2.0)

    def test_normalizes_input(self):
        assert shannon_entropy([0.8] * 4) == pytest.approx(2.0)

    def test_degenerate(self):
        assert shannon_entropy([1.0, 0.0, 0.0, 0.0]) == 0.0
        assert shannon_entropy([0.0] * 4) == 0.0

    def test_binary_entropy_peak(self):
        assert binary_entropy(0.5) == pytest.approx(1.0)
        assert binary_entropy(0.0) == 0.0
        assert binary_entropy(1.0) == 0.0

    def test_uncertainty_entropy(self):
        assert uncertainty_entropy([0.5] * 4) == pytest.approx(1.0)
        assert uncertainty_entropy([1.0, 0.0, 1.0, 0.0]) == 0.0
        assert uncertainty_entropy([]) == 0.0


class TestGraphMetrics:
    def test_node_metrics(self):
        metrics = node_information_metrics([0.5] * 4, connections=3, graph_size=8)
        assert metrics["entropy"] == pytest.approx(1.0)
        assert metrics["distribution_entropy"] == pytest.approx(2.0)
        assert metrics["complexity"] == pytest.approx(2.0 + 2.0)
        assert metrics["information_gain"] == pytest.approx(1.0)

    def test_graph_complexity(self):
        assert graph_complexity(3, 1) == pytest.approx(math.log2(4) + 1.0)
        assert graph_complexity(3, 1, 1) == pytest.approx(math.log2(4) + 2.0)
