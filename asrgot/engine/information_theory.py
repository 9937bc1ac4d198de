"""Information-theoretic metrics over confidence vectors and graphs.

All logarithms are base 2.
"""

from __future__ import annotations

import math
from collections.abc import Sequence


def shannon_entropy(values: Sequence[float]) -> float:
    """Shannon entropy of ``values`` after normalizing them to sum to 1."""
    total = sum(values)
    if total <= 0:
        return 0.0
    entropy = 0.0
    for value in values:
        p = value / total
        if p > 0:
            entropy -= p * math.log2(p)
    return entropy


def binary_entropy(p: float) -> float:
    if p <= 0.0 or p >= 1.0:
        return 0.0
    return -p * math.log2(p) - (1 - p) * math.log2(1 - p)


def uncertainty_entropy(confidence: Sequence[float]) -> float:
    """Mean binary entropy of the components, in [0, 1].

    A component at 0.5 contributes one full bit of uncertainty; components
    at 0 or 1 contribute nothing.
    """
    if not confidence:
        return 0.0
    return sum(binary_entropy(c) for c in confidence) / len(confidence)


def structural_complexity(confidence_size: int, connections: int) -> float:
    return math.log2(max(confidence_size, 1)) + math.log2(connections + 1)


def node_information_metrics(
    confidence: Sequence[float],
    connections: int,
    graph_size: int,
) -> dict[str, float]:
    """Entropy, complexity and information gain for one node.

    Args:
        confidence: The node's confidence vector
        connections: Number of incident edges
        graph_size: Number of nodes in the graph

    Returns:
        Dict with ``entropy`` (uncertainty entropy), ``distribution_entropy``
        (Shannon entropy of the normalized vector), ``complexity`` and
        ``information_gain``
    """
    return {
        "entropy": uncertainty_entropy(confidence),
        "distribution_entropy": shannon_entropy(confidence),
        "complexity": structural_complexity(len(confidence), connections),
        "information_gain": math.log2(max(graph_size, 1) / (connections + 1)),
    }


def graph_complexity(node_count: int, edge_count: int, hyperedge_count: int = 0) -> float:
    complexity = math.log2(node_count + 1) + math.log2(edge_count + 1)
    if hyperedge_count > 0:
        complexity += math.log2(hyperedge_count + 1)
    return complexity
