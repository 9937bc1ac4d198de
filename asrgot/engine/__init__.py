"""Graph reasoning engine: graph store, confidence model, information theory.

``asrgot.engine.graph`` and ``asrgot.engine.persistence`` depend on
``asrgot.models`` and are imported explicitly rather than re-exported here.
"""

from asrgot.engine.confidence import (
    EvidenceSignals,
    aggregate_confidence,
    update_confidence,
    validate_confidence,
)
from asrgot.engine.information_theory import (
    graph_complexity,
    node_information_metrics,
    shannon_entropy,
    uncertainty_entropy,
)

__all__ = [
    "EvidenceSignals",
    "aggregate_confidence",
    "update_confidence",
    "validate_confidence",
    "graph_complexity",
    "node_information_metrics",
    "shannon_entropy",
    "uncertainty_entropy",
]
