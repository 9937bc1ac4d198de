"""Knowledge-gap detection.

A node is a gap candidate when its confidence vector carries high uncertainty
entropy, when it has too few incident edges, or when its aggregate
confidence is low. A dimension node with no hypotheses is also a gap
candidate. Materializing a gap adds a ``gap`` node next to the flagged node.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

from asrgot.engine.confidence import aggregate_confidence, uniform_confidence
from asrgot.engine.graph import Edge, GraphStore, Node
from asrgot.engine.information_theory import uncertainty_entropy

logger = logging.getLogger(__name__)

GapKind = Literal["uncertainty", "connectivity", "evidential", "coverage"]

_PRIORITY = {
    "evidential": 0.7,
    "coverage": 0.65,
    "connectivity": 0.6,
}

# Node types never flagged: structural anchors and previous analysis output
_EXEMPT_TYPES = frozenset({"root", "gap", "reflection", "synthesis", "knowledge"})


class KnowledgeGap(BaseModel):
    node_id: str
    kinds: list[GapKind]
    priority: float = Field(ge=0.0, le=1.0)
    entropy: float
    degree: int
    description: str


class KnowledgeGapReport(BaseModel):
    gaps: list[KnowledgeGap] = Field(default_factory=list)
    created_nodes: list[str] = Field(default_factory=list)

    @property
    def flagged(self) -> list[str]:
        return [gap.node_id for gap in self.gaps]


def gap_node_id(node_id: str) -> str:
    return f"gap_{node_id}"


class KnowledgeGapDetector:
    """Flags high-uncertainty or weakly connected regions of the graph.

    Args:
        entropy_threshold: Flag nodes whose uncertainty entropy exceeds this
        min_connections: Flag nodes with fewer incident edges than this
        evidential_threshold: Flag nodes whose aggregate confidence is below this
    """

    def __init__(
        self,
        entropy_threshold: float = 0.95,
        min_connections: int = 1,
        evidential_threshold: float = 0.4,
    ) -> None:
        self.entropy_threshold = entropy_threshold
        self.min_connections = min_connections
        self.evidential_threshold = evidential_threshold

    def detect(self, store: GraphStore) -> list[KnowledgeGap]:
        """Read-only pass; returns gaps sorted by priority, then node id."""
        gaps: list[KnowledgeGap] = []
        for node in store.nodes():
            if node.type in _EXEMPT_TYPES:
                continue
            entropy = uncertainty_entropy(node.confidence)
            degree = store.node_degree(node.id)
            kinds: list[GapKind] = []
            if entropy > self.entropy_threshold:
                kinds.append("uncertainty")
            if degree < self.min_connections:
                kinds.append("connectivity")
            if aggregate_confidence(node.confidence) < self.evidential_threshold:
                kinds.append("evidential")
            if node.type == "dimension" and not self._has_hypotheses(store, node):
                kinds.append("coverage")
            if not kinds:
                continue
            priority = max(
                min(1.0, entropy) if kind == "uncertainty" else _PRIORITY[kind] for kind in kinds
            )
            gaps.append(
                KnowledgeGap(
                    node_id=node.id,
                    kinds=kinds,
                    priority=round(priority, 6),
                    entropy=entropy,
                    degree=degree,
                    description=f"{', '.join(kinds)} gap around {node.type} '{node.label}'",
                )
            )
        gaps.sort(key=lambda gap: (-gap.priority, gap.node_id))
        return gaps

    def _has_hypotheses(self, store: GraphStore, dimension: Node) -> bool:
        return any(
            n.metadata.get("parent_dimension") == dimension.id
            for n in store.get_nodes_by_type("hypothesis")
        )

    def materialize(self, store: GraphStore, gaps: list[KnowledgeGap]) -> list[str]:
        """Add a ``gap`` node per flagged node, linked by a correlative edge.

        Already materialized gaps are skipped, so repeated calls add nothing.

        Returns:
            Ids of the gap nodes created by this call
        """
        created: list[str] = []
        for gap in gaps:
            if not store.has_node(gap.node_id):
                continue
            gid = gap_node_id(gap.node_id)
            if store.has_node(gid):
                continue
            flagged = store.require_node(gap.node_id)
            store.add_node(
                Node(
                    gid,
                    f"Knowledge gap: {flagged.label}",
                    "gap",
                    uniform_confidence(1.0 - gap.priority),
                    {
                        "source_description": "Knowledge gap detection",
                        "gap_kinds": list(gap.kinds),
                        "priority": gap.priority,
                        "flagged_node": gap.node_id,
                    },
                )
            )
            store.add_edge(
                Edge(f"edge_{gid}", gid, gap.node_id, "correlative", gap.priority)
            )
            created.append(gid)
        if created:
            logger.info("Materialized %d knowledge gap nodes", len(created))
        return created

    def analyze(self, store: GraphStore, materialize: bool = False) -> KnowledgeGapReport:
        gaps = self.detect(store)
        created = self.materialize(store, gaps) if materialize else []
        return KnowledgeGapReport(gaps=gaps, created_nodes=created)
