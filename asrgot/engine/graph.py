"""Core graph data structures and the session GraphStore.

The store holds typed nodes with 4-component confidence vectors, directed
pairwise edges and hyperedges spanning two or more nodes. Every mutation
keeps referential integrity: adding an edge or hyperedge whose endpoints do
not exist, or reusing an id, raises GraphIntegrityError, and pruning a node
cascades to every edge and hyperedge that touches it.

Ownership:
    A GraphStore belongs to exactly one research session and is mutated by
    one stage at a time, so it carries no lock. Stages work on a copy
    (``store.copy()``) and the pipeline swaps the copy in only when the stage
    succeeds.
"""

from __future__ import annotations

import copy
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from asrgot.engine.confidence import validate_confidence, weighted_average
from asrgot.engine.information_theory import graph_complexity
from asrgot.errors import GraphIntegrityError
from asrgot.models import (
    SCHEMA_VERSION,
    GraphEdge,
    GraphHyperedge,
    GraphMetadata,
    GraphNode,
    GraphState,
)

NODE_TYPES = frozenset(
    {
        "root",
        "dimension",
        "hypothesis",
        "evidence",
        "bridge",
        "gap",
        "synthesis",
        "reflection",
        "temporal",
        "causal",
        "knowledge",
    }
)

EDGE_TYPES = frozenset(
    {
        "supportive",
        "contradictory",
        "correlative",
        "prerequisite",
        "causal_direct",
        "causal_counterfactual",
        "causal_confounded",
        "temporal_precedence",
        "temporal_cyclic",
        "temporal_delayed",
        "temporal_sequential",
    }
)

HYPEREDGE_TYPES = frozenset({"complex_relationship", "multi_causal", "interdisciplinary"})


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Node:
    """A typed entity in the reasoning graph.

    Attributes:
        id: Unique identifier (e.g. "1.0", "3.2.1")
        label: Human-readable label
        type: One of NODE_TYPES
        confidence: [empirical_support, theoretical_basis,
            methodological_rigor, consensus_alignment]
        metadata: Stage of creation, provenance and analysis results

    Raises:
        TypeError: If id or label is not a string
        ValueError: If type is unknown or confidence is not a valid vector
    """

    id: str
    label: str
    type: str
    confidence: list[float]
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise TypeError(f"Node id must be a non-empty string, got: {self.id!r}")
        if not isinstance(self.label, str):
            raise TypeError(f"Node label must be a string, got: {type(self.label).__name__}")
        if self.type not in NODE_TYPES:
            raise ValueError(f"Unknown node type: {self.type!r}")
        self.confidence = validate_confidence(self.confidence)


@dataclass
class Edge:
    """A directed relationship from ``source`` to ``target``.

    Raises:
        TypeError: If id, source or target is not a string
        ValueError: If type is unknown or confidence is outside [0, 1]
    """

    id: str
    source: str
    target: str
    type: str
    confidence: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("id", "source", "target"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value:
                raise TypeError(f"Edge {name} must be a non-empty string, got: {value!r}")
        if self.type not in EDGE_TYPES:
            raise ValueError(f"Unknown edge type: {self.type!r}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Edge confidence must be between 0.0 and 1.0, got: {self.confidence}")


@dataclass
class Hyperedge:
    """A relationship over an ordered set of two or more distinct nodes.

    Raises:
        ValueError: If fewer than 2 distinct nodes are given, a node repeats,
            or confidence is outside [0, 1]
    """

    id: str
    nodes: list[str]
    type: str
    confidence: float = 1.0
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.id, str) or not self.id:
            raise TypeError(f"Hyperedge id must be a non-empty string, got: {self.id!r}")
        if not isinstance(self.type, str):
            raise TypeError(f"Hyperedge type must be a string, got: {type(self.type).__name__}")
        if len(set(self.nodes)) != len(self.nodes):
            raise ValueError(f"Hyperedge node ids must be unique, got: {self.nodes}")
        if len(self.nodes) < 2:
            raise ValueError("Hyperedge must reference at least 2 distinct nodes")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(
                f"Hyperedge confidence must be between 0.0 and 1.0, got: {self.confidence}"
            )

    @property
    def node_set(self) -> set[str]:
        return set(self.nodes)


class GraphStore:
    """Canonical mutable graph for one research session.

    Nodes keep insertion order. Indexes map each node to its incident edges
    and hyperedges and each type to its nodes, so degree and cascade lookups
    never scan the full edge set.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}
        self._edges: dict[str, Edge] = {}
        self._hyperedges: dict[str, Hyperedge] = {}
        # Indexes
        self._node_to_edges: dict[str, set[str]] = defaultdict(set)
        self._node_to_hyperedges: dict[str, set[str]] = defaultdict(set)
        self._nodes_by_type: dict[str, set[str]] = defaultdict(set)
        self.stage = 0
        self.created_at = _now()
        self.last_updated = self.created_at
        self.graph_metrics: dict[str, Any] = {}
        self.subgraphs: list[dict[str, Any]] = []
        self.extra: dict[str, Any] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def copy(self) -> GraphStore:
        """Deep copy. Stages mutate the copy and the pipeline commits it."""
        return copy.deepcopy(self)

    def _touch(self) -> None:
        self.last_updated = _now()

    # ========== Stage Counter ==========

    def begin_stage(self, stage: int) -> None:
        """Advance the stage counter to ``stage``. Re-running an earlier stage
        keeps the current counter.

        Raises:
            GraphIntegrityError: If ``stage`` is negative
        """
        if stage < 0:
            raise GraphIntegrityError(f"Stage counter cannot be negative, got: {stage}")
        self.stage = max(self.stage, stage)
        self._touch()

    def set_stage(self, stage: int) -> None:
        """Set the counter explicitly, refusing to move it backwards."""
        if stage < self.stage:
            raise GraphIntegrityError(
                f"Stage counter is monotonic: cannot move from {self.stage} to {stage}"
            )
        self.stage = stage
        self._touch()

    # ========== Node Operations ==========

    def add_node(self, node: Node) -> Node:
        """Add a node.

        Raises:
            GraphIntegrityError: If a node with the same id already exists
        """
        if node.id in self._nodes:
            raise GraphIntegrityError(f"Duplicate node id: '{node.id}'")
        node.metadata.setdefault("stage", self.stage)
        node.metadata.setdefault("timestamp", _now())
        self._nodes[node.id] = node
        self._nodes_by_type[node.type].add(node.id)
        self._touch()
        return node

    def get_node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def require_node(self, node_id: str) -> Node:
        """Get a node or raise GraphIntegrityError."""
        node = self._nodes.get(node_id)
        if node is None:
            raise GraphIntegrityError(f"Unknown node id: '{node_id}'")
        return node

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def nodes(self) -> list[Node]:
        """All nodes in insertion order."""
        return list(self._nodes.values())

    def get_nodes_by_type(self, node_type: str) -> list[Node]:
        """Nodes of one type, in insertion order."""
        ids = self._nodes_by_type.get(node_type, set())
        return [node for nid, node in self._nodes.items() if nid in ids]

    def update_node(
        self,
        node_id: str,
        *,
        label: str | None = None,
        confidence: list[float] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Node:
        """Update a node in place. ``metadata`` is merged, not replaced.

        Raises:
            GraphIntegrityError: If the node does not exist
            ValueError: If the new confidence vector is invalid
        """
        node = self.require_node(node_id)
        if confidence is not None:
            node.confidence = validate_confidence(confidence)
        if label is not None:
            node.label = label
        if metadata:
            node.metadata.update(metadata)
        self._touch()
        return node

    def prune_node(self, node_id: str) -> tuple[bool, int, int]:
        """Remove a node and every edge and hyperedge touching it.

        Args:
            node_id: The node to prune

        Returns:
            Tuple of (node_removed, edges_removed, hyperedges_removed)
        """
        if node_id not in self._nodes:
            return (False, 0, 0)
        edges_removed = 0
        for edge_id in list(self._node_to_edges.get(node_id, set())):
            if self.remove_edge(edge_id):
                edges_removed += 1
        hyperedges_removed = 0
        for hyperedge_id in list(self._node_to_hyperedges.get(node_id, set())):
            if self.remove_hyperedge(hyperedge_id):
                hyperedges_removed += 1
        node = self._nodes.pop(node_id)
        self._nodes_by_type[node.type].discard(node_id)
        if not self._nodes_by_type[node.type]:
            del self._nodes_by_type[node.type]
        self._node_to_edges.pop(node_id, None)
        self._node_to_hyperedges.pop(node_id, None)
        self._touch()
        return (True, edges_removed, hyperedges_removed)

    def merge_nodes(
        self,
        keep_id: str,
        other_id: str,
        merged_attrs: dict[str, Any] | None = None,
    ) -> Node:
        """Merge ``other_id`` into ``keep_id``.

        Confidence vectors are combined by weighted average, each node
        weighted by its degree + 1. Edges and hyperedges incident to the
        absorbed node are re-pointed to the survivor; self-loops and
        hyperedges collapsing below two nodes are dropped.

        Args:
            keep_id: Surviving node
            other_id: Node absorbed into the survivor
            merged_attrs: Optional ``label`` and ``metadata`` overrides

        Returns:
            The surviving node

        Raises:
            GraphIntegrityError: If either node is missing or the ids are equal
        """
        if keep_id == other_id:
            raise GraphIntegrityError(f"Cannot merge node '{keep_id}' with itself")
        keep = self.require_node(keep_id)
        other = self.require_node(other_id)
        merged_attrs = merged_attrs or {}

        keep.confidence = weighted_average(
            keep.confidence,
            other.confidence,
            self.node_degree(keep_id) + 1,
            self.node_degree(other_id) + 1,
        )
        merged_from = list(keep.metadata.get("merged_from", []))
        merged_from.append(other_id)
        keep.metadata["merged_from"] = merged_from
        if "label" in merged_attrs:
            keep.label = merged_attrs["label"]
        keep.metadata.update(merged_attrs.get("metadata", {}))

        for edge_id in list(self._node_to_edges.get(other_id, set())):
            edge = self._edges[edge_id]
            source = keep_id if edge.source == other_id else edge.source
            target = keep_id if edge.target == other_id else edge.target
            self.remove_edge(edge_id)
            if source == target or self._has_parallel_edge(source, target, edge.type):
                continue
            self.add_edge(
                Edge(edge.id, source, target, edge.type, edge.confidence, edge.metadata)
            )

        for hyperedge_id in list(self._node_to_hyperedges.get(other_id, set())):
            hyperedge = self._hyperedges[hyperedge_id]
            members: list[str] = []
            for nid in hyperedge.nodes:
                nid = keep_id if nid == other_id else nid
                if nid not in members:
                    members.append(nid)
            self.remove_hyperedge(hyperedge_id)
            if len(members) >= 2:
                self.add_hyperedge(
                    Hyperedge(
                        hyperedge.id,
                        members,
                        hyperedge.type,
                        hyperedge.confidence,
                        hyperedge.metadata,
                    )
                )

        self.prune_node(other_id)
        return keep

    # ========== Edge Operations ==========

    def add_edge(self, edge: Edge) -> Edge:
        """Add an edge whose endpoints both exist.

        Raises:
            GraphIntegrityError: On a duplicate id or a dangling endpoint
        """
        if edge.id in self._edges:
            raise GraphIntegrityError(f"Duplicate edge id: '{edge.id}'")
        missing = [nid for nid in (edge.source, edge.target) if nid not in self._nodes]
        if missing:
            raise GraphIntegrityError(
                f"Edge '{edge.id}' references non-existent nodes: {missing}"
            )
        self._edges[edge.id] = edge
        self._node_to_edges[edge.source].add(edge.id)
        self._node_to_edges[edge.target].add(edge.id)
        self._touch()
        return edge

    def get_edge(self, edge_id: str) -> Edge | None:
        return self._edges.get(edge_id)

    def edges(self) -> list[Edge]:
        return list(self._edges.values())

    def edges_of(self, node_id: str) -> list[Edge]:
        """All edges touching ``node_id``, in insertion order."""
        ids = self._node_to_edges.get(node_id, set())
        return [edge for eid, edge in self._edges.items() if eid in ids]

    def edges_between(self, first: str, second: str) -> list[Edge]:
        """Edges connecting the two nodes in either direction."""
        return [
            edge
            for edge in self.edges_of(first)
            if {edge.source, edge.target} == {first, second}
        ]

    def _has_parallel_edge(self, source: str, target: str, edge_type: str) -> bool:
        return any(
            edge.source == source and edge.target == target and edge.type == edge_type
            for edge in self.edges_of(source)
        )

    def remove_edge(self, edge_id: str) -> bool:
        """Remove an edge. Returns True if removed, False if not found."""
        edge = self._edges.pop(edge_id, None)
        if edge is None:
            return False
        for nid in (edge.source, edge.target):
            self._node_to_edges[nid].discard(edge_id)
            if not self._node_to_edges[nid]:
                del self._node_to_edges[nid]
        self._touch()
        return True

    # ========== Hyperedge Operations ==========

    def add_hyperedge(self, hyperedge: Hyperedge) -> Hyperedge:
        """Add a hyperedge whose members all exist.

        Raises:
            GraphIntegrityError: On a duplicate id or a dangling member
        """
        if hyperedge.id in self._hyperedges:
            raise GraphIntegrityError(f"Duplicate hyperedge id: '{hyperedge.id}'")
        missing = [nid for nid in hyperedge.nodes if nid not in self._nodes]
        if missing:
            raise GraphIntegrityError(
                f"Hyperedge '{hyperedge.id}' references non-existent nodes: {missing}"
            )
        self._hyperedges[hyperedge.id] = hyperedge
        for nid in hyperedge.nodes:
            self._node_to_hyperedges[nid].add(hyperedge.id)
        self._touch()
        return hyperedge

    def get_hyperedge(self, hyperedge_id: str) -> Hyperedge | None:
        return self._hyperedges.get(hyperedge_id)

    def hyperedges(self) -> list[Hyperedge]:
        return list(self._hyperedges.values())

    def remove_hyperedge(self, hyperedge_id: str) -> bool:
        hyperedge = self._hyperedges.pop(hyperedge_id, None)
        if hyperedge is None:
            return False
        for nid in hyperedge.nodes:
            self._node_to_hyperedges[nid].discard(hyperedge_id)
            if not self._node_to_hyperedges[nid]:
                del self._node_to_hyperedges[nid]
        self._touch()
        return True

    # ========== Utility Methods ==========

    def node_degree(self, node_id: str) -> int:
        """Number of pairwise edges incident to the node."""
        return len(self._node_to_edges.get(node_id, set()))

    def neighbors(self, node_id: str) -> list[str]:
        """Ids of nodes sharing an edge with ``node_id``, in edge order."""
        result: list[str] = []
        for edge in self.edges_of(node_id):
            other = edge.target if edge.source == node_id else edge.source
            if other not in result:
                result.append(other)
        return result

    # ========== Statistics & Validation ==========

    def stats(self) -> dict[str, Any]:
        nodes_by_type: dict[str, int] = defaultdict(int)
        for node in self._nodes.values():
            nodes_by_type[node.type] += 1
        edges_by_type: dict[str, int] = defaultdict(int)
        for edge in self._edges.values():
            edges_by_type[edge.type] += 1
        return {
            "stage": self.stage,
            "node_count": len(self._nodes),
            "edge_count": len(self._edges),
            "hyperedge_count": len(self._hyperedges),
            "nodes_by_type": dict(nodes_by_type),
            "edges_by_type": dict(edges_by_type),
            "complexity": graph_complexity(
                len(self._nodes), len(self._edges), len(self._hyperedges)
            ),
        }

    def refresh_metrics(self) -> dict[str, Any]:
        """Recompute the aggregate metrics stored in the graph metadata."""
        stats = self.stats()
        self.graph_metrics = {
            "total_nodes": stats["node_count"],
            "total_edges": stats["edge_count"],
            "total_hyperedges": stats["hyperedge_count"],
            "complexity": stats["complexity"],
        }
        return self.graph_metrics

    def validate(self) -> dict[str, Any]:
        """Check referential integrity and index consistency.

        Returns:
            Dict with 'valid' (bool) and 'errors' (list of descriptions)
        """
        errors: list[str] = []
        for edge_id, edge in self._edges.items():
            for nid in (edge.source, edge.target):
                if nid not in self._nodes:
                    errors.append(f"Edge '{edge_id}' references non-existent node: '{nid}'")
        for hyperedge_id, hyperedge in self._hyperedges.items():
            missing = [nid for nid in hyperedge.nodes if nid not in self._nodes]
            if missing:
                errors.append(
                    f"Hyperedge '{hyperedge_id}' references non-existent nodes: {missing}"
                )
        for node_id, edge_ids in self._node_to_edges.items():
            if node_id not in self._nodes:
                errors.append(f"Node-to-edges index contains non-existent node: '{node_id}'")
            for edge_id in edge_ids:
                if edge_id not in self._edges:
                    errors.append(
                        f"Node-to-edges index for '{node_id}' references "
                        f"non-existent edge: '{edge_id}'"
                    )
        for node_type, node_ids in self._nodes_by_type.items():
            for node_id in node_ids:
                node = self._nodes.get(node_id)
                if node is None or node.type != node_type:
                    errors.append(f"Type index '{node_type}' is stale for node '{node_id}'")
        for node in self._nodes.values():
            try:
                validate_confidence(node.confidence)
            except (TypeError, ValueError) as exc:
                errors.append(f"Node '{node.id}' has an invalid confidence vector: {exc}")
        return {"valid": not errors, "errors": errors}

    # ========== Serialization ==========

    def to_state(self) -> GraphState:
        """Snapshot the store as a pydantic GraphState (deep-copied)."""
        return GraphState(
            nodes=[
                GraphNode(
                    id=n.id,
                    label=n.label,
                    type=n.type,
                    confidence=list(n.confidence),
                    metadata=copy.deepcopy(n.metadata),
                )
                for n in self._nodes.values()
            ],
            edges=[
                GraphEdge(
                    id=e.id,
                    source=e.source,
                    target=e.target,
                    type=e.type,
                    confidence=e.confidence,
                    metadata=copy.deepcopy(e.metadata),
                )
                for e in self._edges.values()
            ],
            hyperedges=[
                GraphHyperedge(
                    id=h.id,
                    nodes=list(h.nodes),
                    type=h.type,
                    confidence=h.confidence,
                    metadata=copy.deepcopy(h.metadata),
                )
                for h in self._hyperedges.values()
            ],
            metadata=GraphMetadata(
                schema_version=SCHEMA_VERSION,
                stage=self.stage,
                created_at=self.created_at,
                last_updated=self.last_updated,
                graph_metrics=copy.deepcopy(self.graph_metrics),
                subgraphs=copy.deepcopy(self.subgraphs),
                extra=copy.deepcopy(self.extra),
            ),
        )

    @classmethod
    def from_state(cls, state: GraphState) -> GraphStore:
        """Rebuild a store from a snapshot. Timestamps are preserved."""
        store = cls()
        for n in state.nodes:
            store.add_node(
                Node(n.id, n.label, n.type, list(n.confidence), copy.deepcopy(n.metadata))
            )
        for e in state.edges:
            store.add_edge(
                Edge(e.id, e.source, e.target, e.type, e.confidence, copy.deepcopy(e.metadata))
            )
        for h in state.hyperedges:
            store.add_hyperedge(
                Hyperedge(h.id, list(h.nodes), h.type, h.confidence, copy.deepcopy(h.metadata))
            )
        meta = state.metadata
        store.stage = meta.stage
        store.created_at = meta.created_at
        store.last_updated = meta.last_updated
        store.graph_metrics = copy.deepcopy(meta.graph_metrics)
        store.subgraphs = copy.deepcopy(meta.subgraphs)
        store.extra = copy.deepcopy(meta.extra)
        return store

    def to_dict(self) -> dict[str, Any]:
        return self.to_state().model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphStore:
        return cls.from_state(GraphState.model_validate(data))
