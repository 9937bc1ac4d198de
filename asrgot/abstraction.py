"""Multi-level abstraction over a reasoning graph.

Level 0 is the graph itself. Each further level clusters the nodes of the
level below: a cluster is a connected component of same-typed nodes with at
least two members, kept when its cohesion (internal edges over possible
pairs) reaches the quality threshold. Every kept cluster becomes one abstract
concept at the new level, and the concepts are linked wherever their members
were. Levels contain only concepts; unclustered nodes do not carry upward.

The result is a read-only view. Nothing is written back into the graph.
"""

from __future__ import annotations

import logging
import math
from typing import Literal

from pydantic import BaseModel, Field

from asrgot.engine.graph import GraphStore
from asrgot.models import GraphState

logger = logging.getLogger(__name__)

Granularity = Literal["microscopic", "mesoscopic", "macroscopic", "meta"]
Scope = Literal["local", "regional", "global", "universal"]

_GRANULARITY: tuple[Granularity, ...] = ("microscopic", "mesoscopic", "macroscopic", "meta")
_LEVEL_SCOPE: tuple[Scope, ...] = ("local", "regional", "global", "universal")


class AbstractionConfig(BaseModel):
    """Construction limits.

    ``max_levels`` counts every level, level 0 included.
    """

    max_levels: int = Field(default=5, ge=1)
    quality_threshold: float = Field(default=0.5, ge=0.0, le=1.0)


class AbstractConcept(BaseModel):
    id: str
    label: str
    type: str
    level: int
    source_ids: list[str]
    # Original graph nodes the concept ultimately stands for
    members: list[str]
    confidence: float
    fidelity: float
    granularity: Granularity
    scope: Scope


class AbstractionLevel(BaseModel):
    level: int
    name: str
    granularity: Granularity
    scope: Scope
    nodes: list[str]
    abstractions: list[AbstractConcept] = Field(default_factory=list)
    quality: float = 1.0
    complexity: float = 0.0


class CrossLevelMapping(BaseModel):
    id: str
    source_level: int
    target_level: int
    source_ids: list[str]
    target_id: str
    mapping_type: Literal["upward_causation"] = "upward_causation"
    strength: float


class EmergentProperty(BaseModel):
    property: str
    level: int
    concept_id: str
    strength: float
    constituents: list[str]
    mechanism: str = "collective_emergence"


class HierarchyMetrics(BaseModel):
    depth: int
    breadth: int
    balance: float
    coherence: float
    coverage: float


class EmergenceSummary(BaseModel):
    total_emergence: float
    level_complexity: list[float]
    hierarchical_coherence: float


class HierarchicalStructure(BaseModel):
    levels: list[AbstractionLevel]
    abstractions: list[AbstractConcept] = Field(default_factory=list)
    cross_level_mappings: list[CrossLevelMapping] = Field(default_factory=list)
    emergent_properties: list[EmergentProperty] = Field(default_factory=list)
    metrics: HierarchyMetrics
    emergence: EmergenceSummary


def concept_scope(member_count: int) -> Scope:
    if member_count <= 3:
        return "local"
    if member_count <= 10:
        return "regional"
    if member_count <= 30:
        return "global"
    return "universal"


class _LevelGraph:
    """Undirected view of one level: node types, original members, adjacency."""

    def __init__(self) -> None:
        self.types: dict[str, str] = {}
        self.members: dict[str, list[str]] = {}
        self.adjacency: dict[str, set[str]] = {}

    def add(self, node_id: str, node_type: str, members: list[str]) -> None:
        self.types[node_id] = node_type
        self.members[node_id] = members
        self.adjacency.setdefault(node_id, set())

    def link(self, first: str, second: str) -> None:
        if first != second:
            self.adjacency[first].add(second)
            self.adjacency[second].add(first)

    @classmethod
    def from_store(cls, store: GraphStore) -> _LevelGraph:
        view = cls()
        for node in store.nodes():
            view.add(node.id, node.type, [node.id])
        for edge in store.edges():
            view.link(edge.source, edge.target)
        return view

    def edge_count(self) -> int:
        return sum(len(neighbours) for neighbours in self.adjacency.values()) // 2

    def same_type_components(self) -> list[list[str]]:
        """Connected components of the same-type subgraph, in node order."""
        seen: set[str] = set()
        components = []
        for start in self.types:
            if start in seen:
                continue
            seen.add(start)
            component = [start]
            frontier = [start]
            while frontier:
                current = frontier.pop()
                for neighbour in sorted(self.adjacency[current]):
                    if neighbour not in seen and self.types[neighbour] == self.types[start]:
                        seen.add(neighbour)
                        component.append(neighbour)
                        frontier.append(neighbour)
            components.append(component)
        return components

    def cohesion(self, nodes: list[str]) -> float:
        node_set = set(nodes)
        internal = sum(len(self.adjacency[n] & node_set) for n in nodes) // 2
        possible = len(nodes) * (len(nodes) - 1) / 2
        return internal / possible if possible else 0.0


class HierarchicalAbstractionEngine:
    """Builds a HierarchicalStructure from a graph snapshot."""

    def __init__(self, config: AbstractionConfig | None = None) -> None:
        self.config = config or AbstractionConfig()

    def build(self, graph: GraphStore | GraphState) -> HierarchicalStructure:
        store = graph if isinstance(graph, GraphStore) else GraphStore.from_state(graph)
        current = _LevelGraph.from_store(store)
        levels = [
            AbstractionLevel(
                level=0,
                name="Base Level - Original Graph",
                granularity="microscopic",
                scope="local",
                nodes=list(current.types),
                complexity=_complexity(len(current.types), current.edge_count()),
            )
        ]
        mappings: list[CrossLevelMapping] = []
        emergent: list[EmergentProperty] = []

        while len(levels) < self.config.max_levels:
            parent_level = levels[-1]
            level_index = parent_level.level + 1
            clusters = [
                (component, current.cohesion(component))
                for component in current.same_type_components()
                if len(component) >= 2
            ]
            clusters = [
                (component, cohesion)
                for component, cohesion in clusters
                if cohesion >= self.config.quality_threshold
            ]
            if not clusters:
                logger.debug("No clusters above level %d, stopping", parent_level.level)
                break
            if len(clusters) == len(parent_level.nodes):
                break

            next_graph, concepts = self._abstract(current, clusters, level_index)
            levels.append(
                AbstractionLevel(
                    level=level_index,
                    name=f"Abstraction Level {level_index}",
                    granularity=_GRANULARITY[min(level_index, 3)],
                    scope=_LEVEL_SCOPE[min(level_index, 3)],
                    nodes=[c.id for c in concepts],
                    abstractions=concepts,
                    quality=sum(c.confidence for c in concepts) / len(concepts),
                    complexity=_complexity(len(concepts), next_graph.edge_count()),
                )
            )
            for concept in concepts:
                mappings.append(
                    CrossLevelMapping(
                        id=f"mapping_{parent_level.level}_{level_index}_{concept.id}",
                        source_level=parent_level.level,
                        target_level=level_index,
                        source_ids=concept.source_ids,
                        target_id=concept.id,
                        strength=concept.confidence,
                    )
                )
                if len(concept.source_ids) > 2:
                    emergent.append(
                        EmergentProperty(
                            property=f"Collective behavior in {concept.id}",
                            level=level_index,
                            concept_id=concept.id,
                            strength=concept.confidence,
                            constituents=concept.source_ids,
                        )
                    )
            current = next_graph

        metrics = _hierarchy_metrics(levels, len(store))
        return HierarchicalStructure(
            levels=levels,
            abstractions=[c for level in levels for c in level.abstractions],
            cross_level_mappings=mappings,
            emergent_properties=emergent,
            metrics=metrics,
            emergence=EmergenceSummary(
                total_emergence=sum(p.strength for p in emergent),
                level_complexity=[level.complexity for level in levels],
                hierarchical_coherence=metrics.coherence,
            ),
        )

    def _abstract(
        self,
        current: _LevelGraph,
        clusters: list[tuple[list[str], float]],
        level: int,
    ) -> tuple[_LevelGraph, list[AbstractConcept]]:
        owner: dict[str, str] = {}
        for i, (component, _) in enumerate(clusters):
            for node_id in component:
                owner[node_id] = f"abs_{level}_{i}"

        next_graph = _LevelGraph()
        concepts = []
        for i, (component, cohesion) in enumerate(clusters):
            concept_id = f"abs_{level}_{i}"
            node_type = current.types[component[0]]
            members = [m for node_id in component for m in current.members[node_id]]
            component_set = set(component)
            external = [
                neighbour
                for node_id in component
                for neighbour in current.adjacency[node_id]
                if neighbour not in component_set
            ]
            preserved = sum(1 for neighbour in external if neighbour in owner)
            concepts.append(
                AbstractConcept(
                    id=concept_id,
                    label=f"{node_type} cluster ({len(component)} nodes)",
                    type=node_type,
                    level=level,
                    source_ids=list(component),
                    members=members,
                    confidence=cohesion,
                    fidelity=preserved / len(external) if external else 1.0,
                    granularity=_GRANULARITY[min(level, 3)],
                    scope=concept_scope(len(members)),
                )
            )
            next_graph.add(concept_id, node_type, members)

        for node_id, neighbours in current.adjacency.items():
            if node_id not in owner:
                continue
            for neighbour in neighbours:
                if neighbour in owner:
                    next_graph.link(owner[node_id], owner[neighbour])
        return next_graph, concepts


def _complexity(node_count: int, edge_count: int) -> float:
    return node_count * math.log(edge_count + 1)


def _hierarchy_metrics(levels: list[AbstractionLevel], original_count: int) -> HierarchyMetrics:
    sizes = [len(level.nodes) for level in levels]
    largest = max(sizes)
    if len(levels) > 1 and original_count:
        represented = {m for level in levels[1:] for c in level.abstractions for m in c.members}
        coverage = len(represented) / original_count
    else:
        coverage = 0.0
    return HierarchyMetrics(
        depth=len(levels),
        breadth=largest,
        balance=min(sizes) / largest if largest else 1.0,
        coherence=sum(level.quality for level in levels) / len(levels),
        coverage=coverage,
    )


def build_hierarchical_abstraction(
    graph: GraphStore | GraphState,
    config: AbstractionConfig | None = None,
) -> HierarchicalStructure:
    """Build the abstraction hierarchy of ``graph``.

    Args:
        graph: A live store or a GraphState snapshot
        config: Construction limits; defaults to 5 levels at threshold 0.5

    Returns:
        HierarchicalStructure with levels, mappings, emergent properties
        and hierarchy metrics
    """
    return HierarchicalAbstractionEngine(config).build(graph)
