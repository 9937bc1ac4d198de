"""Pydantic models for the ASR-GoT public API.

These wrap the core engine types (engine.graph) for validation and
serialization at the session, persistence and MCP boundaries.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from asrgot.engine.confidence import validate_confidence

SCHEMA_VERSION = "1.0"

NodeType = Literal[
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
]

EdgeType = Literal[
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
]

Capability = Literal[
    "STRUCTURED_OUTPUTS",
    "SEARCH_GROUNDING",
    "FUNCTION_CALLING",
    "CODE_EXECUTION",
    "THINKING",
    "CACHING",
]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Graph snapshot
# ---------------------------------------------------------------------------


class GraphNode(BaseModel):
    """A typed node carrying a 4-component confidence vector."""

    id: str
    label: str
    type: NodeType
    confidence: list[float]
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("confidence")
    @classmethod
    def _check_confidence(cls, value: list[float]) -> list[float]:
        return validate_confidence(value)


class GraphEdge(BaseModel):
    """A directed pairwise relationship between two nodes."""

    id: str
    source: str
    target: str
    type: EdgeType
    confidence: float = Field(ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class GraphHyperedge(BaseModel):
    """A relationship spanning two or more distinct nodes."""

    id: str
    nodes: list[str]
    type: str
    confidence: float = Field(ge=0.0, le=1.0)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_nodes(self) -> GraphHyperedge:
        if len(set(self.nodes)) < 2:
            raise ValueError("Hyperedge must reference at least 2 distinct nodes")
        if len(set(self.nodes)) != len(self.nodes):
            raise ValueError("Hyperedge node ids must be unique")
        return self


class GraphMetadata(BaseModel):
    schema_version: str = SCHEMA_VERSION
    stage: int = Field(default=0, ge=0)
    created_at: str = Field(default_factory=_utc_now)
    last_updated: str = Field(default_factory=_utc_now)
    graph_metrics: dict[str, Any] = Field(default_factory=dict)
    subgraphs: list[dict[str, Any]] = Field(default_factory=list)
    extra: dict[str, Any] = Field(default_factory=dict)


class GraphState(BaseModel):
    """An immutable-by-convention snapshot of a session graph.

    Node order is preserved, so ``nodes[0]`` is the first node ever added
    (the root, once stage 0 has run).
    """

    nodes: list[GraphNode] = Field(default_factory=list)
    edges: list[GraphEdge] = Field(default_factory=list)
    hyperedges: list[GraphHyperedge] = Field(default_factory=list)
    metadata: GraphMetadata = Field(default_factory=GraphMetadata)

    @model_validator(mode="after")
    def _check_references(self) -> GraphState:
        ids = [node.id for node in self.nodes]
        known = set(ids)
        if len(known) != len(ids):
            raise ValueError("Node ids must be unique")
        for edge in self.edges:
            if edge.source not in known or edge.target not in known:
                raise ValueError(f"Edge '{edge.id}' references a missing node")
        for hyperedge in self.hyperedges:
            missing = [nid for nid in hyperedge.nodes if nid not in known]
            if missing:
                raise ValueError(f"Hyperedge '{hyperedge.id}' references missing nodes: {missing}")
        return self


class GraphStats(BaseModel):
    """Summary counts for a session graph."""

    stage: int
    node_count: int
    edge_count: int
    hyperedge_count: int
    nodes_by_type: dict[str, int]
    edges_by_type: dict[str, int]
    complexity: float


# ---------------------------------------------------------------------------
# Research context
# ---------------------------------------------------------------------------


class ResearchContext(BaseModel):
    """What the pipeline has learned about the research question so far."""

    topic: str = ""
    field: str = "interdisciplinary science"
    objectives: list[str] = Field(default_factory=list)
    dimensions: list[str] = Field(default_factory=list)
    hypotheses: list[str] = Field(default_factory=list)
    constraints: list[str] = Field(default_factory=list)
    knowledge_gaps: list[str] = Field(default_factory=list)
    analysis_components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


class CallParams(BaseModel):
    """Parameters handed to the external text-generation capability."""

    stage_id: str
    model: str
    capability: Capability = "STRUCTURED_OUTPUTS"
    max_tokens: int = Field(default=8000, gt=0)
    temperature: float = Field(default=0.1, ge=0.0, le=2.0)
    thinking_budget: int | None = None


class StageModelAssignment(BaseModel):
    """Model, capability and estimated price for one stage or sub-stage."""

    stage_id: str
    model: str
    capability: Capability
    max_tokens: int | None = None
    thinking_budget: int | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    estimated_price: float = Field(ge=0.0)
    requires: Literal["gemini", "perplexity"] = "gemini"


class CostEntry(BaseModel):
    stage: str
    model: str
    prompt_tokens: int
    output_tokens: int
    price_usd: float = Field(ge=0.0)
    fallback: bool = False
    timestamp: str = Field(default_factory=_utc_now)


class CostDashboard(BaseModel):
    """Cumulative session spend, broken down by stage id."""

    total_cost: float
    per_stage_cost: dict[str, float]
    entries: list[CostEntry] = Field(default_factory=list)
    average_cost_per_stage: float = 0.0
